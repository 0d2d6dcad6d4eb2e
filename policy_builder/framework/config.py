from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass
from typing import Any, Mapping

IMAGE_REPO_ENV_VAR = "POLICY_ENGINE_IMAGE_REPO"
IMAGE_TAG_ENV_VAR = "POLICY_ENGINE_TAG"

DEFAULT_SOCKET_PATH = "/var/run/docker.sock"
DEFAULT_IMAGE_REPO = "policy-engine"
DEFAULT_IMAGE_TAG = "latest"
DEFAULT_BASE_IMAGE = "python:3.12-alpine"
DEFAULT_ARTIFACT_NAME = "policy-engine.pyz"
DEFAULT_INTERPRETER = "/usr/bin/env python3"


def parse_bool(value: Any, path: str) -> bool:
    """
    Strict boolean parsing to avoid bool('false') footguns.

    Accepts True/False, 0/1 and the strings true/false/1/0/yes/no
    (case-insensitive, surrounding whitespace ignored).
    """

    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"Invalid boolean for {path}: {value!r}")
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
        raise ValueError(f"Invalid boolean for {path}: {value!r}")

    raise ValueError(f"Invalid boolean for {path}: {value!r}")


def parse_str(value: Any, path: str, *, default: str | None = None) -> str | None:
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValueError(f"Invalid config type for {path}: expected string")
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"Invalid config value for {path}: must be a non-empty string")
    return stripped


def parse_command(value: Any, path: str, *, default: tuple[str, ...]) -> tuple[str, ...]:
    """Accept a command either as a shell-style string or as a list of strings."""

    if value is None:
        return default
    if isinstance(value, str):
        parts = shlex.split(value)
    elif isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
        parts = list(value)
    else:
        raise ValueError(f"Invalid config type for {path}: expected string or list of strings")
    if not parts:
        raise ValueError(f"Invalid config value for {path}: command must not be empty")
    return tuple(parts)


def _resolve_path(value: str | None) -> str | None:
    if value is None:
        return None
    return os.path.abspath(os.path.expandvars(os.path.expanduser(value)))


@dataclass(frozen=True)
class PackagingConfig:
    enabled: bool = True
    socket_path: str = DEFAULT_SOCKET_PATH
    image_repo: str = DEFAULT_IMAGE_REPO
    image_tag: str = DEFAULT_IMAGE_TAG
    base_image: str = DEFAULT_BASE_IMAGE
    docker_command: tuple[str, ...] = ("docker",)

    @property
    def image_ref(self) -> str:
        return f"{self.image_repo}:{self.image_tag}"


@dataclass(frozen=True)
class BuildConfig:
    policies_root: str
    aggregator_path: str
    manifest_path: str
    build_dir: str
    artifact_name: str = DEFAULT_ARTIFACT_NAME
    interpreter: str = DEFAULT_INTERPRETER
    python_command: tuple[str, ...] = (sys.executable,)
    packaging: PackagingConfig = PackagingConfig()

    @property
    def artifact_path(self) -> str:
        return os.path.join(self.build_dir, self.artifact_name)

    @property
    def site_dir(self) -> str:
        return os.path.join(self.build_dir, "site-packages")

    @property
    def staging_dir(self) -> str:
        return os.path.join(self.build_dir, "staging")

    @property
    def log_dir(self) -> str:
        return os.path.join(self.build_dir, "logs")

    @staticmethod
    def from_dict(
        cfg: Mapping[str, Any],
        *,
        environ: Mapping[str, str] | None = None,
    ) -> tuple["BuildConfig", list[str]]:
        """
        Parse and validate builder configuration, returning (BuildConfig, warnings).

        Raises:
            ValueError: if required keys are missing or invalid.
        """

        if not isinstance(cfg, Mapping):
            raise ValueError("Config must be a mapping")
        env = os.environ if environ is None else environ

        warnings: list[str] = []
        strict_unknown_keys = parse_bool(cfg.get("strict", False), "strict")

        schema: Mapping[str, Any] = {
            "strict": None,
            "policies": {"root": None},
            "build": {
                "dir": None,
                "aggregator_path": None,
                "manifest_path": None,
                "artifact_name": None,
                "interpreter": None,
                "python": None,
            },
            "packaging": {
                "enabled": None,
                "socket": None,
                "image_repo": None,
                "image_tag": None,
                "base_image": None,
                "docker": None,
            },
        }

        unknown: list[str] = []
        for key, value in cfg.items():
            if key not in schema:
                unknown.append(str(key))
                continue
            subschema = schema[key]
            if isinstance(subschema, Mapping):
                if value is None:
                    continue
                if not isinstance(value, Mapping):
                    raise ValueError(f"Invalid config type for {key}: expected mapping")
                unknown.extend(f"{key}.{sub}" for sub in value if sub not in subschema)
        if unknown:
            message = "Unknown config keys: " + ", ".join(sorted(unknown))
            if strict_unknown_keys:
                raise ValueError(message)
            warnings.append(message)

        policies_cfg = cfg.get("policies") or {}
        build_cfg = cfg.get("build") or {}
        packaging_cfg = cfg.get("packaging") or {}

        policies_root = parse_str(policies_cfg.get("root"), "policies.root")
        if policies_root is None:
            raise ValueError("Missing required config: policies.root (or --policies)")

        build_dir = parse_str(build_cfg.get("dir"), "build.dir", default="build")
        build_dir = _resolve_path(build_dir)

        aggregator_path = parse_str(build_cfg.get("aggregator_path"), "build.aggregator_path")
        if aggregator_path is None:
            raise ValueError("Missing required config: build.aggregator_path (or --output)")
        if not aggregator_path.endswith(".py"):
            raise ValueError("Invalid config value for build.aggregator_path: must be a .py file")

        manifest_path = parse_str(build_cfg.get("manifest_path"), "build.manifest_path", default="engine.yaml")

        artifact_name = parse_str(
            build_cfg.get("artifact_name"), "build.artifact_name", default=DEFAULT_ARTIFACT_NAME
        )
        if os.path.basename(artifact_name) != artifact_name:
            raise ValueError("Invalid config value for build.artifact_name: must be a bare file name")

        interpreter = parse_str(build_cfg.get("interpreter"), "build.interpreter", default=DEFAULT_INTERPRETER)
        python_command = parse_command(build_cfg.get("python"), "build.python", default=(sys.executable,))

        image_repo = parse_str(
            env.get(IMAGE_REPO_ENV_VAR) or packaging_cfg.get("image_repo"),
            "packaging.image_repo",
            default=DEFAULT_IMAGE_REPO,
        )
        image_tag = parse_str(
            env.get(IMAGE_TAG_ENV_VAR) or packaging_cfg.get("image_tag"),
            "packaging.image_tag",
            default=DEFAULT_IMAGE_TAG,
        )

        packaging = PackagingConfig(
            enabled=parse_bool(packaging_cfg.get("enabled", True), "packaging.enabled"),
            socket_path=_default_socket_path(
                parse_str(packaging_cfg.get("socket"), "packaging.socket"), env
            ),
            image_repo=image_repo,
            image_tag=image_tag,
            base_image=parse_str(
                packaging_cfg.get("base_image"), "packaging.base_image", default=DEFAULT_BASE_IMAGE
            ),
            docker_command=parse_command(packaging_cfg.get("docker"), "packaging.docker", default=("docker",)),
        )

        return (
            BuildConfig(
                policies_root=_resolve_path(policies_root),
                aggregator_path=_resolve_path(aggregator_path),
                manifest_path=_resolve_path(manifest_path),
                build_dir=build_dir,
                artifact_name=artifact_name,
                interpreter=interpreter,
                python_command=python_command,
                packaging=packaging,
            ),
            warnings,
        )


def _default_socket_path(configured: str | None, env: Mapping[str, str]) -> str:
    if configured:
        return configured
    docker_host = (env.get("DOCKER_HOST") or "").strip()
    if docker_host.startswith("unix://"):
        return docker_host[len("unix://"):]
    return DEFAULT_SOCKET_PATH
