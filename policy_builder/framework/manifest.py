"""Engine build manifest (`engine.yaml`) rewriting and dependency resolution.

The manifest carries one substitution per discovered policy module, mapping the
module's declared identifier to its directory on disk. Rewrites are idempotent:
the same module set always yields byte-identical YAML.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping

import yaml

from policy_builder.framework.discovery import MANIFEST_FILENAME, PolicyModule, read_module_manifest
from policy_builder.framework.errors import DiscoveryError, ManifestError, ManifestResolutionError

DEFAULT_ENGINE_NAME = "policy-engine"
DEFAULT_ENTRYPOINT = "policykit.main:main"

_KNOWN_KEYS = ("name", "entrypoint", "requires", "substitutions")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineManifest:
    name: str = DEFAULT_ENGINE_NAME
    entrypoint: str = DEFAULT_ENTRYPOINT
    requires: tuple[str, ...] = ()
    substitutions: Mapping[str, str] = field(default_factory=dict)
    extra: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "entrypoint": self.entrypoint,
            "requires": list(self.requires),
            "substitutions": {key: self.substitutions[key] for key in sorted(self.substitutions)},
        }
        for key in sorted(self.extra):
            payload[key] = self.extra[key]
        return payload


@dataclass(frozen=True)
class Resolution:
    requirements: tuple[str, ...]
    site_dir: str
    ran_installer: bool


def _parse_manifest(payload: Any, *, source: str) -> EngineManifest:
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ManifestError(f"{source}: manifest must be a YAML mapping")

    name = payload.get("name", DEFAULT_ENGINE_NAME)
    if not isinstance(name, str) or not name.strip():
        raise ManifestError(f"{source}: 'name' must be a non-empty string")

    entrypoint = payload.get("entrypoint", DEFAULT_ENTRYPOINT)
    if not isinstance(entrypoint, str) or entrypoint.count(":") != 1:
        raise ManifestError(f"{source}: 'entrypoint' must look like 'package.module:function'")

    requires = payload.get("requires") or []
    if not isinstance(requires, list) or not all(isinstance(item, str) and item.strip() for item in requires):
        raise ManifestError(f"{source}: 'requires' must be a list of requirement strings")

    substitutions = payload.get("substitutions") or {}
    if not isinstance(substitutions, Mapping):
        raise ManifestError(f"{source}: 'substitutions' must be a mapping of module -> path")
    for key, value in substitutions.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise ManifestError(f"{source}: substitution {key!r} must map a module name to a path string")

    extra = {key: value for key, value in payload.items() if key not in _KNOWN_KEYS}
    return EngineManifest(
        name=name.strip(),
        entrypoint=entrypoint.strip(),
        requires=tuple(item.strip() for item in requires),
        substitutions=dict(substitutions),
        extra=extra,
    )


def load_manifest(path: str) -> EngineManifest:
    if not os.path.exists(path):
        logger.info("Engine manifest %s not found; starting from defaults", path)
        return EngineManifest()
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ManifestError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ManifestError(f"Cannot read engine manifest {path}: {exc}") from exc
    return _parse_manifest(payload, source=path)


def apply_substitutions(manifest: EngineManifest, modules: Iterable[PolicyModule]) -> EngineManifest:
    """Point each module identifier at its directory, replacing any earlier entry."""

    substitutions = dict(manifest.substitutions)
    for module in modules:
        previous = substitutions.get(module.identifier)
        target = os.path.abspath(module.directory)
        if previous is not None and previous != target:
            logger.info("Replacing substitution %s: %s -> %s", module.identifier, previous, target)
        else:
            logger.debug("Adding substitution %s -> %s", module.identifier, target)
        substitutions[module.identifier] = target
    return replace(manifest, substitutions=substitutions)


def tidy_manifest(manifest: EngineManifest, identifiers: Iterable[str]) -> EngineManifest:
    """Drop substitutions no longer backed by a discovered module and normalize ordering."""

    wanted = set(identifiers)
    kept: dict[str, str] = {}
    for key in sorted(manifest.substitutions):
        if key in wanted:
            kept[key] = manifest.substitutions[key]
        else:
            logger.info("Pruning stale substitution %s -> %s", key, manifest.substitutions[key])
    requires = tuple(sorted(set(manifest.requires)))
    return replace(manifest, substitutions=kept, requires=requires)


def dump_manifest(manifest: EngineManifest) -> str:
    header = "# Engine build manifest. `substitutions` is rewritten by policy-builder on every build.\n"
    return header + yaml.safe_dump(
        manifest.to_dict(),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )


def write_manifest(path: str, manifest: EngineManifest) -> None:
    text = dump_manifest(manifest)
    directory = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".engine-", suffix=".yaml.tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
                handle.write(text)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
    except OSError as exc:
        raise ManifestError(f"Failed to write engine manifest {path}: {exc}") from exc


def rewrite_manifest(path: str, modules: Iterable[PolicyModule]) -> EngineManifest:
    modules = tuple(modules)
    manifest = apply_substitutions(load_manifest(path), modules)
    manifest = tidy_manifest(manifest, (module.identifier for module in modules))
    write_manifest(path, manifest)
    return manifest


def collect_requirements(manifest: EngineManifest) -> tuple[str, ...]:
    """
    Union of core and module requirements.

    Every substitution must still point at a module declaring the same
    identifier; otherwise the identifier cannot be satisfied.
    """

    requirements: set[str] = set(manifest.requires)
    for identifier in sorted(manifest.substitutions):
        directory = manifest.substitutions[identifier]
        module_manifest = os.path.join(directory, MANIFEST_FILENAME)
        if not os.path.isfile(module_manifest):
            raise ManifestResolutionError(
                f"Module {identifier} cannot be satisfied: {module_manifest} does not exist"
            )
        try:
            declared, requires = read_module_manifest(module_manifest)
        except DiscoveryError as exc:
            raise ManifestResolutionError(
                f"Module {identifier} cannot be satisfied: {exc}", diagnostic=exc.diagnostic
            ) from exc
        if declared != identifier:
            raise ManifestResolutionError(
                f"Module {identifier} cannot be satisfied: {directory} declares {declared}"
            )
        requirements.update(requires)
    return tuple(sorted(requirements))


def resolve_dependencies(
    manifest: EngineManifest,
    *,
    site_dir: str,
    build_dir: str,
    python_command: tuple[str, ...],
    logger: logging.Logger | None = None,
) -> Resolution:
    log = logger or logging.getLogger(__name__)

    requirements = collect_requirements(manifest)

    os.makedirs(build_dir, exist_ok=True)
    requirements_path = os.path.join(build_dir, "requirements.txt")
    with open(requirements_path, "w", encoding="utf-8", newline="\n") as handle:
        handle.write("".join(f"{line}\n" for line in requirements))

    if os.path.isdir(site_dir):
        shutil.rmtree(site_dir)
    os.makedirs(site_dir)

    if not requirements:
        log.info("No third-party requirements to resolve")
        return Resolution(requirements=(), site_dir=site_dir, ran_installer=False)

    cmd = [
        *python_command,
        "-m",
        "pip",
        "install",
        "--no-input",
        "--disable-pip-version-check",
        "--target",
        site_dir,
        "-r",
        requirements_path,
    ]
    log.info("Resolving %d requirements: %s", len(requirements), ", ".join(requirements))
    log.debug("Running %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
    except OSError as exc:
        raise ManifestResolutionError(f"Cannot run dependency resolver: {exc}") from exc
    if proc.returncode != 0:
        diagnostic = "\n".join(part for part in (proc.stdout, proc.stderr) if part and part.strip())
        raise ManifestResolutionError(
            f"Dependency resolution failed (pip exit={proc.returncode})",
            diagnostic=diagnostic or f"pip exited with status {proc.returncode}",
        )
    return Resolution(requirements=requirements, site_dir=site_dir, ran_installer=True)
