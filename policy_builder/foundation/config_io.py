from __future__ import annotations

import os
from pathlib import Path
from collections.abc import Mapping
from typing import Any

import yaml

DEFAULT_CONFIG_ENV_VAR = "POLICY_BUILDER_CONFIG"

# Any of these marks the directory that holds `config/`.
REPO_MARKERS = ("pyproject.toml", ".git")


def find_repo_root(
    start: str | os.PathLike[str] | None = None,
    *,
    markers: tuple[str, ...] = REPO_MARKERS,
) -> str:
    here = Path(start or os.getcwd()).resolve()
    if here.is_file():
        here = here.parent

    for candidate in (here, *here.parents):
        if any((candidate / marker).exists() for marker in markers):
            return str(candidate)

    raise FileNotFoundError(f"No {' or '.join(markers)} found in {here} or any parent directory")


def load_yaml_mapping(path: str) -> dict[str, Any]:
    """Read a YAML file whose top level must be a mapping; an empty file is `{}`."""

    with open(path, "r", encoding="utf-8") as handle:
        try:
            payload = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"{path} must contain a YAML mapping, not {type(payload).__name__}")
    return dict(payload)


def _shape(value: Any) -> str:
    if isinstance(value, Mapping):
        return "mapping"
    if isinstance(value, (list, tuple)):
        return "list"
    return "scalar"


def deep_merge(base: Any, overlay: Any, *, path: str = "", origin: str = "overlay") -> Any:
    """
    Merge `overlay` onto `base` and return the result; neither input is modified.

    Mappings merge key by key, lists and scalars are replaced, and an explicit
    null in the overlay clears the value. `origin` names the overlay (a file
    path, or the command line) in error messages.
    """

    if overlay is None or base is None:
        return overlay

    base_shape, overlay_shape = _shape(base), _shape(overlay)
    if base_shape != overlay_shape:
        where = path or "<top level>"
        raise ValueError(
            f"Cannot merge {origin} at {where}: expected a {base_shape}, got {type(overlay).__name__}"
        )

    if base_shape == "list":
        return list(overlay)
    if base_shape == "scalar":
        return overlay

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        child = f"{path}.{key}" if path else str(key)
        merged[key] = deep_merge(base[key], value, path=child, origin=origin) if key in base else value
    return merged


def load_config(
    *,
    config_path: str | None = None,
    env_var: str = DEFAULT_CONFIG_ENV_VAR,
    config_rel_path: str = "config",
    start_dir: str | None = None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Load builder settings from YAML, returning (cfg, meta).

    Lookup order: explicit `config_path`, then `env_var`, then
    `<repo_root>/<config_rel_path>/config.yaml` plus an optional
    `config.local.yaml` overlay. Unlike an explicit path, a missing repo-level
    config is not an error: command-line flags can supply every setting.
    """

    # Env override (or explicit config_path) loads a single file (no local overlay).
    explicit_path = None
    if config_path is not None:
        explicit_path = str(config_path).strip() or None
    elif env_var:
        explicit_path = os.environ.get(env_var, "").strip() or None

    if explicit_path:
        expanded = os.path.abspath(os.path.expandvars(os.path.expanduser(explicit_path)))
        cfg = load_yaml_mapping(expanded)
        meta = {
            "mode": "env" if config_path is None else "explicit",
            "paths": [expanded],
            "env_var": env_var,
            "repo_root": None,
        }
        return cfg, meta

    if os.path.isabs(config_rel_path):
        config_directory = config_rel_path
        repo_root = None
    else:
        try:
            repo_root = find_repo_root(start_dir)
        except FileNotFoundError:
            return {}, {"mode": "none", "paths": [], "env_var": env_var, "repo_root": None}
        config_directory = os.path.join(repo_root, config_rel_path)

    base_config_path = os.path.join(config_directory, "config.yaml")
    local_overlay_path = os.path.join(config_directory, "config.local.yaml")

    if not os.path.exists(base_config_path):
        return {}, {"mode": "none", "paths": [], "env_var": env_var, "repo_root": repo_root}

    cfg = load_yaml_mapping(base_config_path)
    loaded_paths = [os.path.abspath(base_config_path)]
    mode = "base"

    if os.path.exists(local_overlay_path):
        overlay = load_yaml_mapping(local_overlay_path)
        cfg = deep_merge(cfg, overlay, origin=local_overlay_path)
        loaded_paths.append(os.path.abspath(local_overlay_path))
        mode = "base+local"

    meta = {"mode": mode, "paths": loaded_paths, "env_var": env_var, "repo_root": repo_root}
    return cfg, meta
