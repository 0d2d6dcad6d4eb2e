"""Policy module discovery.

A policy module is an immediate subdirectory of the policy root holding a
`policy.yaml` manifest and a `policy.py` source file defining `class Policy`.
Directories that do not follow the convention are skipped; a manifest that is
present but malformed aborts discovery.
"""

from __future__ import annotations

import ast
import keyword
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from policy_builder.framework.errors import DiscoveryError

MANIFEST_FILENAME = "policy.yaml"
SOURCE_FILENAME = "policy.py"
CONTRACT_CLASS = "Policy"

# Top-level names owned by the built engine artifact.
RESERVED_TOP_LEVEL = frozenset({"policykit", "policy_registrations"})

_IGNORED_DIRS = frozenset({"__pycache__"})


@dataclass(frozen=True)
class PolicyModule:
    path: str
    identifier: str
    directory: str
    requires: tuple[str, ...] = ()
    alias: str | None = None

    @property
    def final_segment(self) -> str:
        return self.identifier.rsplit(".", 1)[-1]


def validate_identifier(raw: Any, *, source: str) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise DiscoveryError(f"{source}: 'module' must be a non-empty string (got {raw!r})")
    identifier = raw.strip()
    segments = identifier.split(".")
    for segment in segments:
        if not segment.isidentifier() or keyword.iskeyword(segment):
            raise DiscoveryError(
                f"{source}: 'module' must be a dotted Python import path (invalid segment {segment!r} in {identifier!r})"
            )
    if segments[0] in RESERVED_TOP_LEVEL:
        raise DiscoveryError(
            f"{source}: module {identifier!r} shadows the engine package {segments[0]!r}"
        )
    if segments[0] in sys.stdlib_module_names:
        raise DiscoveryError(
            f"{source}: module {identifier!r} shadows the standard library module {segments[0]!r}"
        )
    return identifier


def _parse_requires(raw: Any, *, source: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise DiscoveryError(f"{source}: 'requires' must be a list of requirement strings")
    requires: list[str] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, str) or not item.strip():
            raise DiscoveryError(f"{source}: requires[{idx}] must be a non-empty string (got {item!r})")
        requires.append(item.strip())
    return tuple(requires)


def read_module_manifest(manifest_path: str | os.PathLike[str]) -> tuple[str, tuple[str, ...]]:
    """Return (identifier, requires) declared by a module manifest."""

    source = str(manifest_path)
    try:
        with open(manifest_path, "r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise DiscoveryError(f"{source}: invalid YAML: {exc}") from exc
    except OSError as exc:
        raise DiscoveryError(f"{source}: cannot read manifest: {exc}") from exc

    if not isinstance(payload, Mapping):
        raise DiscoveryError(f"{source}: manifest must be a YAML mapping declaring 'module'")
    if "module" not in payload:
        raise DiscoveryError(f"{source}: manifest does not declare 'module'")

    identifier = validate_identifier(payload.get("module"), source=source)
    requires = _parse_requires(payload.get("requires"), source=source)
    return identifier, requires


def defines_contract(source_path: Path) -> bool | None:
    """
    Return whether `policy.py` binds `Policy` at module level.

    A class definition, an import (`from ._impl import Policy`) or a plain
    assignment all count. Returns None when the file does not parse; the
    compile stage reports the syntax error with the compiler's own diagnostic.
    """

    try:
        tree = ast.parse(source_path.read_text(encoding="utf-8"), filename=str(source_path))
    except (SyntaxError, ValueError):
        return None
    return any(CONTRACT_CLASS in _bound_names(node) for node in tree.body)


def _bound_names(node: ast.stmt) -> set[str]:
    if isinstance(node, ast.ClassDef):
        return {node.name}
    if isinstance(node, (ast.Import, ast.ImportFrom)):
        return {(alias.asname or alias.name).split(".", 1)[0] for alias in node.names}
    if isinstance(node, ast.Assign):
        return {target.id for target in node.targets if isinstance(target, ast.Name)}
    if isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
        return {node.target.id}
    return set()


def scan_policies(
    root: str | os.PathLike[str],
    *,
    logger: logging.Logger | None = None,
) -> tuple[PolicyModule, ...]:
    log = logger or logging.getLogger(__name__)

    root_path = Path(root)
    if not root_path.exists():
        raise DiscoveryError(f"Policy root does not exist: {root_path}")
    if not root_path.is_dir():
        raise DiscoveryError(f"Policy root is not a directory: {root_path}")
    try:
        entries = sorted(root_path.iterdir(), key=lambda p: p.name)
    except OSError as exc:
        raise DiscoveryError(f"Cannot read policy root {root_path}: {exc}") from exc

    root_abs = root_path.resolve()
    by_identifier: dict[str, PolicyModule] = {}

    for entry in entries:
        if entry.name.startswith(".") or entry.name in _IGNORED_DIRS or not entry.is_dir():
            log.debug("Ignoring %s", entry)
            continue

        manifest_path = entry / MANIFEST_FILENAME
        source_path = entry / SOURCE_FILENAME
        if not manifest_path.is_file():
            log.info("Skipping %s: no %s", entry.name, MANIFEST_FILENAME)
            continue

        identifier, requires = read_module_manifest(manifest_path)

        if not source_path.is_file():
            log.info("Skipping %s: no %s", entry.name, SOURCE_FILENAME)
            continue
        contract = defines_contract(source_path)
        if contract is False:
            log.info("Skipping %s: %s does not define %s", entry.name, SOURCE_FILENAME, CONTRACT_CLASS)
            continue
        if contract is None:
            log.debug("%s does not parse; leaving the diagnostic to the compile stage", source_path)

        module = PolicyModule(
            path=entry.name,
            identifier=identifier,
            directory=str(root_abs / entry.name),
            requires=requires,
        )
        existing = by_identifier.get(identifier)
        if existing is not None:
            raise DiscoveryError(
                f"Duplicate module identifier {identifier!r} declared by {existing.path} and {module.path}"
            )
        by_identifier[identifier] = module
        log.info("Discovered policy module %s (%s)", identifier, module.path)

    return tuple(by_identifier[key] for key in sorted(by_identifier))
