from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from typing import Iterable

from policy_builder.framework.discovery import PolicyModule
from policy_builder.framework.errors import CodegenError

GENERATED_HEADER = "# Code generated by policy-builder. DO NOT EDIT."

# Names bound at module level of the generated file.
RESERVED_ALIASES = frozenset({"annotations", "register_all", "registry"})

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregatorSource:
    imports: tuple[tuple[str, str], ...]
    registrations: tuple[str, ...]

    def render(self) -> str:
        lines = [
            GENERATED_HEADER,
            "# Regenerated on every build from the discovered policy modules.",
            '"""Registrations for every discovered policy module."""',
            "",
            "from __future__ import annotations",
            "",
        ]
        lines.extend(f"from {identifier} import policy as {alias}" for alias, identifier in self.imports)
        lines.extend(["", "", "def register_all(registry) -> None:"])
        if self.registrations:
            lines.extend(f"    {statement}" for statement in self.registrations)
        else:
            lines.append("    pass")
        return "\n".join(lines) + "\n"


def assign_aliases(modules: Iterable[PolicyModule]) -> tuple[PolicyModule, ...]:
    """
    Give each module a collision-free import alias.

    The alias is the final segment of the module identifier; later modules that
    collide get `_2`, `_3`, ... in input order, so sorted input yields stable
    aliases.
    """

    used: set[str] = set(RESERVED_ALIASES)
    assigned: list[PolicyModule] = []
    for module in modules:
        base = module.final_segment
        candidate = base
        counter = 1
        while candidate in used:
            counter += 1
            candidate = f"{base}_{counter}"
        used.add(candidate)
        assigned.append(dataclasses.replace(module, alias=candidate))
    return tuple(assigned)


def build_aggregator(modules: Iterable[PolicyModule]) -> AggregatorSource:
    aliased = assign_aliases(sorted(modules, key=lambda module: module.identifier))
    return AggregatorSource(
        imports=tuple((module.alias, module.identifier) for module in aliased),
        registrations=tuple(f"registry.register({module.alias}.Policy())" for module in aliased),
    )


def render_aggregator(modules: Iterable[PolicyModule]) -> str:
    return build_aggregator(modules).render()


def write_aggregator(modules: Iterable[PolicyModule], output_path: str) -> AggregatorSource:
    source = build_aggregator(modules)
    text = source.render()
    try:
        parent = os.path.dirname(os.path.abspath(output_path))
        os.makedirs(parent, exist_ok=True)
        with open(output_path, "w", encoding="utf-8", newline="\n") as handle:
            handle.write(text)
    except OSError as exc:
        raise CodegenError(f"Failed to write aggregator source {output_path}: {exc}") from exc

    logger.debug("Wrote %d registrations to %s", len(source.registrations), output_path)
    return source
