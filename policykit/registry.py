from __future__ import annotations

import difflib
from typing import Callable

from policykit.contracts import (
    DuplicatePolicyError,
    Policy,
    PolicyValidationError,
    RegistryFrozenError,
    UnknownPolicyError,
)


class PolicyRegistry:
    """Name -> policy catalogue, written once during startup and read-only afterwards."""

    def __init__(self) -> None:
        self._by_name: dict[str, Policy] = {}
        self._frozen = False

    def register(self, policy: Policy) -> None:
        if self._frozen:
            raise RegistryFrozenError("Policy registry is frozen; register policies during startup only")

        try:
            policy.validate()
        except Exception as exc:  # noqa: BLE001
            label = _safe_name(policy)
            raise PolicyValidationError(f"Policy {label} failed validation: {exc}") from exc

        name = policy.name()
        if not isinstance(name, str) or not name.strip():
            raise PolicyValidationError(
                f"Policy name must be a non-empty string (type={type(policy).__name__}, name={name!r})"
            )
        key = name.strip()
        if key in self._by_name:
            existing = type(self._by_name[key]).__module__
            raise DuplicatePolicyError(
                f"Duplicate policy name: {key} (already registered from {existing})"
            )
        self._by_name[key] = policy

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Policy:
        policy = self._by_name.get((name or "").strip())
        if policy is None:
            available = ", ".join(self.names()) or "<none>"
            hint = difflib.get_close_matches((name or "").strip(), list(self._by_name), n=1)
            suffix = f"; did you mean {hint[0]}?" if hint else ""
            raise UnknownPolicyError(f"Unknown policy: {name} (available: {available}){suffix}")
        return policy

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._by_name))

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.strip() in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)


def _safe_name(policy: Policy) -> str:
    try:
        return str(policy.name())
    except Exception:  # noqa: BLE001
        return f"<{type(policy).__name__}>"


def build_registry(register_all: Callable[[PolicyRegistry], None]) -> PolicyRegistry:
    """Populate a fresh registry through `register_all` and freeze it.

    Strict activation: the first registration error propagates and no registry
    is returned, so a process never starts with a partial policy set.
    """

    registry = PolicyRegistry()
    register_all(registry)
    registry.freeze()
    return registry
