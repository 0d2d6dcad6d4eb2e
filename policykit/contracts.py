from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


class PolicyError(RuntimeError):
    """Base class for policy registration and lookup errors."""


class PolicyValidationError(PolicyError):
    """Raised when a policy fails its own validation at registration time."""


class DuplicatePolicyError(PolicyError):
    """Raised when a second policy is registered under an existing name."""


class RegistryFrozenError(PolicyError):
    """Raised when registering into a registry after initialization finished."""


class UnknownPolicyError(PolicyError, LookupError):
    """Raised when looking up a policy name that was never registered."""


@dataclass(frozen=True)
class PolicyContext:
    """Per-batch execution context handed to every policy.

    Cancellation is advisory: the dispatcher never inspects it, each policy
    decides whether to honour `cancelled()` or `expired()`.
    """

    deadline: float | None = None
    logger: logging.Logger | None = None
    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self) -> None:
        self._cancel_event.set()

    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline


@runtime_checkable
class Policy(Protocol):
    def name(self) -> str:
        """Return the unique identifier for this policy."""

    def execute(self, ctx: PolicyContext, payload: Any) -> Any:
        """Run the policy logic. Errors are raised, never returned."""

    def validate(self) -> None:
        """Raise if the policy configuration is invalid."""
