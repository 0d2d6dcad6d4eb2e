from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from policykit.contracts import PolicyContext
from policykit.registry import PolicyRegistry


@dataclass
class BatchResult:
    results: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {"results": dict(self.results), "errors": dict(self.errors)}


def run_batch(
    registry: PolicyRegistry,
    ctx: PolicyContext,
    payload: Any,
    *,
    logger: logging.Logger | None = None,
) -> BatchResult:
    """Execute every registered policy once, in name order.

    A policy that raises is logged and recorded under `errors`; the remaining
    policies still run.
    """

    log = logger or logging.getLogger(__name__)
    batch = BatchResult()

    for name in registry.names():
        policy = registry.get(name)
        log.info("--- Executing policy: %s ---", name)
        try:
            result = policy.execute(ctx, payload)
        except Exception as exc:  # noqa: BLE001
            log.error("Error executing policy %s: %s", name, exc)
            batch.errors[name] = f"{type(exc).__name__}: {exc}"
            continue
        batch.results[name] = result

    return batch
