"""Policy runtime kernel embedded into every built engine artifact.

This package is intentionally independent of `policy_builder.*`: it is copied
verbatim into the artifact, next to the generated registrations module.
"""

from policykit.contracts import (
    DuplicatePolicyError,
    Policy,
    PolicyContext,
    PolicyError,
    PolicyValidationError,
    RegistryFrozenError,
    UnknownPolicyError,
)
from policykit.dispatch import BatchResult, run_batch
from policykit.registry import PolicyRegistry, build_registry

__all__ = [
    "BatchResult",
    "DuplicatePolicyError",
    "Policy",
    "PolicyContext",
    "PolicyError",
    "PolicyRegistry",
    "PolicyValidationError",
    "RegistryFrozenError",
    "UnknownPolicyError",
    "build_registry",
    "run_batch",
]
