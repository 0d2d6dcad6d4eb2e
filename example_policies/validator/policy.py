"""Checks that the payload carries every required field."""

from __future__ import annotations

from typing import Any

REQUIRED_FIELDS = ("message", "data")


class Policy:
    def __init__(self, required_fields: tuple[str, ...] = REQUIRED_FIELDS):
        self.required_fields = required_fields

    def name(self) -> str:
        return "validator-policy"

    def execute(self, ctx: Any, payload: Any) -> dict[str, Any]:
        if not isinstance(payload, dict):
            raise TypeError(f"expected a mapping payload, got {type(payload).__name__}")

        valid = [field for field in self.required_fields if field in payload]
        missing = [field for field in self.required_fields if field not in payload]

        result: dict[str, Any] = {
            "policy": self.name(),
            "action": "field validation",
            "required_fields": list(self.required_fields),
            "valid_fields": valid,
            "missing_fields": missing,
        }
        if missing:
            result["status"] = "FAILED"
            result["message"] = f"Missing required fields: {missing}"
        else:
            result["status"] = "PASSED"
            result["message"] = "All required fields present"
        return result

    def validate(self) -> None:
        if not self.required_fields:
            raise ValueError("validator-policy needs at least one required field")
