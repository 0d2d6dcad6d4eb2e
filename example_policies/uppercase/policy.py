"""Converts every string value of the payload to upper case."""

from __future__ import annotations

from typing import Any


class Policy:
    def name(self) -> str:
        return "uppercase-policy"

    def execute(self, ctx: Any, payload: Any) -> dict[str, Any]:
        if not isinstance(payload, dict):
            raise TypeError(f"expected a mapping payload, got {type(payload).__name__}")

        transformed: dict[str, Any] = {}
        for key, value in payload.items():
            if isinstance(value, str):
                transformed[key] = value.upper()
            elif isinstance(value, list) and all(isinstance(item, str) for item in value):
                transformed[key] = [item.upper() for item in value]
            else:
                transformed[key] = value

        return {
            "policy": self.name(),
            "action": "uppercase transformation",
            "input": payload,
            "output": transformed,
        }

    def validate(self) -> None:
        return None
