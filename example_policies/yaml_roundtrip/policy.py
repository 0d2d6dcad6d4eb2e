"""Round-trips the payload through YAML to show a policy with its own dependency."""

from __future__ import annotations

from typing import Any

import yaml


class Policy:
    def name(self) -> str:
        return "yaml-roundtrip-policy"

    def execute(self, ctx: Any, payload: Any) -> dict[str, Any]:
        if not isinstance(payload, dict):
            raise TypeError(f"expected a mapping payload, got {type(payload).__name__}")

        yaml_output = yaml.safe_dump(payload, sort_keys=True)
        parsed = yaml.safe_load(yaml_output)

        return {
            "policy": self.name(),
            "action": "yaml parsing",
            "library": f"PyYAML {yaml.__version__}",
            "input": payload,
            "yaml_output": yaml_output,
            "parsed": parsed,
        }

    def validate(self) -> None:
        return None
