import importlib.util
from pathlib import Path

import pytest

from policy_builder.framework.discovery import scan_policies
from policykit import PolicyContext, PolicyRegistry

EXAMPLES_DIR = Path(__file__).resolve().parents[1] / "example_policies"


def _load(dirname):
    path = EXAMPLES_DIR / dirname / "policy.py"
    spec = importlib.util.spec_from_file_location(f"example_policy_{dirname}", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.Policy()


def test_examples_are_discovered():
    modules = scan_policies(EXAMPLES_DIR)

    assert [module.identifier for module in modules] == [
        "policy_examples.uppercase",
        "policy_examples.validator",
        "policy_examples.yaml_roundtrip",
    ]
    assert modules[2].requires == ("PyYAML>=6.0",)


def test_examples_register_under_distinct_names():
    registry = PolicyRegistry()
    for dirname in ("uppercase", "validator", "yaml_roundtrip"):
        registry.register(_load(dirname))

    assert registry.names() == ("uppercase-policy", "validator-policy", "yaml-roundtrip-policy")


def test_uppercase_transforms_strings_and_string_lists():
    result = _load("uppercase").execute(PolicyContext(), {"message": "hi", "data": ["a", "b"], "n": 3})

    assert result["output"] == {"message": "HI", "data": ["A", "B"], "n": 3}


def test_uppercase_rejects_non_mapping_payload():
    with pytest.raises(TypeError):
        _load("uppercase").execute(PolicyContext(), ["not", "a", "mapping"])


def test_validator_reports_missing_fields():
    policy = _load("validator")

    passed = policy.execute(PolicyContext(), {"message": "x", "data": []})
    failed = policy.execute(PolicyContext(), {"message": "x"})

    assert passed["status"] == "PASSED"
    assert failed["status"] == "FAILED"
    assert failed["missing_fields"] == ["data"]


def test_yaml_roundtrip_preserves_payload():
    payload = {"message": "hello", "data": ["item1", "item2"]}

    result = _load("yaml_roundtrip").execute(PolicyContext(), payload)

    assert result["parsed"] == payload
    assert "message: hello" in result["yaml_output"]
