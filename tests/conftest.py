from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

SIMPLE_POLICY = """\
class Policy:
    def name(self):
        return {name!r}

    def execute(self, ctx, payload):
        return {{"policy": {name!r}, "payload": payload}}

    def validate(self):
        return None
"""


def write_policy_module(
    root: Path,
    dirname: str,
    identifier: str,
    *,
    name: str | None = None,
    source: str | None = None,
    requires: list[str] | None = None,
) -> Path:
    module_dir = root / dirname
    module_dir.mkdir(parents=True, exist_ok=True)
    manifest = f"module: {identifier}\n"
    if requires:
        manifest += "requires:\n" + "".join(f"  - {item}\n" for item in requires)
    (module_dir / "policy.yaml").write_text(manifest, encoding="utf-8")
    body = source if source is not None else SIMPLE_POLICY.format(name=name or dirname)
    (module_dir / "policy.py").write_text(textwrap.dedent(body), encoding="utf-8")
    return module_dir


def write_build_config(tmp_path: Path, policies_root: Path, **packaging: object) -> Path:
    socket = packaging.pop("socket", str(tmp_path / "no-docker.sock"))
    lines = [
        "policies:",
        f"  root: '{policies_root.as_posix()}'",
        "build:",
        f"  dir: '{(tmp_path / 'build').as_posix()}'",
        f"  aggregator_path: '{(tmp_path / 'build' / 'policy_registrations.py').as_posix()}'",
        f"  manifest_path: '{(tmp_path / 'engine.yaml').as_posix()}'",
        "packaging:",
        f"  socket: '{socket}'",
    ]
    for key, value in packaging.items():
        lines.append(f"  {key}: {value!r}" if isinstance(value, str) else f"  {key}: {value}")
    config_path = tmp_path / "builder.yaml"
    config_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return config_path


@pytest.fixture
def policies_root(tmp_path: Path) -> Path:
    root = tmp_path / "policies"
    root.mkdir()
    return root


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    for name in ("POLICY_BUILDER_CONFIG", "POLICY_ENGINE_IMAGE_REPO", "POLICY_ENGINE_TAG", "DOCKER_HOST"):
        monkeypatch.delenv(name, raising=False)
