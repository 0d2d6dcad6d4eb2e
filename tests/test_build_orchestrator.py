import json
import logging
import subprocess
import sys

from conftest import write_build_config, write_policy_module
from policy_builder import cli
from policy_builder.foundation.config_io import load_config
from policy_builder.framework import orchestrator
from policy_builder.framework.config import BuildConfig
from policy_builder.framework.orchestrator import BuildStage, run_build

BROKEN_SOURCE = """\
class Policy:
    def name(self)
        return "alpha"
"""


def _config(config_path):
    raw, _meta = load_config(config_path=str(config_path))
    cfg, _warnings = BuildConfig.from_dict(raw, environ={})
    return cfg


def _quiet_logger():
    logger = logging.getLogger("policy_builder.tests")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def test_build_without_docker_produces_runnable_artifact(tmp_path, policies_root):
    write_policy_module(policies_root, "alpha", "org.alpha", name="alpha")
    write_policy_module(policies_root, "beta", "org.beta", name="beta")
    config_path = write_build_config(tmp_path, policies_root)

    rc = cli.main(["build", "--config", str(config_path)])

    assert rc == 0
    artifact = tmp_path / "build" / "policy-engine.pyz"
    assert artifact.is_file()

    proc = subprocess.run(
        [sys.executable, str(artifact), "--list"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0, proc.stderr
    assert proc.stdout.splitlines() == ["alpha", "beta"]

    proc = subprocess.run(
        [sys.executable, str(artifact), "--json"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0, proc.stderr
    batch = json.loads(proc.stdout)
    assert sorted(batch["results"]) == ["alpha", "beta"]
    assert batch["errors"] == {}

    proc = subprocess.run([sys.executable, str(artifact)], capture_output=True, text=True, check=False)
    assert proc.returncode == 0, proc.stderr
    assert "Policy Engine Completed Successfully" in proc.stdout


def test_missing_docker_socket_is_a_soft_degrade(tmp_path, policies_root):
    write_policy_module(policies_root, "alpha", "org.alpha")
    cfg = _config(write_build_config(tmp_path, policies_root))

    report = run_build(cfg, logger=_quiet_logger())

    assert report.state is BuildStage.DONE
    assert report.exit_code == 0
    assert report.image is None
    assert any("Docker socket not found" in warning for warning in report.warnings)
    assert report.artifact_path == cfg.artifact_path


def test_empty_policy_root_builds_engine_without_policies(tmp_path, policies_root):
    cfg = _config(write_build_config(tmp_path, policies_root))

    report = run_build(cfg, logger=_quiet_logger())

    assert report.succeeded
    assert "def register_all(registry) -> None:\n    pass\n" in (
        tmp_path / "build" / "policy_registrations.py"
    ).read_text(encoding="utf-8")
    proc = subprocess.run(
        [sys.executable, cfg.artifact_path], capture_output=True, text=True, check=False
    )
    assert proc.returncode == 0
    assert "Warning: No policies registered" in proc.stdout


def test_discovery_failure_aborts_before_any_output(tmp_path, policies_root):
    bad = write_policy_module(policies_root, "bad", "org.bad")
    (bad / "policy.yaml").write_text("module: 42\n", encoding="utf-8")
    manifest_path = tmp_path / "engine.yaml"
    manifest_path.write_text("name: untouched\n", encoding="utf-8")
    cfg = _config(write_build_config(tmp_path, policies_root))

    report = run_build(cfg, logger=_quiet_logger())

    assert report.state is BuildStage.FAILED
    assert report.failed_stage is BuildStage.DISCOVERING
    assert "'module' must be a non-empty string" in report.diagnostic
    assert not (tmp_path / "build" / "policy_registrations.py").exists()
    assert manifest_path.read_text(encoding="utf-8") == "name: untouched\n"


def test_compile_failure_marks_previous_artifact_stale(tmp_path, policies_root):
    alpha = write_policy_module(policies_root, "alpha", "org.alpha", name="alpha")
    cfg = _config(write_build_config(tmp_path, policies_root))
    assert run_build(cfg, logger=_quiet_logger()).succeeded

    (alpha / "policy.py").write_text(BROKEN_SOURCE, encoding="utf-8")
    report = run_build(cfg, logger=_quiet_logger())

    assert report.state is BuildStage.FAILED
    assert report.failed_stage is BuildStage.COMPILING
    assert "SyntaxError" in report.diagnostic
    assert report.exit_code == 1
    assert report.stale_artifact == cfg.artifact_path + ".stale"
    assert (tmp_path / "build" / "policy-engine.pyz.stale").is_file()
    assert not (tmp_path / "build" / "policy-engine.pyz").exists()

    write_policy_module(policies_root, "alpha", "org.alpha", name="alpha")
    report = run_build(cfg, logger=_quiet_logger())

    assert report.succeeded
    assert (tmp_path / "build" / "policy-engine.pyz").is_file()
    assert not (tmp_path / "build" / "policy-engine.pyz.stale").exists()


def test_policy_importing_missing_module_fails_link_check(tmp_path, policies_root):
    write_policy_module(
        policies_root,
        "alpha",
        "org.alpha",
        source="import definitely_not_installed_anywhere\n\n\nclass Policy:\n    pass\n",
    )
    cfg = _config(write_build_config(tmp_path, policies_root))

    report = run_build(cfg, logger=_quiet_logger())

    assert report.failed_stage is BuildStage.COMPILING
    assert "definitely_not_installed_anywhere" in report.diagnostic


def test_packaging_failure_is_fatal_with_verbatim_output(tmp_path, policies_root, monkeypatch):
    write_policy_module(policies_root, "alpha", "org.alpha")
    config_path = write_build_config(
        tmp_path,
        policies_root,
        docker=[sys.executable, "-c", "raise SystemExit('docker daemon exploded')"],
    )
    cfg = _config(config_path)
    monkeypatch.setattr(orchestrator, "docker_available", lambda socket_path: True)

    report = run_build(cfg, logger=_quiet_logger())

    assert report.failed_stage is BuildStage.PACKAGING
    assert "docker daemon exploded" in report.diagnostic
    assert report.exit_code == 1
    # A packaging failure leaves the freshly compiled artifact in place.
    assert (tmp_path / "build" / "policy-engine.pyz").is_file()
    assert report.stale_artifact is None


def test_packaging_disabled_skips_docker(tmp_path, policies_root, monkeypatch):
    write_policy_module(policies_root, "alpha", "org.alpha")
    cfg = _config(write_build_config(tmp_path, policies_root, enabled=False))

    def _unexpected(socket_path):
        raise AssertionError("docker must not be probed")

    monkeypatch.setattr(orchestrator, "docker_available", _unexpected)

    report = run_build(cfg, logger=_quiet_logger())

    assert report.succeeded
    assert report.warnings == []


def test_build_cli_reports_failed_stage(tmp_path, policies_root, capsys):
    write_policy_module(policies_root, "alpha", "org.alpha", source=BROKEN_SOURCE)
    config_path = write_build_config(tmp_path, policies_root)

    rc = cli.main(["build", "--config", str(config_path)])

    assert rc == 1
    err = capsys.readouterr().err
    assert "Build failed at stage compiling:" in err
    assert "SyntaxError" in err


def test_identifier_shadowing_standard_library_is_rejected(tmp_path, policies_root):
    write_policy_module(policies_root, "alpha", "json.alpha", name="alpha")
    cfg = _config(write_build_config(tmp_path, policies_root))

    report = run_build(cfg, logger=_quiet_logger())

    assert report.failed_stage is BuildStage.DISCOVERING
    assert "shadows the standard library module 'json'" in report.diagnostic
    assert not (tmp_path / "build" / "policy-engine.pyz").exists()


def test_failure_only_visible_inside_the_archive_fails_the_build(tmp_path, policies_root):
    alpha = write_policy_module(
        policies_root,
        "alpha",
        "org.alpha",
        source=(
            "from pathlib import Path\n"
            "\n"
            'THRESHOLDS = Path(__file__).with_name("thresholds.txt").read_text(encoding="utf-8")\n'
            "\n"
            "\n"
            "class Policy:\n"
            "    def name(self):\n"
            '        return "alpha"\n'
            "\n"
            "    def execute(self, ctx, payload):\n"
            "        return THRESHOLDS\n"
            "\n"
            "    def validate(self):\n"
            "        return None\n"
        ),
    )
    (alpha / "thresholds.txt").write_text("0.5\n", encoding="utf-8")
    cfg = _config(write_build_config(tmp_path, policies_root))

    report = run_build(cfg, logger=_quiet_logger())

    assert report.failed_stage is BuildStage.COMPILING
    assert "thresholds.txt" in report.diagnostic
    assert not (tmp_path / "build" / "policy-engine.pyz").exists()
    assert not (tmp_path / "build" / ".policy-engine.pyz.tmp").exists()


def test_policy_failing_validation_fails_the_build(tmp_path, policies_root):
    write_policy_module(
        policies_root,
        "alpha",
        "org.alpha",
        source=(
            "class Policy:\n"
            "    def name(self):\n"
            '        return "alpha"\n'
            "\n"
            "    def execute(self, ctx, payload):\n"
            "        return None\n"
            "\n"
            "    def validate(self):\n"
            '        raise ValueError("threshold must be positive")\n'
        ),
    )
    cfg = _config(write_build_config(tmp_path, policies_root))

    report = run_build(cfg, logger=_quiet_logger())

    assert report.failed_stage is BuildStage.COMPILING
    assert "threshold must be positive" in report.diagnostic


def test_modules_sharing_a_final_segment_link_and_register(tmp_path, policies_root):
    write_policy_module(policies_root, "org_alpha", "org.alpha", name="alpha-org")
    write_policy_module(policies_root, "other_alpha", "other.alpha", name="alpha-other")
    cfg = _config(write_build_config(tmp_path, policies_root))

    report = run_build(cfg, logger=_quiet_logger())

    assert report.succeeded, report.diagnostic
    registrations = (tmp_path / "build" / "policy_registrations.py").read_text(encoding="utf-8")
    assert "from org.alpha import policy as alpha\n" in registrations
    assert "from other.alpha import policy as alpha_2\n" in registrations

    proc = subprocess.run(
        [sys.executable, cfg.artifact_path, "--list"], capture_output=True, text=True, check=False
    )
    assert proc.returncode == 0, proc.stderr
    assert proc.stdout.splitlines() == ["alpha-org", "alpha-other"]
