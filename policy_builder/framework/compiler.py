"""Link the engine kernel, generated registrations and policy modules into one `.pyz`."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import zipapp
from pathlib import Path

import policykit
from policy_builder.framework.errors import CompileError
from policy_builder.framework.manifest import EngineManifest
from policykit.main import REGISTRATIONS_MODULE

_IGNORE = shutil.ignore_patterns("__pycache__", "*.pyc", ".*")

MAIN_TEMPLATE = """\
# Code generated by policy-builder. DO NOT EDIT.
import sys

from {module} import {function}

sys.exit({function}())
"""


def _kernel_dir() -> Path:
    return Path(policykit.__file__).resolve().parent


def _ensure_packages(staging: Path, identifier: str) -> None:
    current = staging
    for segment in identifier.split("."):
        current = current / segment
        current.mkdir(exist_ok=True)
        init = current / "__init__.py"
        if not init.exists():
            init.write_text("", encoding="utf-8")


def stage_sources(
    manifest: EngineManifest,
    *,
    aggregator_path: str,
    site_dir: str | None,
    staging_dir: str,
) -> list[Path]:
    """Assemble the artifact tree; returns the first-party paths to byte-compile."""

    staging = Path(staging_dir)
    if staging.exists():
        shutil.rmtree(staging)
    staging.mkdir(parents=True)

    if site_dir and os.path.isdir(site_dir):
        shutil.copytree(site_dir, staging, ignore=shutil.ignore_patterns("bin", "__pycache__"), dirs_exist_ok=True)

    kernel_target = staging / "policykit"
    if kernel_target.exists():
        shutil.rmtree(kernel_target)
    shutil.copytree(_kernel_dir(), kernel_target, ignore=_IGNORE)

    registrations = staging / f"{REGISTRATIONS_MODULE}.py"
    shutil.copyfile(aggregator_path, registrations)

    first_party: list[Path] = [kernel_target, registrations]
    for identifier in sorted(manifest.substitutions):
        target = staging.joinpath(*identifier.split("."))
        _ensure_packages(staging, identifier)
        shutil.copytree(manifest.substitutions[identifier], target, ignore=_IGNORE, dirs_exist_ok=True)
        first_party.append(target)

    module, function = manifest.entrypoint.split(":", 1)
    (staging / "__main__.py").write_text(
        MAIN_TEMPLATE.format(module=module.strip(), function=function.strip()), encoding="utf-8"
    )
    return first_party


def _run_checked(cmd: list[str], *, step: str, env: dict[str, str] | None = None, cwd: str | None = None) -> None:
    try:
        proc = subprocess.run(cmd, check=False, capture_output=True, text=True, env=env, cwd=cwd)
    except OSError as exc:
        raise CompileError(f"{step}: cannot run {cmd[0]}: {exc}") from exc
    if proc.returncode != 0:
        diagnostic = "\n".join(part for part in (proc.stdout, proc.stderr) if part and part.strip())
        raise CompileError(
            f"{step} failed (exit={proc.returncode})",
            diagnostic=diagnostic or f"{step} exited with status {proc.returncode}",
        )


def _archive_filter(path: Path) -> bool:
    return "__pycache__" not in path.parts and path.suffix != ".pyc"


def compile_artifact(
    manifest: EngineManifest,
    *,
    aggregator_path: str,
    site_dir: str | None,
    staging_dir: str,
    artifact_path: str,
    interpreter: str,
    python_command: tuple[str, ...],
    logger: logging.Logger | None = None,
) -> str:
    """
    Build the engine artifact.

    Steps: stage sources, byte-compile first-party code, import the generated
    registrations as a link check, archive with zipapp, then run the archive
    with `--list` so zipimport-only failures surface here. The artifact path is
    only replaced once every step succeeded.
    """

    log = logger or logging.getLogger(__name__)

    try:
        first_party = stage_sources(
            manifest, aggregator_path=aggregator_path, site_dir=site_dir, staging_dir=staging_dir
        )
    except OSError as exc:
        raise CompileError(f"Failed to stage engine sources: {exc}") from exc

    log.info("Byte-compiling %d first-party paths", len(first_party))
    _run_checked(
        [*python_command, "-m", "compileall", "-q", *(str(path) for path in first_party)],
        step="compileall",
    )

    log.info("Link-checking generated registrations")
    env = dict(os.environ)
    env["PYTHONPATH"] = staging_dir
    env["PYTHONDONTWRITEBYTECODE"] = "1"
    _run_checked(
        [*python_command, "-c", f"import {REGISTRATIONS_MODULE}"],
        step="import check",
        env=env,
        cwd=staging_dir,
    )

    target_dir = os.path.dirname(os.path.abspath(artifact_path))
    tmp_artifact = os.path.join(target_dir, f".{os.path.basename(artifact_path)}.tmp")
    try:
        os.makedirs(target_dir, exist_ok=True)
        zipapp.create_archive(
            staging_dir,
            target=tmp_artifact,
            interpreter=interpreter,
            filter=_archive_filter,
            compressed=True,
        )
    except (OSError, zipapp.ZipAppError) as exc:
        _discard(tmp_artifact)
        raise CompileError(f"Failed to archive engine: {exc}") from exc

    log.info("Smoke-running archived engine")
    archive_env = dict(os.environ)
    archive_env.pop("PYTHONPATH", None)
    archive_env["PYTHONDONTWRITEBYTECODE"] = "1"
    try:
        _run_checked(
            [*python_command, tmp_artifact, "--list"],
            step="archive smoke run",
            env=archive_env,
            cwd=target_dir,
        )
        os.replace(tmp_artifact, artifact_path)
    except CompileError:
        _discard(tmp_artifact)
        raise
    except OSError as exc:
        _discard(tmp_artifact)
        raise CompileError(f"Failed to install engine artifact {artifact_path}: {exc}") from exc

    return artifact_path


def _discard(path: str) -> None:
    if os.path.exists(path):
        os.unlink(path)
