"""Build pipeline: discover -> generate -> rewrite -> compile -> package.

The pipeline is strictly linear. Any stage may fail, which ends the run in
`BuildStage.FAILED` with the failing stage and its raw diagnostic recorded.
Two skips are non-fatal: directories that are not policy modules, and an
absent container daemon (the compiled artifact is then the only output).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from policy_builder.foundation.logging_utils import format_size
from policy_builder.framework.codegen import write_aggregator
from policy_builder.framework.compiler import compile_artifact
from policy_builder.framework.config import BuildConfig
from policy_builder.framework.discovery import PolicyModule, scan_policies
from policy_builder.framework.errors import BuildError
from policy_builder.framework.manifest import EngineManifest, resolve_dependencies, rewrite_manifest
from policy_builder.framework.packaging import build_image, docker_available


class BuildStage(str, Enum):
    DISCOVERING = "discovering"
    GENERATING = "generating"
    REWRITING = "rewriting"
    COMPILING = "compiling"
    PACKAGING = "packaging"
    DONE = "done"
    FAILED = "failed"


# Stages whose failure leaves an earlier artifact out of date.
_STALE_ON_FAILURE = frozenset({BuildStage.GENERATING, BuildStage.REWRITING, BuildStage.COMPILING})


@dataclass
class BuildReport:
    state: BuildStage = BuildStage.DISCOVERING
    failed_stage: BuildStage | None = None
    diagnostic: str | None = None
    modules: tuple[PolicyModule, ...] = ()
    artifact_path: str | None = None
    image: str | None = None
    stale_artifact: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is BuildStage.DONE

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


class BuildOrchestrator:
    def __init__(self, cfg: BuildConfig, *, logger: logging.Logger | None = None):
        self.cfg = cfg
        self.logger = logger or logging.getLogger(__name__)
        self.report = BuildReport()

    def _enter(self, stage: BuildStage) -> None:
        self.report.state = stage
        self.logger.info("== Stage: %s ==", stage.value)

    def _warn(self, message: str) -> None:
        self.report.warnings.append(message)
        self.logger.warning(message)

    def run(self) -> BuildReport:
        try:
            self._enter(BuildStage.DISCOVERING)
            modules = self.discover()

            self._enter(BuildStage.GENERATING)
            self.generate(modules)

            self._enter(BuildStage.REWRITING)
            manifest = self.rewrite(modules)

            self._enter(BuildStage.COMPILING)
            self.compile(manifest)

            self._enter(BuildStage.PACKAGING)
            self.package()
        except BuildError as exc:
            self._fail(str(exc), exc.diagnostic)
            return self.report
        except Exception as exc:  # noqa: BLE001
            self.logger.exception("Unexpected error during %s", self.report.state.value)
            self._fail(f"{type(exc).__name__}: {exc}", f"{type(exc).__name__}: {exc}")
            return self.report

        self.report.state = BuildStage.DONE
        self.logger.info("Build complete")
        return self.report

    def discover(self) -> tuple[PolicyModule, ...]:
        modules = scan_policies(self.cfg.policies_root, logger=self.logger)
        self.report.modules = modules
        if not modules:
            self._warn(f"No policy modules found under {self.cfg.policies_root}")
        else:
            self.logger.info(
                "Discovered %d policy modules: %s",
                len(modules),
                ", ".join(module.identifier for module in modules),
            )
        return modules

    def generate(self, modules: tuple[PolicyModule, ...]) -> None:
        source = write_aggregator(modules, self.cfg.aggregator_path)
        self.logger.info(
            "Generated %s with %d registrations", self.cfg.aggregator_path, len(source.registrations)
        )

    def rewrite(self, modules: tuple[PolicyModule, ...]) -> EngineManifest:
        manifest = rewrite_manifest(self.cfg.manifest_path, modules)
        self.logger.info(
            "Rewrote %s with %d substitutions", self.cfg.manifest_path, len(manifest.substitutions)
        )
        resolve_dependencies(
            manifest,
            site_dir=self.cfg.site_dir,
            build_dir=self.cfg.build_dir,
            python_command=self.cfg.python_command,
            logger=self.logger,
        )
        return manifest

    def compile(self, manifest: EngineManifest) -> None:
        artifact = compile_artifact(
            manifest,
            aggregator_path=self.cfg.aggregator_path,
            site_dir=self.cfg.site_dir,
            staging_dir=self.cfg.staging_dir,
            artifact_path=self.cfg.artifact_path,
            interpreter=self.cfg.interpreter,
            python_command=self.cfg.python_command,
            logger=self.logger,
        )
        self.report.artifact_path = artifact
        stale = artifact + ".stale"
        if os.path.exists(stale):
            os.unlink(stale)
            self.logger.info("Removed stale artifact %s", stale)
        self.logger.info("Binary: %s", artifact)
        self.logger.info("Size: %s", format_size(os.path.getsize(artifact)))

    def package(self) -> None:
        packaging = self.cfg.packaging
        if not packaging.enabled:
            self.logger.info("Packaging disabled; artifact available at %s", self.report.artifact_path)
            return
        if not docker_available(packaging.socket_path):
            self._warn(
                f"Docker socket not found at {packaging.socket_path}; skipping image creation. "
                f"Binary available at: {self.report.artifact_path}"
            )
            return

        image = build_image(
            self.report.artifact_path,
            cfg=packaging,
            context_dir=os.path.join(self.cfg.build_dir, "image-context"),
            logger=self.logger,
        )
        self.report.image = image
        self.logger.info("Final image created: %s", image)
        self.logger.info("To run the final image: docker run %s", image)

    def _fail(self, message: str, diagnostic: str | None) -> None:
        stage = self.report.state
        self.report.failed_stage = stage
        self.report.diagnostic = diagnostic or message
        self.report.state = BuildStage.FAILED
        self.logger.error("Build failed at stage %s: %s", stage.value, message)
        if diagnostic and diagnostic != message:
            self.logger.error("%s", diagnostic)
        if stage in _STALE_ON_FAILURE:
            self._mark_stale()

    def _mark_stale(self) -> None:
        artifact = self.cfg.artifact_path
        if not os.path.exists(artifact):
            return
        stale = artifact + ".stale"
        try:
            os.replace(artifact, stale)
        except OSError as exc:
            self.logger.error("Could not mark previous artifact %s as stale: %s", artifact, exc)
            return
        self.report.stale_artifact = stale
        self.logger.warning("Previous artifact moved to %s; it does not reflect the current policies", stale)


def run_build(cfg: BuildConfig, *, logger: logging.Logger | None = None) -> BuildReport:
    return BuildOrchestrator(cfg, logger=logger).run()
