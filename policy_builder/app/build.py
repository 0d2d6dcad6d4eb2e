from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from typing import Any

from policy_builder.foundation.config_io import deep_merge, load_config
from policy_builder.foundation.logging_utils import setup_build_logger
from policy_builder.framework.codegen import render_aggregator, write_aggregator
from policy_builder.framework.config import BuildConfig
from policy_builder.framework.discovery import scan_policies
from policy_builder.framework.errors import BuildError
from policy_builder.framework.orchestrator import run_build

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}

    def put(section: str, key: str, value: Any) -> None:
        if value is not None:
            overrides.setdefault(section, {})[key] = value

    put("policies", "root", getattr(args, "policies", None))
    put("build", "aggregator_path", getattr(args, "output", None))
    put("build", "manifest_path", getattr(args, "manifest", None))
    put("build", "dir", getattr(args, "build_dir", None))
    put("packaging", "image_repo", getattr(args, "image_repo", None))
    put("packaging", "image_tag", getattr(args, "image_tag", None))
    if getattr(args, "no_package", False):
        put("packaging", "enabled", False)
    return overrides


def resolve_config(args: argparse.Namespace) -> tuple[BuildConfig, list[str], dict[str, Any]]:
    """Merge config file and command-line flags (flags win) into a BuildConfig."""

    cfg_dict, meta = load_config(config_path=getattr(args, "config", None))
    cfg_dict = deep_merge(cfg_dict, _cli_overrides(args), origin="command-line flags")
    cfg, warnings = BuildConfig.from_dict(cfg_dict)

    # Explicit flags beat the POLICY_ENGINE_* environment variables.
    if getattr(args, "image_repo", None) or getattr(args, "image_tag", None):
        packaging = replace(
            cfg.packaging,
            image_repo=args.image_repo or cfg.packaging.image_repo,
            image_tag=args.image_tag or cfg.packaging.image_tag,
        )
        cfg = replace(cfg, packaging=packaging)
    return cfg, warnings, meta


def _log_config_source(logger: logging.Logger, meta: dict[str, Any]) -> None:
    mode = meta.get("mode")
    paths = meta.get("paths") or []
    if mode in {"env", "explicit"} and paths:
        label = f"env {meta.get('env_var')}" if mode == "env" else "explicit path"
        logger.info("Loaded config from %s=%s", label, paths[0])
    elif paths:
        logger.info("Loaded config %s", " + ".join(paths))
    else:
        logger.debug("No config file found; using command-line flags and defaults")


def build_main(args: argparse.Namespace) -> int:
    try:
        cfg, warnings, meta = resolve_config(args)
    except (OSError, ValueError) as exc:
        print(f"policy-builder: configuration error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    logger, _log_file = setup_build_logger(cfg.log_dir, verbose=getattr(args, "verbose", False))
    _log_config_source(logger, meta)
    for warning in warnings:
        logger.warning("Config warning: %s", warning)

    logger.info("Policy Engine Build Process")
    report = run_build(cfg, logger=logger)

    if not report.succeeded:
        stage = report.failed_stage.value if report.failed_stage else "unknown"
        print(f"Build failed at stage {stage}:", file=sys.stderr)
        print(report.diagnostic or "", file=sys.stderr)
        return EXIT_FAILED

    for warning in report.warnings:
        logger.info("Completed with warning: %s", warning)
    return EXIT_OK


def scan_main(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
        stream=sys.stderr,
    )
    try:
        modules = scan_policies(args.policies)
    except BuildError as exc:
        print(f"Discovery failed: {exc}", file=sys.stderr)
        return EXIT_FAILED

    for module in modules:
        print(f"{module.identifier}\t{module.path}")
    return EXIT_OK


def generate_main(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
        stream=sys.stderr,
    )
    try:
        modules = scan_policies(args.policies)
        if args.output == "-":
            sys.stdout.write(render_aggregator(modules))
        else:
            source = write_aggregator(modules, args.output)
            print(f"Wrote {len(source.registrations)} registrations to {args.output}", file=sys.stderr)
    except BuildError as exc:
        print(f"Generation failed: {exc}", file=sys.stderr)
        return EXIT_FAILED
    return EXIT_OK
