"""Entry point of a built policy engine artifact.

The builder stages this package next to a generated `policy_registrations`
module whose `register_all(registry)` wires every discovered policy.
"""

from __future__ import annotations

import argparse
import importlib
import json
import logging
import sys
from collections.abc import Sequence
from typing import Any, TextIO

from policykit.contracts import PolicyContext, PolicyError
from policykit.dispatch import run_batch
from policykit.registry import build_registry

REGISTRATIONS_MODULE = "policy_registrations"

DEFAULT_PAYLOAD: dict[str, Any] = {
    "message": "Hello from policy engine",
    "data": ["item1", "item2", "item3"],
}

logger = logging.getLogger("policykit")


def configure_logging(level: int = logging.INFO, stream: TextIO | None = None) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(filename)s:%(lineno)d: %(message)s",
        datefmt="%Y/%m/%d %H:%M:%S",
        stream=stream or sys.stdout,
        force=True,
    )


def load_payload(path: str | None) -> Any:
    if path is None:
        return dict(DEFAULT_PAYLOAD)
    if path == "-":
        return json.load(sys.stdin)
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="policy-engine")
    parser.add_argument("--input", help="JSON payload file ('-' reads stdin)")
    parser.add_argument("--list", action="store_true", help="List registered policies and exit")
    parser.add_argument("--json", action="store_true", help="Print the batch result as JSON on stdout")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    # --list and --json keep stdout machine-readable.
    configure_logging(
        logging.DEBUG if args.verbose else logging.INFO,
        stream=sys.stderr if args.list or args.json else sys.stdout,
    )

    logger.info("Policy Engine Starting...")

    try:
        registrations = importlib.import_module(REGISTRATIONS_MODULE)
    except ModuleNotFoundError as exc:
        if exc.name != REGISTRATIONS_MODULE:
            raise
        logger.warning("Warning: No policies registered")
        return 0

    try:
        registry = build_registry(registrations.register_all)
    except PolicyError as exc:
        logger.error("Failed to register policy: %s", exc)
        return 1

    names = registry.names()
    logger.info("Loaded %d policies: %s", len(names), list(names))

    if args.list:
        for name in names:
            print(name)
        return 0

    if not names:
        logger.warning("Warning: No policies registered")
        return 0

    try:
        payload = load_payload(args.input)
    except (OSError, ValueError) as exc:
        logger.error("Failed to read input payload: %s", exc)
        return 2

    logger.info("Executing policies...")
    batch = run_batch(registry, PolicyContext(logger=logger), payload, logger=logger)
    for name, result in batch.results.items():
        logger.info("Result %s: %s", name, json.dumps(result, indent=2, default=str))

    if args.json:
        print(json.dumps(batch.to_dict(), indent=2, sort_keys=True, default=str))

    logger.info("Policy Engine Completed Successfully")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
