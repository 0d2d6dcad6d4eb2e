from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="policy-builder", add_help=True)
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="Discover policies and build the engine artifact")
    build.add_argument("--config", help="Builder config YAML (default: config/config.yaml under the repo root)")
    build.add_argument("--policies", help="Policy root directory to scan")
    build.add_argument("--output", help="Path of the generated registrations module")
    build.add_argument("--manifest", help="Engine manifest to rewrite (default: engine.yaml)")
    build.add_argument("--build-dir", dest="build_dir", help="Build directory (default: build)")
    build.add_argument("--image-repo", dest="image_repo", help="Final image repository")
    build.add_argument("--image-tag", dest="image_tag", help="Final image tag")
    build.add_argument("--no-package", dest="no_package", action="store_true", help="Skip the container image")
    build.add_argument("-v", "--verbose", action="store_true")

    scan = sub.add_parser("scan", help="List the policy modules under a root directory")
    scan.add_argument("--policies", required=True, help="Policy root directory to scan")
    scan.add_argument("-v", "--verbose", action="store_true")

    generate = sub.add_parser("generate", help="Write the registrations module only")
    generate.add_argument("--policies", required=True, help="Policy root directory to scan")
    generate.add_argument("--output", required=True, help="Output path ('-' prints to stdout)")
    generate.add_argument("-v", "--verbose", action="store_true")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    if args.command == "build":
        from .app.build import build_main

        return build_main(args)

    if args.command == "scan":
        from .app.build import scan_main

        return scan_main(args)

    if args.command == "generate":
        from .app.build import generate_main

        return generate_main(args)

    raise AssertionError(f"Unhandled command: {args.command}")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
