"""
Command-line entry point: audit one URL through the packaged bundle.

Prints the JSON result ``{report, artifacts, log}`` to stdout (or to --output).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .bundle_loader import load_entry_point
from .config import RunnerConfig, expand_path, parse_run_mode
from .errors import BundleRunnerError, RunnerConfigError
from .process_guard import BrowserProcessGuard
from .runner import RunnerOptions, run_audit

logger = logging.getLogger("smoke.bundle")

EXIT_RUNNER_ERROR = 1
EXIT_AUDIT_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bundle-smoke",
        description="Launch Chromium and audit a URL through the packaged audit bundle.",
    )
    parser.add_argument("url", help="Page to audit")
    parser.add_argument("--bundle", help="Bundle file (default: SMOKE_BUNDLE_PATH or dist/audit-bundle.py)")
    parser.add_argument("--config", help="JSON audit configuration passed through to the bundle")
    parser.add_argument("--mode", help="Control protocol: legacy or alternate (default: SMOKE_RUN_MODE)")
    parser.add_argument("--debug", action="store_true", help="Verbose bundle logging and DEBUG runner logs")
    parser.add_argument("--output", help="Write the JSON result here instead of stdout")
    return parser


def _load_config_json(raw_path: str | None) -> Any:
    if not raw_path:
        return None
    try:
        return json.loads(Path(raw_path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise RunnerConfigError(f"Cannot read audit config {raw_path}: {exc}") from exc


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        config = RunnerConfig.from_env()
        if args.bundle:
            config.bundle_path = expand_path(args.bundle)
        mode = parse_run_mode(args.mode) if args.mode else config.run_mode
        audit_config = _load_config_json(args.config)
        entry_point = load_entry_point(config.bundle_path)
        result = run_audit(
            args.url,
            audit_config,
            RunnerOptions(debug=args.debug, mode=mode),
            guard=BrowserProcessGuard(config),
            entry_point=entry_point,
        )
    except BundleRunnerError as exc:
        logger.error("bundle_smoke_failed %s: %s", type(exc).__name__, exc)
        return EXIT_RUNNER_ERROR
    except Exception:
        logger.exception("audit_failed url=%s", args.url)
        return EXIT_AUDIT_ERROR

    payload = json.dumps(result.to_dict(), ensure_ascii=False, indent=2, default=str)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    else:
        sys.stdout.write(payload + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
