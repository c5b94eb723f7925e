"""``kyoto-e2e`` command: resolve config and hand the suite to pytest."""

from __future__ import annotations

import argparse
import logging
import os
from typing import Optional, Sequence

import pytest
import structlog
from pydantic import ValidationError

from .config import load_config, to_pytest_args


logger = structlog.get_logger(__name__)


def configure_logging(level: str) -> None:
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, str(level).upper(), logging.INFO)),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kyoto-e2e",
        description="Run the Kyoto browser end-to-end suite. Unknown arguments are passed to pytest.",
    )
    parser.add_argument("--config", help="Path to runner YAML (default: $KYOTO_E2E_CONFIG or e2e.yaml)")
    parser.add_argument("--ci", action="store_true", help="Apply CI policy: forbid 'only', retries 2, one worker")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    parser.add_argument("--workers", type=int, help="Worker processes")
    parser.add_argument("--retries", type=int, help="Reruns for failing tests")
    parser.add_argument("--reporter", choices=["json", "junit", "list"])
    parser.add_argument("--base-url", help="App URL; also used as the dev server readiness URL")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    return parser


def apply_overrides(args: argparse.Namespace, environ: Optional[dict] = None) -> None:
    """Export CLI choices as environment so the pytest plugin and xdist workers see them."""
    env = os.environ if environ is None else environ
    if args.ci:
        env["CI"] = "1"
    if args.config:
        env["KYOTO_E2E_CONFIG"] = args.config
    if args.headed:
        env["KYOTO_E2E_HEADLESS"] = "0"
    if args.workers is not None:
        env["KYOTO_E2E_WORKERS"] = str(args.workers)
    if args.retries is not None:
        env["KYOTO_E2E_RETRIES"] = str(args.retries)
    if args.reporter:
        env["KYOTO_E2E_REPORTER"] = args.reporter
    if args.base_url:
        env["KYOTO_E2E_BASE_URL"] = args.base_url


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args, extra = parser.parse_known_args(argv)
    configure_logging(args.log_level)
    apply_overrides(args)

    try:
        config = load_config()
    except (ValueError, ValidationError) as exc:
        logger.error("Invalid runner configuration", error=str(exc))
        return int(pytest.ExitCode.USAGE_ERROR)

    executable = config.project.launch_options.executable_path
    if executable:
        # The plugin and xdist workers resolve again; CHROMIUM_PATH short-circuits that.
        os.environ.setdefault("CHROMIUM_PATH", executable)
        logger.info("Using local Chromium", executable_path=executable)
    else:
        logger.warning("No local Chromium found, using Playwright's bundled browser")

    pytest_args = to_pytest_args(config) + list(extra)
    logger.info(
        "Running e2e suite",
        workers=config.workers,
        retries=config.retries,
        forbid_only=config.forbid_only,
        reporter=config.reporter,
        args=pytest_args,
    )
    return int(pytest.main(pytest_args))
