from __future__ import annotations

import os
import subprocess
from pathlib import Path

import structlog


logger = structlog.get_logger(__name__)

BROWSER_NAME = "chromium"
# Binary name inside a Playwright-managed Chromium build (chromium-XXXX/chrome-linux/chrome).
BUNDLED_BINARY_NAME = "chrome"
LOOKUP_TIMEOUT_SECONDS = 10.0

DEFAULT_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-gpu",
    "--disable-extensions",
    "--no-first-run",
    "--no-default-browser-check",
    # Avoid renderer crashes when /dev/shm is tiny.
    "--disable-dev-shm-usage",
]


def playwright_cache_dir() -> Path:
    raw = os.getenv("PLAYWRIGHT_BROWSERS_PATH")
    if raw and raw.strip() and raw.strip() != "0":
        return Path(raw.strip()).expanduser()
    return Path.home() / ".cache" / "ms-playwright"


def _run_lookup(argv: list[str], require_success: bool = True) -> str:
    """Run a lookup command and return its first non-empty stdout line, or ''.

    `find` exits 1 when some subdirectory is unreadable even after printing
    matches; callers pass ``require_success=False`` to keep that output.
    """
    result = subprocess.run(
        argv,
        capture_output=True,
        text=True,
        timeout=LOOKUP_TIMEOUT_SECONDS,
        check=False,
    )
    if require_success and result.returncode != 0:
        return ""
    for line in (result.stdout or "").splitlines():
        line = line.strip()
        if line:
            return line
    return ""


def which_browser(name: str = BROWSER_NAME) -> str | None:
    try:
        path = _run_lookup(["which", name])
    except Exception as exc:
        logger.debug("Browser lookup on PATH failed", browser=name, error=str(exc))
        return None
    return path or None


def find_cached_browser(cache_dir: Path | None = None, binary_name: str = BUNDLED_BINARY_NAME) -> str | None:
    root = cache_dir or playwright_cache_dir()
    try:
        path = _run_lookup(["find", str(root), "-type", "f", "-name", binary_name], require_success=False)
    except Exception as exc:
        logger.debug("Browser cache search failed", cache_dir=str(root), error=str(exc))
        return None
    return path or None


def find_chromium_executable() -> str | None:
    """
    Best-effort lookup of a local Chromium binary.

    Order: CHROMIUM_PATH (if it exists), `which chromium`, then the Playwright
    browser cache. Returns None when nothing is found so Playwright falls back
    to its own bundled browser. Never raises.
    """
    env_path = (os.getenv("CHROMIUM_PATH") or "").strip()
    if env_path:
        try:
            if Path(env_path).exists():
                return env_path
        except OSError:
            pass
        logger.debug("CHROMIUM_PATH does not exist, ignoring", path=env_path)

    path = which_browser()
    if path:
        logger.debug("Resolved browser on PATH", path=path)
        return path

    path = find_cached_browser()
    if path:
        logger.debug("Resolved browser from Playwright cache", path=path)
        return path

    logger.debug("No local browser found, deferring to Playwright defaults")
    return None


INFRA_ERROR_TYPES = frozenset({"TargetClosedError"})
INFRA_ERROR_MARKERS = (
    "target page, context or browser has been closed",
    "browser has been closed",
    "page crashed",
    "target crashed",
    "connection closed while reading from the driver",
    "connection closed while writing to the driver",
    "pipe closed by peer",
    "browsertype.launch",
    "executable doesn't exist",
)


def is_browser_infra_error(exc: BaseException) -> bool:
    """True when ``exc`` comes from the browser or driver rather than the app under test."""
    if type(exc).__name__ in INFRA_ERROR_TYPES:
        return True
    msg = str(exc or "").lower()
    return any(marker in msg for marker in INFRA_ERROR_MARKERS)
