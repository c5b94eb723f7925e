"""Browser end-to-end test runner for the Kyoto trip planner.

Resolves a local Chromium build, builds the runner configuration (CI-aware
retries and workers), boots the dev server and runs the ``e2e/`` suite through
pytest with Playwright.
"""

from .browser import find_chromium_executable
from .config import RunnerConfig, load_config, to_pytest_args

__all__ = ["RunnerConfig", "find_chromium_executable", "load_config", "to_pytest_args"]

__version__ = "0.1.0"
