"""pytest plugin that runs the Kyoto browser suite.

Load it from the suite's conftest with ``from kyoto_e2e.plugin import *``. It
provides:

* ``kyoto_config``: the ``RunnerConfig`` built once per process.
* ``browser`` / ``context`` / ``page``: Playwright objects bound to the
  configured base URL, with traces and screenshots kept per the capture policy.
* ``page_errors``: runtime errors raised in the page (``pageerror`` events).
* ``new_client_page``: factory for extra isolated pages, one context each,
  used by multi-client collaboration tests.

The dev server is started once in the controlling process and stopped at the
end of the session. Tests marked ``only`` narrow the run, unless
``forbid_only`` is set, in which case the session is rejected.
"""

from __future__ import annotations

import re
import time
from collections import Counter
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

import pytest
import pytest_asyncio
import structlog
from playwright.async_api import Browser, BrowserContext, Page, async_playwright, expect
from playwright.async_api import Error as PlaywrightError

from .browser import is_browser_infra_error
from .config import RunnerConfig, load_config
from .reporting import ReportGenerator, TestResult
from .web_server import WebServer, WebServerError


__all__ = [
    "browser",
    "context",
    "kyoto_config",
    "new_client_page",
    "page",
    "page_errors",
    "pytest_collection_modifyitems",
    "pytest_configure",
    "pytest_runtest_makereport",
    "pytest_sessionfinish",
    "pytest_sessionstart",
]

logger = structlog.get_logger(__name__)

RUNNER_CONFIG_KEY = pytest.StashKey[RunnerConfig]()
WEB_SERVER_KEY = pytest.StashKey[WebServer]()
PHASE_REPORTS_KEY = pytest.StashKey[dict]()

_SLUG_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def _is_worker(config: pytest.Config) -> bool:
    return hasattr(config, "workerinput")


def runner_config(config: pytest.Config) -> RunnerConfig:
    return config.stash[RUNNER_CONFIG_KEY]


def execution_count(item: pytest.Item) -> int:
    """1 for the first attempt, 2 for the first retry, and so on."""
    return int(getattr(item, "execution_count", 1) or 1)


def should_trace(policy: str, attempt: int) -> bool:
    if policy == "on-first-retry":
        return attempt == 2
    return policy in ("on", "retain-on-failure")


def keep_trace(policy: str, failed: bool) -> bool:
    if policy == "retain-on-failure":
        return failed
    return policy in ("on", "on-first-retry")


def keep_screenshot(policy: str, failed: bool) -> bool:
    if policy == "only-on-failure":
        return failed
    return policy == "on"


def artifacts_dir_for(item: pytest.Item, output_dir: str) -> Path:
    slug = _SLUG_RE.sub("-", item.nodeid).strip("-")[:180] or "test"
    attempt = execution_count(item)
    if attempt > 1:
        slug = f"{slug}-retry{attempt - 1}"
    return Path(output_dir) / slug


def _test_failed(item: pytest.Item) -> bool:
    reports = item.stash.get(PHASE_REPORTS_KEY, {})
    return any(rep.failed for rep in reports.values())


class RunReporter:
    """Collects test reports and writes the JSON run report at session end."""

    def __init__(self, generator: ReportGenerator):
        self.generator = generator
        self.results: dict[str, TestResult] = {}
        self.attempts: Counter[str] = Counter()
        self.skipped = 0

    def pytest_runtest_logreport(self, report: pytest.TestReport) -> None:
        nodeid = report.nodeid
        if report.outcome == "rerun":
            self.attempts[nodeid] += 1
            self.results.pop(nodeid, None)
            return

        props = dict(report.user_properties)
        if report.skipped:
            # Skips from setup markers and from pytest.skip() in the body alike.
            self.skipped += 1
            self.results.pop(nodeid, None)
            return

        if report.when == "call" or (report.when == "setup" and report.failed):
            self.results[nodeid] = TestResult(
                test_name=nodeid,
                success=report.passed,
                duration=float(report.duration),
                error=report.longreprtext[-2000:] if report.failed else None,
                attempts=self.attempts[nodeid] + 1,
                browser_infra_error=bool(props.get("browser_infra_error")),
            )
            return

        result = self.results.get(nodeid)
        if report.when == "teardown" and result is not None:
            result.artifacts.update({k[len("artifact:"):]: str(v) for k, v in props.items() if k.startswith("artifact:")})
            if report.failed and result.success:
                result.success = False
                result.error = report.longreprtext[-2000:]

    def write(self) -> dict[str, Any]:
        report = self.generator.generate_test_results_report(list(self.results.values()))
        report["summary"]["skipped"] = self.skipped
        return report


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "only: focus the run on this test; rejected when forbid_only is set")
    config.addinivalue_line("markers", "e2e: browser end-to-end test against the Kyoto app")

    cfg = load_config()
    config.stash[RUNNER_CONFIG_KEY] = cfg
    expect.set_options(timeout=cfg.use.timeout_ms)

    if cfg.reporter == "json" and not _is_worker(config):
        config.pluginmanager.register(RunReporter(ReportGenerator(cfg.report_dir)), "kyoto-run-reporter")


def pytest_sessionstart(session: pytest.Session) -> None:
    config = session.config
    cfg = runner_config(config)
    if _is_worker(config) or cfg.web_server is None:
        return
    server = WebServer(cfg.web_server)
    try:
        server.start()
    except WebServerError as exc:
        pytest.exit(f"Web server failed to start: {exc}", returncode=pytest.ExitCode.INTERNAL_ERROR)
    config.stash[WEB_SERVER_KEY] = server


def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    config = session.config
    server = config.stash.get(WEB_SERVER_KEY, None)
    if server is not None:
        server.stop()
    reporter = config.pluginmanager.get_plugin("kyoto-run-reporter")
    if reporter is not None:
        reporter.write()


def pytest_collection_modifyitems(session: pytest.Session, config: pytest.Config, items: list[pytest.Item]) -> None:
    focused = [item for item in items if item.get_closest_marker("only") is not None]
    if not focused:
        return
    if runner_config(config).forbid_only:
        names = ", ".join(item.nodeid for item in focused)
        raise pytest.UsageError(f"Tests marked 'only' are not allowed when forbid_only is set: {names}")
    deselected = [item for item in items if item.get_closest_marker("only") is None]
    config.hook.pytest_deselected(items=deselected)
    items[:] = focused


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo):
    outcome = yield
    report = outcome.get_result()
    item.stash.setdefault(PHASE_REPORTS_KEY, {})[report.when] = report
    if call.excinfo is not None and is_browser_infra_error(call.excinfo.value):
        report.user_properties = list(report.user_properties) + [("browser_infra_error", True)]


@pytest.fixture(scope="session")
def kyoto_config(pytestconfig: pytest.Config) -> RunnerConfig:
    return runner_config(pytestconfig)


@pytest_asyncio.fixture
async def browser(kyoto_config: RunnerConfig) -> AsyncIterator[Browser]:
    project = kyoto_config.project
    async with async_playwright() as p:
        try:
            launched = await p.chromium.launch(**project.launch_kwargs(kyoto_config.use.headless))
        except PlaywrightError as exc:
            if is_browser_infra_error(exc):
                pytest.skip(f"No usable Chromium for Playwright: {exc}")
            raise
        try:
            yield launched
        finally:
            await launched.close()


async def _new_context(browser: Browser, cfg: RunnerConfig) -> BrowserContext:
    ctx = await browser.new_context(
        base_url=cfg.use.base_url,
        viewport={"width": cfg.use.viewport.width, "height": cfg.use.viewport.height},
    )
    ctx.set_default_timeout(cfg.use.timeout_ms)
    return ctx


@pytest_asyncio.fixture
async def context(
    browser: Browser, kyoto_config: RunnerConfig, request: pytest.FixtureRequest
) -> AsyncIterator[BrowserContext]:
    item = request.node
    policy = kyoto_config.use.trace
    ctx = await _new_context(browser, kyoto_config)
    tracing = should_trace(policy, execution_count(item))
    if tracing:
        await ctx.tracing.start(screenshots=True, snapshots=True, sources=False)
    try:
        yield ctx
    finally:
        if tracing:
            if keep_trace(policy, _test_failed(item)):
                trace_path = artifacts_dir_for(item, kyoto_config.output_dir) / "trace.zip"
                trace_path.parent.mkdir(parents=True, exist_ok=True)
                await ctx.tracing.stop(path=str(trace_path))
                item.user_properties.append(("artifact:trace", str(trace_path)))
            else:
                await ctx.tracing.stop()
        await ctx.close()


@pytest.fixture
def page_errors() -> list[str]:
    return []


@pytest_asyncio.fixture
async def page(
    context: BrowserContext,
    kyoto_config: RunnerConfig,
    page_errors: list[str],
    request: pytest.FixtureRequest,
) -> AsyncIterator[Page]:
    item = request.node
    pg = await context.new_page()
    pg.on("pageerror", lambda err: page_errors.append(err.message))
    started = time.perf_counter()
    try:
        yield pg
    finally:
        if keep_screenshot(kyoto_config.use.screenshot, _test_failed(item)):
            shot = artifacts_dir_for(item, kyoto_config.output_dir) / "failure.png"
            shot.parent.mkdir(parents=True, exist_ok=True)
            try:
                await pg.screenshot(path=str(shot), full_page=True)
                item.user_properties.append(("artifact:screenshot", str(shot)))
            except PlaywrightError as exc:
                logger.warning("Screenshot failed", test=item.nodeid, error=str(exc))
        logger.debug("Page closed", test=item.nodeid, elapsed_s=round(time.perf_counter() - started, 3))
        await pg.close()


@pytest_asyncio.fixture
async def new_client_page(
    browser: Browser, kyoto_config: RunnerConfig
) -> AsyncIterator[Callable[[], Awaitable[Page]]]:
    contexts: list[BrowserContext] = []

    async def _factory() -> Page:
        ctx = await _new_context(browser, kyoto_config)
        contexts.append(ctx)
        return await ctx.new_page()

    try:
        yield _factory
    finally:
        for ctx in contexts:
            await ctx.close()
