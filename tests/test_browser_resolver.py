from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

import kyoto_e2e.browser as browser
from kyoto_e2e.browser import find_chromium_executable, is_browser_infra_error


class _DummyPlaywrightError(Exception):
    pass


class TargetClosedError(Exception):
    pass


@pytest.fixture(autouse=True)
def _no_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CHROMIUM_PATH", raising=False)


def _fake_lookup(answers: dict[str, str], calls: list[list[str]]):
    def _run(argv: list[str], require_success: bool = True) -> str:
        calls.append(list(argv))
        return answers.get(argv[0], "")

    return _run


def test_which_hit_skips_cache_search(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []
    monkeypatch.setattr(browser, "_run_lookup", _fake_lookup({"which": "/usr/bin/chromium"}, calls))

    assert find_chromium_executable() == "/usr/bin/chromium"
    assert [c[0] for c in calls] == ["which"]


def test_cache_search_used_when_not_on_path(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PLAYWRIGHT_BROWSERS_PATH", str(tmp_path))
    bundled = "/cache/chromium-1091/chrome-linux/chrome"
    calls: list[list[str]] = []
    monkeypatch.setattr(browser, "_run_lookup", _fake_lookup({"find": bundled}, calls))

    assert find_chromium_executable() == bundled
    assert [c[0] for c in calls] == ["which", "find"]
    assert calls[1] == ["find", str(tmp_path), "-type", "f", "-name", "chrome"]


def test_nothing_found_returns_none(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(browser, "_run_lookup", lambda argv, require_success=True: "")
    assert find_chromium_executable() is None


def test_lookup_failures_are_swallowed(monkeypatch: pytest.MonkeyPatch) -> None:
    def boom(argv: list[str], require_success: bool = True) -> str:
        raise subprocess.TimeoutExpired(cmd=argv, timeout=10)

    monkeypatch.setattr(browser, "_run_lookup", boom)
    assert find_chromium_executable() is None


def test_missing_lookup_binary_is_swallowed(monkeypatch: pytest.MonkeyPatch) -> None:
    def missing(*args, **kwargs):
        raise FileNotFoundError("which")

    monkeypatch.setattr(subprocess, "run", missing)
    assert find_chromium_executable() is None


def test_run_lookup_returns_first_non_empty_line(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(argv, **kwargs):
        return subprocess.CompletedProcess(argv, 0, stdout="\n  /opt/a/chrome \n/opt/b/chrome\n", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    assert browser._run_lookup(["find", "/opt"]) == "/opt/a/chrome"


def test_run_lookup_ignores_output_of_failed_command(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(argv, **kwargs):
        return subprocess.CompletedProcess(argv, 1, stdout="/usr/bin/chromium\n", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    assert browser._run_lookup(["which", "chromium"]) == ""


def test_cache_search_keeps_match_when_find_reports_unreadable_dirs(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(argv, **kwargs):
        return subprocess.CompletedProcess(
            argv,
            1,
            stdout="/cache/chromium-1/chrome-linux/chrome\n",
            stderr="find: '/cache/locked': Permission denied\n",
        )

    monkeypatch.setattr(subprocess, "run", fake_run)
    assert browser.find_cached_browser(Path("/cache")) == "/cache/chromium-1/chrome-linux/chrome"


def test_failed_which_is_not_trusted_but_find_output_is(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(argv, **kwargs):
        return subprocess.CompletedProcess(argv, 1, stdout=f"/opt/{argv[0]}/chrome\n", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    assert browser.which_browser() is None
    assert find_chromium_executable() == "/opt/find/chrome"


def test_chromium_path_env_wins_when_it_exists(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    binary = tmp_path / "chromium"
    binary.write_text("")
    monkeypatch.setenv("CHROMIUM_PATH", str(binary))
    calls: list[list[str]] = []
    monkeypatch.setattr(browser, "_run_lookup", _fake_lookup({"which": "/usr/bin/chromium"}, calls))

    assert find_chromium_executable() == str(binary)
    assert calls == []


def test_stale_chromium_path_env_is_ignored(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CHROMIUM_PATH", str(tmp_path / "missing"))
    monkeypatch.setattr(browser, "_run_lookup", _fake_lookup({"which": "/usr/bin/chromium"}, []))

    assert find_chromium_executable() == "/usr/bin/chromium"


def test_cache_dir_defaults_to_home(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PLAYWRIGHT_BROWSERS_PATH", raising=False)
    assert browser.playwright_cache_dir() == Path.home() / ".cache" / "ms-playwright"


def test_target_closed_error_is_infra() -> None:
    assert is_browser_infra_error(TargetClosedError("Target page, context or browser has been closed")) is True


def test_page_crashed_is_infra() -> None:
    assert is_browser_infra_error(_DummyPlaywrightError("Page.goto: Page crashed")) is True


def test_missing_executable_is_infra() -> None:
    exc = _DummyPlaywrightError("BrowserType.launch: Executable doesn't exist at /x/chrome")
    assert is_browser_infra_error(exc) is True


def test_driver_connection_closed_is_infra() -> None:
    exc = _DummyPlaywrightError("Connection closed while reading from the driver")
    assert is_browser_infra_error(exc) is True


def test_assertion_failure_is_not_infra() -> None:
    exc = AssertionError("Locator expected to be visible")
    assert is_browser_infra_error(exc) is False
