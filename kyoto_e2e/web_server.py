"""Dev server bootstrap for the end-to-end suite."""

from __future__ import annotations

import os
import signal
import subprocess
import tempfile
import time
from typing import IO

import httpx
import structlog

from .config import WebServerConfig


logger = structlog.get_logger(__name__)

POLL_INTERVAL_SECONDS = 0.1
STOP_GRACE_SECONDS = 5.0
OUTPUT_TAIL_CHARS = 2000


class WebServerError(RuntimeError):
    """Raised when the dev server cannot be reused, started or reached."""


def _is_ready_status(status_code: int) -> bool:
    return 200 <= status_code < 400 or status_code in (400, 401, 402, 403)


def is_server_up(url: str, timeout: float = 1.0) -> bool:
    try:
        resp = httpx.get(url, timeout=timeout, follow_redirects=False)
    except httpx.HTTPError:
        return False
    return _is_ready_status(resp.status_code)


class WebServer:
    """Starts the configured dev server unless a usable one is already running."""

    def __init__(self, config: WebServerConfig):
        self.config = config
        self.process: subprocess.Popen | None = None
        self.reused = False
        self._output: IO[str] | None = None

    def __enter__(self) -> "WebServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def start(self) -> None:
        url = self.config.url
        if is_server_up(url):
            if not self.config.reuse_existing_server:
                raise WebServerError(
                    f"{url} is already used, make sure that nothing is running on the port "
                    "or set reuse_existing_server"
                )
            logger.info("Reusing existing web server", url=url)
            self.reused = True
            return

        logger.info("Starting web server", command=self.config.command, url=url)
        self._output = tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace")
        try:
            try:
                self.process = subprocess.Popen(
                    self.config.command,
                    shell=True,
                    cwd=self.config.cwd,
                    stdout=self._output,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as exc:
                raise WebServerError(f"Could not start web server command {self.config.command!r}: {exc}") from exc
            self._wait_until_ready()
        except BaseException:
            self.stop()
            raise

    def _wait_until_ready(self) -> None:
        deadline = time.monotonic() + self.config.timeout_seconds
        while time.monotonic() < deadline:
            if self.process is not None and self.process.poll() is not None:
                raise WebServerError(
                    f"Web server command exited early with code {self.process.returncode}: "
                    f"{self._output_tail()}"
                )
            if is_server_up(self.config.url):
                logger.info("Web server is ready", url=self.config.url)
                return
            time.sleep(POLL_INTERVAL_SECONDS)
        raise WebServerError(
            f"Timed out after {self.config.timeout_seconds:g}s waiting for {self.config.url}: "
            f"{self._output_tail()}"
        )

    def _output_tail(self) -> str:
        if self._output is None:
            return ""
        try:
            self._output.flush()
            self._output.seek(0)
            text = self._output.read()
        except (OSError, ValueError):
            return ""
        return text[-OUTPUT_TAIL_CHARS:].strip()

    def stop(self) -> None:
        proc = self.process
        if proc is not None and proc.poll() is None:
            logger.info("Stopping web server", pid=proc.pid)
            self._signal_group(proc, signal.SIGTERM)
            try:
                proc.wait(timeout=STOP_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                self._signal_group(proc, signal.SIGKILL)
                proc.wait(timeout=STOP_GRACE_SECONDS)
        self.process = None
        if self._output is not None:
            self._output.close()
            self._output = None

    @staticmethod
    def _signal_group(proc: subprocess.Popen, sig: int) -> None:
        try:
            os.killpg(os.getpgid(proc.pid), sig)
        except ProcessLookupError:
            pass
