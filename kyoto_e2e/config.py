"""Test runner configuration for the Kyoto end-to-end suite."""

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field

from .browser import DEFAULT_LAUNCH_ARGS, find_chromium_executable


logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "http://localhost:3000"
DEFAULT_CONFIG_PATH = "e2e.yaml"


def _env_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_int(raw: Optional[str]) -> Optional[int]:
    if raw is None or not str(raw).strip():
        return None
    return int(str(raw).strip())


def is_ci(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Any non-empty CI value turns CI mode on, including "false" and "0"."""
    env = os.environ if environ is None else environ
    raw = env.get("CI")
    return bool(raw and str(raw).strip())


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Viewport(_Frozen):
    """Desktop Chrome viewport."""
    width: int = Field(default=1280, gt=0)
    height: int = Field(default=720, gt=0)


class UseOptions(_Frozen):
    """Options shared by every browser context."""
    base_url: str = Field(default=DEFAULT_BASE_URL, description="Base URL for relative navigation")
    trace: Literal["off", "on", "retain-on-failure", "on-first-retry"] = Field(
        default="on-first-retry", description="When to record a Playwright trace"
    )
    screenshot: Literal["off", "on", "only-on-failure"] = Field(
        default="only-on-failure", description="When to keep a screenshot of the page"
    )
    headless: bool = Field(default=True, description="Run browser in headless mode")
    viewport: Viewport = Field(default_factory=Viewport)
    timeout_ms: int = Field(default=5000, gt=0, description="Default action and expect timeout")


class LaunchOptions(_Frozen):
    executable_path: Optional[str] = Field(default=None, description="Browser binary; None defers to Playwright")
    args: List[str] = Field(default_factory=lambda: list(DEFAULT_LAUNCH_ARGS))


class BrowserProject(_Frozen):
    name: str = "chromium"
    channel: Optional[str] = Field(default="chromium", description="Playwright browser channel")
    launch_options: LaunchOptions = Field(default_factory=LaunchOptions)

    def launch_kwargs(self, headless: bool) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"headless": headless, "args": list(self.launch_options.args)}
        if self.launch_options.executable_path:
            # A resolved binary takes precedence over the channel.
            kwargs["executable_path"] = self.launch_options.executable_path
        elif self.channel:
            kwargs["channel"] = self.channel
        return kwargs


class WebServerConfig(_Frozen):
    command: str = Field(default="pnpm run dev", description="Dev server bootstrap command")
    url: str = Field(default=DEFAULT_BASE_URL, description="Readiness URL")
    reuse_existing_server: bool = Field(default=True, description="Reuse a server already listening on url")
    timeout_seconds: float = Field(default=120.0, gt=0)
    cwd: Optional[str] = Field(default=None, description="Working directory for the command")


class RunnerConfig(_Frozen):
    """Main configuration handed to the test runner."""

    test_dir: str = Field(default="e2e", description="Directory holding the browser tests")
    fully_parallel: bool = Field(default=True, description="Distribute single tests rather than files")
    forbid_only: bool = Field(default=False, description="Fail the run if a test is marked 'only'")
    retries: int = Field(default=0, ge=0, description="Reruns for failing tests")
    workers: Optional[int] = Field(default=None, ge=1, description="Worker processes; None keeps the default")
    reporter: Literal["json", "junit", "list"] = Field(default="json")
    output_dir: str = Field(default="test-results", description="Per-test artifacts")
    report_dir: str = Field(default="e2e-report", description="Run reports")

    use: UseOptions = Field(default_factory=UseOptions)
    projects: List[BrowserProject] = Field(default_factory=lambda: [BrowserProject()])
    web_server: Optional[WebServerConfig] = Field(default_factory=WebServerConfig)

    @property
    def project(self) -> BrowserProject:
        return self.projects[0]


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(out.get(key), Mapping):
            out[key] = _merge(dict(out[key]), value)
        else:
            out[key] = value
    return out


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config YAML must be a mapping: {path}")
    return data


def load_config(
    environ: Optional[Mapping[str, str]] = None,
    config_path: Optional[str] = None,
) -> RunnerConfig:
    """Build the runner configuration from CI defaults, an optional YAML file and environment overrides."""
    env = os.environ if environ is None else environ
    ci = is_ci(env)

    executable_path = find_chromium_executable()

    config_data: Dict[str, Any] = {
        "forbid_only": ci,
        "retries": 2 if ci else 0,
        "workers": 1 if ci else None,
        "projects": [
            {
                "name": "chromium",
                "channel": "chromium",
                "launch_options": {"executable_path": executable_path},
            }
        ],
        "web_server": {"reuse_existing_server": not ci},
    }

    if config_path is None:
        config_path = env.get("KYOTO_E2E_CONFIG", DEFAULT_CONFIG_PATH)
    path = Path(config_path)
    if path.exists():
        logger.debug("Loading runner config file", path=str(path))
        config_data = _merge(config_data, _read_yaml(path))

    base_url = env.get("KYOTO_E2E_BASE_URL")
    if base_url:
        config_data = _merge(config_data, {"use": {"base_url": base_url}, "web_server": {"url": base_url}})
    headless = env.get("KYOTO_E2E_HEADLESS")
    if headless is not None:
        config_data = _merge(config_data, {"use": {"headless": _env_bool(headless, True)}})
    workers = _env_int(env.get("KYOTO_E2E_WORKERS"))
    if workers is not None:
        config_data["workers"] = workers
    retries = _env_int(env.get("KYOTO_E2E_RETRIES"))
    if retries is not None:
        config_data["retries"] = retries
    reporter = (env.get("KYOTO_E2E_REPORTER") or "").strip()
    if reporter:
        config_data["reporter"] = reporter

    config = RunnerConfig(**config_data)
    logger.debug(
        "Runner config loaded",
        ci=ci,
        workers=config.workers,
        retries=config.retries,
        executable_path=config.project.launch_options.executable_path,
    )
    return config


def to_pytest_args(config: RunnerConfig) -> List[str]:
    """Translate the runner configuration into pytest command line arguments."""
    args: List[str] = [config.test_dir]

    if config.workers is not None:
        args += ["-n", str(config.workers), "--dist", "load" if config.fully_parallel else "loadfile"]

    if config.retries > 0:
        args += ["--reruns", str(config.retries)]

    if config.reporter == "junit":
        args.append(f"--junitxml={Path(config.report_dir) / 'junit.xml'}")
    elif config.reporter == "list":
        args.append("-v")

    return args
