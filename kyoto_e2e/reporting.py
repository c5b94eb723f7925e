"""Run reports for end-to-end test results."""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog


logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TestResult:
    """Represents the outcome of a single end-to-end test."""

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        test_name: str,
        success: bool,
        duration: float,
        error: str | None = None,
        attempts: int = 1,
        browser_infra_error: bool = False,
        artifacts: dict[str, str] | None = None,
    ):
        self.test_name = test_name
        self.success = success
        self.duration = duration
        self.error = error
        self.attempts = attempts
        self.browser_infra_error = browser_infra_error
        self.artifacts = artifacts or {}
        self.timestamp = _utcnow().isoformat()

    @property
    def flaky(self) -> bool:
        return self.success and self.attempts > 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_name": self.test_name,
            "success": self.success,
            "duration": self.duration,
            "error": self.error,
            "attempts": self.attempts,
            "flaky": self.flaky,
            "browser_infra_error": self.browser_infra_error,
            "artifacts": self.artifacts,
            "timestamp": self.timestamp,
        }


def categorize_error(error_message: str) -> str:
    """Categorize error messages into types."""
    error_lower = error_message.lower()

    if "timeout" in error_lower:
        return "timeout"
    elif "connection" in error_lower or "net::err" in error_lower:
        return "connection"
    elif "locator expected" in error_lower or "to be visible" in error_lower:
        return "element_not_found"
    elif "assert" in error_lower:
        return "assertion_failure"
    elif "500" in error_lower or "internal server error" in error_lower:
        return "server_error"
    elif "404" in error_lower or "not found" in error_lower:
        return "not_found"
    return "other"


class ReportGenerator:
    """Writes structured JSON reports for a test run."""

    def __init__(self, reports_dir: str | Path):
        self.reports_dir = Path(reports_dir)

    def build_report(self, test_results: list[TestResult], report_name: str) -> dict[str, Any]:
        total_tests = len(test_results)
        passed_tests = sum(1 for result in test_results if result.success)
        failed_tests = total_tests - passed_tests
        flaky_tests = sum(1 for result in test_results if result.flaky)

        total_duration = sum(result.duration for result in test_results)
        avg_duration = total_duration / total_tests if total_tests > 0 else 0

        failure_groups: dict[str, list[TestResult]] = {}
        for result in test_results:
            if not result.success and result.error:
                error_type = "browser_infra" if result.browser_infra_error else categorize_error(result.error)
                failure_groups.setdefault(error_type, []).append(result)

        return {
            "report_name": report_name,
            "generation_timestamp": _utcnow().isoformat(),
            "summary": {
                "total_tests": total_tests,
                "passed": passed_tests,
                "failed": failed_tests,
                "flaky": flaky_tests,
                "success_rate": (passed_tests / total_tests * 100) if total_tests > 0 else 0,
                "total_duration": total_duration,
                "average_duration": avg_duration,
            },
            "test_results": [result.to_dict() for result in test_results],
            "failure_analysis": {
                "failure_groups": {
                    group: [result.test_name for result in results]
                    for group, results in failure_groups.items()
                },
                "most_common_error": max(failure_groups, key=lambda k: len(failure_groups[k]))
                if failure_groups
                else None,
            },
        }

    def generate_test_results_report(
        self,
        test_results: list[TestResult],
        report_name: str | None = None,
    ) -> dict[str, Any]:
        """Build the report and save it as JSON under the reports directory."""
        if report_name is None:
            report_name = f"e2e_results_{_utcnow().strftime('%Y%m%d_%H%M%S')}"

        report_data = self.build_report(test_results, report_name)

        self.reports_dir.mkdir(parents=True, exist_ok=True)
        json_path = self.reports_dir / f"{report_name}.json"
        with open(json_path, "w", encoding="utf-8") as f:
            json.dump(report_data, f, indent=2, default=str)

        logger.info(
            "Generated test results report",
            report=str(json_path),
            total_tests=report_data["summary"]["total_tests"],
            success_rate=report_data["summary"]["success_rate"],
        )
        return report_data
