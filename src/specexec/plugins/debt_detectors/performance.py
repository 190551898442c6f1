from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

from specexec.models import ActionResult, Task, TechnicalDebtItem
from specexec.plugins.base import DebtDetector

DEFAULT_HTTP_REQUEST_MS = 1000
DEFAULT_COMMAND_MS = 500
LARGE_LIST_ITEMS = 10
GENERIC_ERROR_CHARS = 20
MAX_WARNING_CHARS = 100

TEST_MARKER_PATTERN = re.compile(r"\.skip\b|\.only\b|\b\d+ skipped\b|@pytest\.mark\.skip")
MOCK_PATTERN = re.compile(r"\b(mock|stub)", re.IGNORECASE)


def severity_for(actual: float, threshold: float) -> str:
    ratio = actual / threshold
    if ratio > 3:
        return "HIGH"
    if ratio > 2:
        return "MEDIUM"
    return "LOW"


def extract_warnings(output: str) -> list[str]:
    return [
        line.strip()[:MAX_WARNING_CHARS]
        for line in output.splitlines()
        if "warning" in line.lower() or "deprecat" in line.lower()
    ]


class PerformanceDetector(DebtDetector):
    """Looks for slow actions and quality smells in a passing task's output."""

    name = "performance-detector"
    priority = 50

    def __init__(
        self,
        http_request_ms: int = DEFAULT_HTTP_REQUEST_MS,
        command_ms: int = DEFAULT_COMMAND_MS,
    ) -> None:
        self.http_request_ms = http_request_ms
        self.command_ms = command_ms

    def configure(self, settings: dict[str, Any]) -> None:
        self.http_request_ms = int(settings.get("http_request_ms", self.http_request_ms))
        self.command_ms = int(settings.get("command_ms", self.command_ms))

    async def analyze(
        self,
        action_results: Sequence[ActionResult],
        task: Task,
    ) -> list[TechnicalDebtItem]:
        items: list[TechnicalDebtItem] = []
        for result in action_results:
            if not result.success:
                continue
            if result.action_type == "HTTP_REQUEST":
                items.extend(self._http_items(result))
            elif result.action_type == "TERMINAL_COMMAND":
                items.extend(self._command_items(result))
        return items

    @staticmethod
    def _endpoint(result: ActionResult) -> str:
        parameters = result.action.parameters
        return f"{parameters.get('method', 'GET')} {parameters.get('url', 'Unknown URL')}"

    def _http_items(self, result: ActionResult) -> list[TechnicalDebtItem]:
        items: list[TechnicalDebtItem] = []
        data = result.payload()
        location = {"location": self._endpoint(result), "relatedSteps": [result.action_id]}

        if result.duration_ms > self.http_request_ms:
            items.append(
                self.create_item(
                    "PERFORMANCE_DEGRADATION",
                    severity_for(result.duration_ms, self.http_request_ms),
                    f"HTTP request took {result.duration_ms}ms, "
                    f"exceeds {self.http_request_ms}ms threshold",
                    "Optimize the endpoint, add caching, or paginate the response",
                    {
                        **location,
                        "metric": "duration",
                        "threshold": self.http_request_ms,
                        "actual": result.duration_ms,
                    },
                )
            )

        headers = {str(key).lower(): value for key, value in (data.get("headers") or {}).items()}
        if not headers.get("content-type"):
            items.append(
                self.create_item(
                    "API_ENDPOINT_INCOMPLETE",
                    "LOW",
                    "Response missing Content-Type header",
                    "Add a Content-Type header to the response",
                    location,
                )
            )

        status = data.get("status")
        body = data.get("body")
        if isinstance(status, int) and 200 <= status < 300:
            if (
                isinstance(body, list)
                and len(body) > LARGE_LIST_ITEMS
                and "x-total-count" not in headers
            ):
                items.append(
                    self.create_item(
                        "API_ENDPOINT_INCOMPLETE",
                        "LOW",
                        "List endpoint missing pagination metadata",
                        "Add pagination support with total count, page and limit metadata",
                        location,
                    )
                )
            error = body.get("error") if isinstance(body, dict) else None
            if isinstance(error, str) and error and len(error) < GENERIC_ERROR_CHARS:
                items.append(
                    self.create_item(
                        "ERROR_HANDLING_INCOMPLETE",
                        "MEDIUM",
                        "API returns generic error message without details",
                        "Add specific error codes and detailed error messages",
                        location,
                    )
                )
        if isinstance(status, int) and status >= 500:
            items.append(
                self.create_item(
                    "ERROR_HANDLING_INCOMPLETE",
                    "HIGH",
                    f"API endpoint returned {status} and the action accepted it",
                    "Return 4xx responses for client errors instead of server errors",
                    location,
                )
            )
        return items

    def _command_items(self, result: ActionResult) -> list[TechnicalDebtItem]:
        items: list[TechnicalDebtItem] = []
        data = result.payload()
        command = str(result.action.parameters.get("command", ""))
        stdout = str(data.get("stdout") or "")
        location = {"location": command or "Unknown command", "relatedSteps": [result.action_id]}
        is_test = "test" in command
        is_query = "query" in command

        if (is_test or is_query) and result.duration_ms > self.command_ms:
            items.append(
                self.create_item(
                    "PERFORMANCE_DEGRADATION",
                    severity_for(result.duration_ms, self.command_ms),
                    f"Command execution took {result.duration_ms}ms, "
                    f"exceeds {self.command_ms}ms threshold",
                    "Profile and optimize slow operations",
                    {
                        **location,
                        "metric": "duration",
                        "threshold": self.command_ms,
                        "actual": result.duration_ms,
                    },
                )
            )

        warnings = extract_warnings(stdout)
        if warnings:
            items.append(
                self.create_item(
                    "CODE_QUALITY",
                    "LOW",
                    f"Command produced {len(warnings)} warning(s)",
                    "Address warnings: " + "; ".join(warnings[:2]),
                    location,
                )
            )

        if is_test and TEST_MARKER_PATTERN.search(stdout):
            items.append(
                self.create_item(
                    "CODE_QUALITY",
                    "MEDIUM",
                    "Skipped or focused tests detected",
                    "Remove skip and only markers from tests before committing",
                    location,
                )
            )

        if is_test and MOCK_PATTERN.search(stdout):
            items.append(
                self.create_item(
                    "INTEGRATION_ISSUE",
                    "MEDIUM",
                    "Tests may be using mocks instead of real integrations",
                    "Replace mocks with real integration tests where appropriate",
                    location,
                )
            )
        return items


plugin = PerformanceDetector
