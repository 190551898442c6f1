import asyncio
from datetime import UTC, datetime
from typing import Any

import pytest

from specexec.models import Action, ActionResult, Task, TechnicalDebtItem
from specexec.plugins.debt_detectors.performance import PerformanceDetector, severity_for

TASK = Task(task_id="T001", title="Demo", steps=(Action("STEP.1", "HTTP_REQUEST"),))


def _passed(
    action_type: str,
    parameters: dict[str, Any],
    data: dict[str, Any],
    duration_ms: int = 10,
) -> ActionResult:
    now = datetime.now(UTC)
    return ActionResult(
        action=Action("STEP.1", action_type, parameters=parameters),
        phase="STEP",
        task_id="T001",
        success=True,
        started_at=now,
        ended_at=now,
        duration_ms=duration_ms,
        data=data,
    )


def _detect(*results: ActionResult, **thresholds: int) -> list[TechnicalDebtItem]:
    return asyncio.run(PerformanceDetector(**thresholds).analyze(list(results), TASK))


@pytest.mark.parametrize(
    ("actual", "severity"),
    [(1500, "LOW"), (2500, "MEDIUM"), (3500, "HIGH")],
)
def test_severity_scales_with_threshold_ratio(actual: int, severity: str) -> None:
    assert severity_for(actual, 1000) == severity


def test_clean_http_response_has_no_debt() -> None:
    items = _detect(
        _passed(
            "HTTP_REQUEST",
            {"url": "http://api/items", "method": "GET"},
            {"status": 200, "headers": {"Content-Type": "application/json"}, "body": [1, 2]},
        )
    )

    assert items == []


def test_slow_unpaginated_http_list() -> None:
    items = _detect(
        _passed(
            "HTTP_REQUEST",
            {"url": "http://api/items", "method": "GET"},
            {
                "status": 200,
                "headers": {"content-type": "application/json"},
                "body": list(range(25)),
            },
            duration_ms=2500,
        )
    )

    by_category = {item.category: item for item in items}
    slow = by_category["PERFORMANCE_DEGRADATION"]
    assert slow.severity == "MEDIUM"
    assert slow.evidence["actual"] == 2500
    assert slow.evidence["location"] == "GET http://api/items"
    assert by_category["API_ENDPOINT_INCOMPLETE"].description == (
        "List endpoint missing pagination metadata"
    )
    assert all(item.detector == "performance-detector" for item in items)


def test_http_error_handling_smells() -> None:
    generic = _detect(
        _passed(
            "HTTP_REQUEST",
            {"url": "http://api/login", "method": "POST"},
            {"status": 200, "headers": {}, "body": {"error": "bad"}},
        )
    )
    accepted_500 = _detect(
        _passed(
            "HTTP_REQUEST",
            {"url": "http://api/crash", "expectedStatus": [500]},
            {"status": 500, "headers": {"content-type": "text/plain"}, "body": "boom"},
        )
    )

    assert {item.description for item in generic} == {
        "Response missing Content-Type header",
        "API returns generic error message without details",
    }
    assert [item.severity for item in accepted_500] == ["HIGH"]


def test_test_command_smells() -> None:
    items = _detect(
        _passed(
            "TERMINAL_COMMAND",
            {"command": "pytest tests"},
            {
                "stdout": "DeprecationWarning: old api\n12 passed, 2 skipped\nusing mock server\n",
                "exitCode": 0,
            },
            duration_ms=4000,
        )
    )

    categories = [item.category for item in items]
    assert categories == [
        "PERFORMANCE_DEGRADATION",
        "CODE_QUALITY",
        "CODE_QUALITY",
        "INTEGRATION_ISSUE",
    ]
    assert items[0].severity == "HIGH"
    assert items[1].description == "Command produced 1 warning(s)"


def test_thresholds_are_configurable() -> None:
    detector = PerformanceDetector()
    detector.configure({"command_ms": 5000, "http_request_ms": "50"})
    result = _passed("TERMINAL_COMMAND", {"command": "npm test"}, {"stdout": ""}, 4000)

    assert detector.http_request_ms == 50
    assert asyncio.run(detector.analyze([result], TASK)) == []


def test_failed_actions_are_ignored() -> None:
    now = datetime.now(UTC)
    failed = ActionResult(
        action=Action("STEP.1", "HTTP_REQUEST", parameters={"url": "http://api"}),
        phase="STEP",
        task_id="T001",
        success=False,
        started_at=now,
        ended_at=now,
        duration_ms=90_000,
        error="HTTP 500",
    )

    assert _detect(failed) == []
