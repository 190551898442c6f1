from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

PHASE_PREREQ = "PREREQ"
PHASE_STEP = "STEP"
PHASE_CLEANUP = "CLEANUP"
PHASES = (PHASE_PREREQ, PHASE_STEP, PHASE_CLEANUP)


def utcnow() -> datetime:
    return datetime.now(UTC)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds")


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True, slots=True)
class Action:
    action_id: str
    type: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    timeout: int | None = None
    continue_on_failure: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "actionId": self.action_id,
            "type": self.type,
            "description": self.description,
            "parameters": self.parameters,
            "timeout": self.timeout,
            "continueOnFailure": self.continue_on_failure,
        }


@dataclass(frozen=True, slots=True)
class SuccessCondition:
    condition: str
    description: str = ""


@dataclass(frozen=True, slots=True)
class ValidationCriteria:
    success_conditions: tuple[SuccessCondition, ...] = ()


@dataclass(frozen=True, slots=True)
class CompletionCriteria:
    all_steps_must_pass: bool = True
    required_evidence: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Task:
    task_id: str
    title: str
    steps: tuple[Action, ...]
    prerequisites: tuple[Action, ...] = ()
    cleanup: tuple[Action, ...] = ()
    description: str = ""
    validation_criteria: ValidationCriteria = field(default_factory=ValidationCriteria)
    completion_criteria: CompletionCriteria = field(default_factory=CompletionCriteria)
    timeout: int | None = None

    def actions(self) -> list[tuple[str, Action]]:
        return [
            *((PHASE_PREREQ, action) for action in self.prerequisites),
            *((PHASE_STEP, action) for action in self.steps),
            *((PHASE_CLEANUP, action) for action in self.cleanup),
        ]


@dataclass(frozen=True, slots=True)
class GlobalConfiguration:
    workspace_root: Path
    evidence_directory: str = "evidence"
    environment: dict[str, str] = field(default_factory=dict)
    timeout: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.extra.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspaceRoot": str(self.workspace_root),
            "evidenceDirectory": self.evidence_directory,
            "environment": dict(self.environment),
            "timeout": self.timeout,
            **self.extra,
        }


@dataclass(frozen=True, slots=True)
class TestSpecification:
    __test__ = False

    schema_version: str
    global_configuration: GlobalConfiguration
    tasks: Mapping[str, Task]
    metadata: dict[str, Any] = field(default_factory=dict)
    source_path: Path | None = None

    @property
    def title(self) -> str:
        return str(self.metadata.get("taskTitle") or self.metadata.get("title") or "Unknown")


@dataclass(frozen=True, slots=True)
class ActionResult:
    action: Action
    phase: str
    task_id: str
    success: bool
    started_at: datetime
    ended_at: datetime
    duration_ms: int
    data: Any = None
    error: str | None = None
    executor: str | None = None

    @property
    def action_id(self) -> str:
        return self.action.action_id

    @property
    def action_type(self) -> str:
        return self.action.type

    def payload(self) -> dict[str, Any]:
        return self.data if isinstance(self.data, dict) else {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.to_dict(),
            "phase": self.phase,
            "taskId": self.task_id,
            "success": self.success,
            "startTime": isoformat(self.started_at),
            "endTime": isoformat(self.ended_at),
            "durationMs": self.duration_ms,
            "data": self.data,
            "error": self.error,
            "executor": self.executor,
        }


@dataclass(slots=True)
class ConditionEvaluation:
    condition: str
    description: str
    passed: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "condition": self.condition,
            "description": self.description,
            "passed": self.passed,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class ValidationResult:
    passed: bool
    evaluations: list[ConditionEvaluation] = field(default_factory=list)

    @property
    def failed(self) -> list[ConditionEvaluation]:
        return [item for item in self.evaluations if not item.passed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "evaluations": [item.to_dict() for item in self.evaluations],
        }


@dataclass(slots=True)
class FailureAnalysisResult:
    analyzer: str
    category: str
    reason: str
    suggested_action: str
    blocked_by: list[str] = field(default_factory=list)
    evidence: dict[str, Any] = field(default_factory=dict)
    detected_at: datetime = field(default_factory=utcnow)
    confidence: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "analyzer": self.analyzer,
            "category": self.category,
            "reason": self.reason,
            "blockedBy": list(self.blocked_by),
            "suggestedAction": self.suggested_action,
            "detectedAt": isoformat(self.detected_at),
            "evidence": dict(self.evidence),
            "confidence": self.confidence,
        }


@dataclass(slots=True)
class TechnicalDebtItem:
    detector: str
    category: str
    severity: str
    description: str
    recommendation: str
    evidence: dict[str, Any] = field(default_factory=dict)
    detected_at: datetime = field(default_factory=utcnow)
    effort: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "detector": self.detector,
            "category": self.category,
            "severity": self.severity,
            "description": self.description,
            "recommendation": self.recommendation,
            "detectedAt": isoformat(self.detected_at),
            "evidence": dict(self.evidence),
            "effort": self.effort,
        }


@dataclass(slots=True)
class TaskResult:
    task_id: str
    title: str
    started_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None
    duration_ms: int | None = None
    steps: list[ActionResult] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    failure_reason: str | None = None
    validation: ValidationResult | None = None
    failure_analysis: list[FailureAnalysisResult] = field(default_factory=list)
    technical_debt: list[TechnicalDebtItem] = field(default_factory=list)
    error: str | None = None
    phase_history: list[str] = field(default_factory=list)

    def results_for(self, phase: str) -> list[ActionResult]:
        return [result for result in self.steps if result.phase == phase]

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "title": self.title,
            "status": self.status.value,
            "startTime": isoformat(self.started_at),
            "endTime": isoformat(self.ended_at),
            "durationMs": self.duration_ms,
            "failureReason": self.failure_reason,
            "error": self.error,
            "phaseHistory": list(self.phase_history),
            "steps": [result.to_dict() for result in self.steps],
            "validationResult": self.validation.to_dict() if self.validation else None,
            "failureAnalysis": [item.to_dict() for item in self.failure_analysis],
            "technicalDebt": [item.to_dict() for item in self.technical_debt],
        }


@dataclass(slots=True)
class ExecutionResults:
    started_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None
    duration_ms: int | None = None
    tasks: dict[str, TaskResult] = field(default_factory=dict)
    fatal_error: str | None = None
    specification: dict[str, Any] = field(default_factory=dict)

    @property
    def summary(self) -> dict[str, int]:
        statuses = [result.status for result in self.tasks.values()]
        return {
            "total": len(statuses),
            "passed": statuses.count(TaskStatus.PASSED),
            "failed": statuses.count(TaskStatus.FAILED),
            "skipped": statuses.count(TaskStatus.SKIPPED),
        }

    @property
    def succeeded(self) -> bool:
        return self.fatal_error is None and self.summary["failed"] == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "startTime": isoformat(self.started_at),
            "endTime": isoformat(self.ended_at),
            "durationMs": self.duration_ms,
            "specification": dict(self.specification),
            "summary": self.summary,
            "fatalError": self.fatal_error,
            "tasks": {task_id: result.to_dict() for task_id, result in self.tasks.items()},
        }
