from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from specexec.errors import ActionFailedError
from specexec.models import (
    ActionResult,
    FailureAnalysisResult,
    GlobalConfiguration,
    Task,
    TechnicalDebtItem,
)

SEVERITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")


class Executor(ABC):
    """Performs one or more action types."""

    name: str = ""
    version: str = ""
    action_types: tuple[str, ...] = ()

    def get_action_types(self) -> list[str]:
        return list(self.action_types)

    def configure(self, settings: dict[str, Any]) -> None:
        _ = settings

    @abstractmethod
    async def execute(
        self,
        parameters: dict[str, Any],
        global_config: GlobalConfiguration,
    ) -> dict[str, Any]:
        """Run the action and return its result payload, raising on failure."""

    async def cleanup(self) -> None:
        """Release resources held across actions."""

    @staticmethod
    def require(parameters: dict[str, Any], *fields: str) -> None:
        missing = [name for name in fields if name not in parameters]
        if missing:
            raise ActionFailedError(f"Missing required parameters: {', '.join(missing)}")


class FailureAnalyzer(ABC):
    """Classifies why a task failed."""

    name: str = ""
    priority: int = 0

    def configure(self, settings: dict[str, Any]) -> None:
        _ = settings

    @abstractmethod
    async def analyze(
        self,
        action_results: Sequence[ActionResult],
        failure_reason: str,
        task: Task,
    ) -> FailureAnalysisResult | None:
        """Return a diagnosis, or None when this analyzer does not recognise the failure."""

    def create_result(
        self,
        category: str,
        reason: str,
        suggested_action: str,
        evidence: dict[str, Any],
        blocked_by: list[str] | None = None,
        confidence: float | None = None,
    ) -> FailureAnalysisResult:
        return FailureAnalysisResult(
            analyzer=self.name,
            category=category,
            reason=reason,
            suggested_action=suggested_action,
            blocked_by=list(blocked_by or []),
            evidence=evidence,
            confidence=confidence,
        )

    @staticmethod
    def find_failed_actions(action_results: Sequence[ActionResult]) -> list[ActionResult]:
        return [result for result in action_results if not result.success]


class DebtDetector(ABC):
    """Flags latent quality problems in a passing task."""

    name: str = ""
    priority: int = 0

    def configure(self, settings: dict[str, Any]) -> None:
        _ = settings

    @abstractmethod
    async def analyze(
        self,
        action_results: Sequence[ActionResult],
        task: Task,
    ) -> list[TechnicalDebtItem]:
        """Return the debt found, an empty list when there is none."""

    def create_item(
        self,
        category: str,
        severity: str,
        description: str,
        recommendation: str,
        evidence: dict[str, Any],
        effort: str | None = None,
    ) -> TechnicalDebtItem:
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")
        return TechnicalDebtItem(
            detector=self.name,
            category=category,
            severity=severity,
            description=description,
            recommendation=recommendation,
            evidence=evidence,
            effort=effort,
        )
