"""Task orchestration.

Each task moves through a fixed lifecycle::

    PENDING -> RUNNING_PREREQUISITES -> RUNNING_STEPS -> RUNNING_CLEANUP
            -> EVALUATING -> PASSED | FAILED

A failed prerequisite jumps straight to RUNNING_CLEANUP and then FAILED, and
an unexpected exception anywhere routes the task through RUNNING_CLEANUP (if
cleanup has not run yet) to FAILED. Cleanup runs exactly once per task.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from enum import Enum
from pathlib import Path
from typing import Any

from specexec.config import EngineConfig
from specexec.errors import (
    ActionFailedError,
    ActionTimeoutError,
    ExecutorNotFoundError,
    LifecycleError,
    SpecExecError,
)
from specexec.evidence import EvidenceCollector
from specexec.models import (
    PHASE_CLEANUP,
    PHASE_PREREQ,
    PHASE_STEP,
    Action,
    ActionResult,
    ExecutionResults,
    FailureAnalysisResult,
    Task,
    TaskResult,
    TaskStatus,
    TechnicalDebtItem,
    TestSpecification,
    utcnow,
)
from specexec.plugins.registry import PluginRegistry
from specexec.validation import ValidationEngine, describe_failure

logger = logging.getLogger(__name__)

EngineEventHook = Callable[[dict[str, Any]], None]


class TaskPhase(str, Enum):
    PENDING = "PENDING"
    RUNNING_PREREQUISITES = "RUNNING_PREREQUISITES"
    RUNNING_STEPS = "RUNNING_STEPS"
    RUNNING_CLEANUP = "RUNNING_CLEANUP"
    EVALUATING = "EVALUATING"
    PASSED = "PASSED"
    FAILED = "FAILED"


TRANSITIONS: dict[TaskPhase, frozenset[TaskPhase]] = {
    TaskPhase.PENDING: frozenset({TaskPhase.RUNNING_PREREQUISITES, TaskPhase.RUNNING_CLEANUP}),
    TaskPhase.RUNNING_PREREQUISITES: frozenset(
        {TaskPhase.RUNNING_STEPS, TaskPhase.RUNNING_CLEANUP}
    ),
    TaskPhase.RUNNING_STEPS: frozenset({TaskPhase.RUNNING_CLEANUP}),
    TaskPhase.RUNNING_CLEANUP: frozenset({TaskPhase.EVALUATING, TaskPhase.FAILED}),
    TaskPhase.EVALUATING: frozenset({TaskPhase.PASSED, TaskPhase.FAILED}),
    TaskPhase.PASSED: frozenset(),
    TaskPhase.FAILED: frozenset(),
}
TERMINAL_PHASES = frozenset({TaskPhase.PASSED, TaskPhase.FAILED})


class TaskLifecycle:
    def __init__(self, task_id: str, history: list[str]) -> None:
        self.task_id = task_id
        self.phase = TaskPhase.PENDING
        self.history = history
        self.history.append(self.phase.value)

    @property
    def finished(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def advance(self, target: TaskPhase) -> None:
        if target not in TRANSITIONS[self.phase]:
            raise LifecycleError(
                f"Task {self.task_id}: illegal transition {self.phase.value} -> {target.value}"
            )
        logger.debug("Task %s: %s -> %s", self.task_id, self.phase.value, target.value)
        self.phase = target
        self.history.append(target.value)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class ExecutionEngine:
    def __init__(
        self,
        registry: PluginRegistry,
        config: EngineConfig | None = None,
        evidence_collector: EvidenceCollector | None = None,
        event_hook: EngineEventHook | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or EngineConfig.default()
        self.evidence_collector = evidence_collector
        self.event_hook = event_hook
        self.validator = ValidationEngine()
        self.report_paths: tuple[Path, Path] | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        logger.debug("event: %s", event)
        if self.event_hook:
            self.event_hook(event)

    def evidence_dir_for(self, spec: TestSpecification) -> Path:
        if self.config.evidence.directory:
            return Path(self.config.evidence.directory)
        directory = Path(spec.global_configuration.evidence_directory)
        if directory.is_absolute():
            return directory
        return spec.global_configuration.workspace_root / directory

    def _collector_for(self, spec: TestSpecification) -> EvidenceCollector:
        if self.evidence_collector is None:
            self.evidence_collector = EvidenceCollector(
                self.evidence_dir_for(spec),
                integrity=self.config.evidence.integrity,
            )
        return self.evidence_collector

    def resolve_timeout(self, action: Action, task: Task, spec: TestSpecification) -> int:
        for candidate in (action.timeout, task.timeout, spec.global_configuration.timeout):
            if candidate is not None:
                return candidate
        return self.config.runtime.default_timeout_ms

    def resolve_executor(self, action_type: str) -> Any | None:
        executors = self.registry.get_executors_for_action_type(action_type)
        return executors[0] if executors else None

    def plan(self, spec: TestSpecification) -> list[dict[str, Any]]:
        """Describe what would run, resolving executors without executing anything."""
        self.registry.load_all()
        entries: list[dict[str, Any]] = []
        for task_id, task in spec.tasks.items():
            for phase, action in task.actions():
                executor = self.resolve_executor(action.type)
                entries.append(
                    {
                        "taskId": task_id,
                        "phase": phase,
                        "actionId": action.action_id,
                        "type": action.type,
                        "description": action.description,
                        "executor": (
                            f"{executor.name}@{executor.version}" if executor else None
                        ),
                        "timeoutMs": self.resolve_timeout(action, task, spec),
                    }
                )
        return entries

    async def execute(self, spec: TestSpecification) -> ExecutionResults:
        self.registry.load_all()
        collector = self._collector_for(spec)
        results = ExecutionResults(
            specification={
                "title": spec.title,
                "schemaVersion": spec.schema_version,
                "source": str(spec.source_path) if spec.source_path else None,
                "globalConfiguration": spec.global_configuration.to_dict(),
            }
        )
        started = time.perf_counter()
        stop_on_failure = self.config.runtime.stop_on_failure
        logger.info("Executing %d tasks from %s", len(spec.tasks), spec.title)
        self._emit({"event": "run_started", "title": spec.title, "tasks": list(spec.tasks)})

        try:
            failed = False
            for task_id, task in spec.tasks.items():
                if failed and stop_on_failure:
                    skipped = self._skipped_result(task, "Skipped after an earlier task failed")
                    results.tasks[task_id] = skipped
                    collector.save_task_evidence(task_id, skipped)
                    self._emit({"event": "task_skipped", "task_id": task_id})
                    continue
                task_result = await self.execute_task(task, spec)
                results.tasks[task_id] = task_result
                failed = failed or task_result.status is TaskStatus.FAILED
        except Exception as exc:
            results.fatal_error = f"{type(exc).__name__}: {exc}"
            logger.error("Execution aborted: %s", results.fatal_error)
            raise
        finally:
            for task_id, task in spec.tasks.items():
                if task_id not in results.tasks:
                    results.tasks[task_id] = self._skipped_result(task, "Run aborted")
            results.ended_at = utcnow()
            results.duration_ms = _elapsed_ms(started)
            self.report_paths = collector.generate_final_report(results)
            self._emit({"event": "run_finished", "summary": results.summary})
        return results

    @staticmethod
    def _skipped_result(task: Task, reason: str) -> TaskResult:
        result = TaskResult(task_id=task.task_id, title=task.title)
        result.status = TaskStatus.SKIPPED
        result.failure_reason = reason
        result.ended_at = result.started_at
        result.duration_ms = 0
        return result

    async def execute_task(self, task: Task, spec: TestSpecification) -> TaskResult:
        collector = self._collector_for(spec)
        result = TaskResult(task_id=task.task_id, title=task.title)
        lifecycle = TaskLifecycle(task.task_id, result.phase_history)
        started = time.perf_counter()
        cleanup_started = False
        logger.info("Task %s: %s", task.task_id, task.title)
        self._emit({"event": "task_started", "task_id": task.task_id})

        try:
            lifecycle.advance(TaskPhase.RUNNING_PREREQUISITES)
            aborted = await self._run_phase(
                task, spec, PHASE_PREREQ, task.prerequisites, result, collector
            )
            if aborted is not None:
                result.failure_reason = f"Prerequisite {aborted.action_id} failed"
                logger.warning("Task %s: %s", task.task_id, result.failure_reason)
                lifecycle.advance(TaskPhase.RUNNING_CLEANUP)
                cleanup_started = True
                await self._run_phase(task, spec, PHASE_CLEANUP, task.cleanup, result, collector)
                lifecycle.advance(TaskPhase.FAILED)
            else:
                lifecycle.advance(TaskPhase.RUNNING_STEPS)
                await self._run_phase(task, spec, PHASE_STEP, task.steps, result, collector)
                lifecycle.advance(TaskPhase.RUNNING_CLEANUP)
                cleanup_started = True
                await self._run_phase(task, spec, PHASE_CLEANUP, task.cleanup, result, collector)
                lifecycle.advance(TaskPhase.EVALUATING)
                result.validation = self.validator.evaluate(
                    result.steps,
                    task.validation_criteria,
                    task.completion_criteria,
                )
                if result.validation.passed:
                    lifecycle.advance(TaskPhase.PASSED)
                else:
                    result.failure_reason = describe_failure(result.validation)
                    lifecycle.advance(TaskPhase.FAILED)
        except Exception as exc:
            message = str(exc) if isinstance(exc, SpecExecError) else f"{type(exc).__name__}: {exc}"
            logger.exception("Task %s raised an unexpected error", task.task_id)
            result.error = message
            result.failure_reason = message
            if not cleanup_started and not lifecycle.finished:
                lifecycle.advance(TaskPhase.RUNNING_CLEANUP)
                cleanup_started = True
                try:
                    await self._run_phase(
                        task, spec, PHASE_CLEANUP, task.cleanup, result, collector
                    )
                except Exception as cleanup_exc:
                    logger.error("Task %s cleanup failed: %s", task.task_id, cleanup_exc)
            if not lifecycle.finished:
                lifecycle.advance(TaskPhase.FAILED)

        result.status = (
            TaskStatus.PASSED if lifecycle.phase is TaskPhase.PASSED else TaskStatus.FAILED
        )
        result.ended_at = utcnow()
        result.duration_ms = _elapsed_ms(started)

        if result.status is TaskStatus.PASSED:
            result.technical_debt = await self._detect_debt(task, result)
        else:
            result.failure_analysis = await self._analyze_failure(task, result)

        collector.save_task_evidence(task.task_id, result)
        logger.info("Task %s %s (%dms)", task.task_id, result.status.value, result.duration_ms)
        self._emit(
            {
                "event": "task_finished",
                "task_id": task.task_id,
                "status": result.status.value,
                "failure_reason": result.failure_reason,
            }
        )
        return result

    async def _run_phase(
        self,
        task: Task,
        spec: TestSpecification,
        phase: str,
        actions: Sequence[Action],
        result: TaskResult,
        collector: EvidenceCollector,
    ) -> ActionResult | None:
        """Run a phase in order; return the failed result that aborted it, if any."""
        for action in actions:
            action_result = await self.execute_action(action, phase, task, spec)
            result.steps.append(action_result)
            collector.save_action_evidence(task.task_id, action.action_id, action_result)
            if not action_result.success and not action.continue_on_failure:
                return action_result
        return None

    async def execute_action(
        self,
        action: Action,
        phase: str,
        task: Task,
        spec: TestSpecification,
    ) -> ActionResult:
        timeout_ms = self.resolve_timeout(action, task, spec)
        executor = self.resolve_executor(action.type)
        started_at = utcnow()
        started = time.perf_counter()
        logger.info("[%s] %s: %s", phase, action.action_id, action.description or action.type)
        self._emit(
            {
                "event": "action_started",
                "task_id": task.task_id,
                "action_id": action.action_id,
                "phase": phase,
                "executor": executor.name if executor else None,
            }
        )

        data: Any = None
        error: str | None = None
        try:
            if executor is None:
                raise ExecutorNotFoundError(action.type)
            data = await asyncio.wait_for(
                executor.execute(dict(action.parameters), spec.global_configuration),
                timeout=timeout_ms / 1000,
            )
        except TimeoutError:
            error = str(ActionTimeoutError(action.action_id, timeout_ms))
            data = {"timedOut": True, "timeoutMs": timeout_ms}
        except ActionFailedError as exc:
            error = str(exc)
            data = exc.result
        except SpecExecError as exc:
            error = str(exc)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"

        action_result = ActionResult(
            action=action,
            phase=phase,
            task_id=task.task_id,
            success=error is None,
            started_at=started_at,
            ended_at=utcnow(),
            duration_ms=_elapsed_ms(started),
            data=data,
            error=error,
            executor=f"{executor.name}@{executor.version}" if executor else None,
        )
        if action_result.success:
            logger.info("[%s] %s passed (%dms)", phase, action.action_id, action_result.duration_ms)
        else:
            logger.warning("[%s] %s failed: %s", phase, action.action_id, error)
        self._emit(
            {
                "event": "action_finished",
                "task_id": task.task_id,
                "action_id": action.action_id,
                "phase": phase,
                "success": action_result.success,
                "duration_ms": action_result.duration_ms,
                "error": error,
            }
        )
        return action_result

    async def _analyze_failure(
        self, task: Task, result: TaskResult
    ) -> list[FailureAnalysisResult]:
        analyses: list[FailureAnalysisResult] = []
        for analyzer in self.registry.get_failure_analyzers():
            try:
                analysis = await analyzer.analyze(
                    list(result.steps), result.failure_reason or "", task
                )
            except Exception as exc:
                logger.warning("Failure analyzer %s raised: %s", analyzer.name, exc)
                continue
            if analysis is None:
                continue
            if not isinstance(analysis, FailureAnalysisResult):
                logger.warning(
                    "Failure analyzer %s returned %s, ignoring",
                    analyzer.name,
                    type(analysis).__name__,
                )
                continue
            logger.info("Failure analysis (%s): %s", analyzer.name, analysis.category)
            analyses.append(analysis)
        return analyses

    async def _detect_debt(self, task: Task, result: TaskResult) -> list[TechnicalDebtItem]:
        items: list[TechnicalDebtItem] = []
        for detector in self.registry.get_debt_detectors():
            try:
                found = await detector.analyze(list(result.steps), task)
            except Exception as exc:
                logger.warning("Debt detector %s raised: %s", detector.name, exc)
                continue
            if not isinstance(found, list):
                logger.warning(
                    "Debt detector %s returned %s, ignoring", detector.name, type(found).__name__
                )
                continue
            items.extend(item for item in found if isinstance(item, TechnicalDebtItem))
        if items:
            logger.info("Task %s: %d technical debt items", task.task_id, len(items))
        return items

    async def cleanup(self) -> None:
        await self.registry.cleanup_all()
