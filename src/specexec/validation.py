from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Any

from specexec.expressions import evaluate
from specexec.models import (
    PHASE_STEP,
    PHASES,
    ActionResult,
    CompletionCriteria,
    ConditionEvaluation,
    ValidationCriteria,
    ValidationResult,
)

logger = logging.getLogger(__name__)

ERROR_PATTERN = re.compile(r"error", re.IGNORECASE)
WARNING_PATTERN = re.compile(r"warning", re.IGNORECASE)
ALL_STEPS_CONDITION = "allStepsMustPass"
VALIDATION_FAILED_PREFIX = "Validation failed: "
CONDITION_SEPARATOR = "; "


def context_key(result: ActionResult) -> str:
    prefix = f"{result.phase}."
    action_id = result.action_id
    return action_id[len(prefix) :] if action_id.startswith(prefix) else action_id


def build_context(results: Sequence[ActionResult]) -> dict[str, dict[str, dict[str, Any]]]:
    """Map each phase scope to ``{key: fields}`` for the given task's results."""
    context: dict[str, dict[str, dict[str, Any]]] = {phase: {} for phase in PHASES}
    for result in results:
        payload = result.payload()
        fields: dict[str, Any] = dict(payload)
        fields.update(
            {
                "success": result.success,
                "error": result.error,
                "durationMs": result.duration_ms,
                "errorCount": len(ERROR_PATTERN.findall(str(payload.get("stderr") or ""))),
                "warningCount": len(WARNING_PATTERN.findall(str(payload.get("stdout") or ""))),
            }
        )
        context.setdefault(result.phase, {})[context_key(result)] = fields
    return context


class ValidationEngine:
    def evaluate(
        self,
        results: Sequence[ActionResult],
        criteria: ValidationCriteria,
        completion: CompletionCriteria | None = None,
    ) -> ValidationResult:
        context = build_context(results)
        evaluations: list[ConditionEvaluation] = []

        for condition in criteria.success_conditions:
            try:
                passed = evaluate(condition.condition, context)
                error = None
            except Exception as exc:  # fail closed on any evaluator error
                passed = False
                error = f"{type(exc).__name__}: {exc}"
                logger.warning("Condition %r could not be evaluated: %s", condition.condition, exc)
            evaluations.append(
                ConditionEvaluation(
                    condition=condition.condition,
                    description=condition.description,
                    passed=passed,
                    error=error,
                )
            )
            logger.info("%s: %s", "Passed" if passed else "Failed", condition.description)

        if completion is not None and completion.all_steps_must_pass:
            failed_steps = [
                result.action_id
                for result in results
                if result.phase == PHASE_STEP and not result.success
            ]
            evaluations.append(
                ConditionEvaluation(
                    condition=ALL_STEPS_CONDITION,
                    description=(
                        "All steps must pass"
                        if not failed_steps
                        else f"All steps must pass (failed: {', '.join(failed_steps)})"
                    ),
                    passed=not failed_steps,
                )
            )

        return ValidationResult(
            passed=all(item.passed for item in evaluations),
            evaluations=evaluations,
        )


def describe_failure(validation: ValidationResult) -> str:
    labels = [item.description or item.condition for item in validation.failed]
    return VALIDATION_FAILED_PREFIX + CONDITION_SEPARATOR.join(labels)


def failed_conditions(failure_reason: str) -> list[str]:
    """Recover the condition labels from a :func:`describe_failure` message."""
    if not failure_reason.startswith(VALIDATION_FAILED_PREFIX):
        return []
    remainder = failure_reason[len(VALIDATION_FAILED_PREFIX) :]
    return [label for label in remainder.split(CONDITION_SEPARATOR) if label]
