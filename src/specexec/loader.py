"""Loading and structural validation of test specification documents."""

from __future__ import annotations

import json
import logging
import math
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator, ValidationError

from specexec.errors import SchemaError
from specexec.models import (
    Action,
    CompletionCriteria,
    GlobalConfiguration,
    SuccessCondition,
    Task,
    TestSpecification,
    ValidationCriteria,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
DEFAULT_API_BASE_URL = "http://localhost:3000"
GLOBAL_CONFIG_KEYS = {"workspaceRoot", "evidenceDirectory", "environment", "timeout"}

_ACTION_LIST = {
    "type": ["array", "null"],
    "items": {
        "type": "object",
        "required": ["actionId", "type"],
        "properties": {
            "actionId": {"type": "string", "minLength": 1},
            "type": {"type": "string", "minLength": 1},
        },
    },
}

SPECIFICATION_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["schemaVersion", "globalConfiguration", "tasks"],
    "properties": {
        "schemaVersion": {"type": ["string", "number"], "minLength": 1},
        "globalConfiguration": {"type": "object"},
        "tasks": {
            "type": "object",
            "minProperties": 1,
            "additionalProperties": {
                "type": "object",
                "required": ["testExecution", "validationCriteria"],
                "properties": {
                    "testExecution": {
                        "type": "object",
                        "required": ["steps"],
                        "properties": {
                            "prerequisites": _ACTION_LIST,
                            "steps": {**_ACTION_LIST, "type": "array", "minItems": 1},
                            "cleanup": _ACTION_LIST,
                        },
                    },
                    "validationCriteria": {"type": "object"},
                },
            },
        },
    },
}

_VALIDATOR = Draft202012Validator(SPECIFICATION_SCHEMA)


def _describe(error: ValidationError) -> str:
    path = list(error.path)
    where = ".".join(str(part) for part in path) or "Specification"
    if error.validator == "required":
        missing = [key for key in error.validator_value if key not in error.instance]
        return f"{where} missing {', '.join(missing)}"
    if error.validator in ("minItems", "minProperties"):
        if path == ["tasks"]:
            return "No tasks defined in specification"
        return f"{where} must not be empty"
    return f"{where}: {error.message}"


def _coerce_scalar(raw: str) -> Any:
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return raw
    if isinstance(value, float) and not math.isfinite(value):
        return raw
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return raw


def substitute_placeholders(value: Any, variables: Mapping[str, str]) -> Any:
    """Replace ``${VAR}`` placeholders recursively.

    A string made of a single placeholder takes the JSON type of its value,
    so ``"${TIMEOUT}"`` with ``TIMEOUT=500`` becomes the integer ``500``.
    Unknown placeholders are left untouched.
    """
    if isinstance(value, str):
        whole = PLACEHOLDER_PATTERN.fullmatch(value)
        if whole and whole.group(1) in variables:
            return _coerce_scalar(variables[whole.group(1)])
        return PLACEHOLDER_PATTERN.sub(
            lambda match: variables.get(match.group(1), match.group(0)), value
        )
    if isinstance(value, list):
        return [substitute_placeholders(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: substitute_placeholders(item, variables) for key, item in value.items()}
    return value


class SpecificationLoader:
    def __init__(
        self,
        overrides: Mapping[str, str] | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.overrides = dict(overrides or {})
        self.environ = os.environ if environ is None else environ

    def load(self, path: Path) -> TestSpecification:
        path = Path(path)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise SchemaError(f"Specification not found: {path}") from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise SchemaError(f"Failed to read specification {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise SchemaError(f"Specification {path} is not valid JSON: {exc}") from exc

        spec = self.parse(raw, source_path=path)
        logger.info("Loaded specification: %s", spec.title)
        logger.info("Tasks: %s", ", ".join(spec.tasks))
        return spec

    def parse(self, raw: Any, *, source_path: Path | None = None) -> TestSpecification:
        self.validate(raw)
        variables = self.build_variables(raw, source_path)
        document = substitute_placeholders(raw, variables)
        return self._build(document, source_path)

    @staticmethod
    def validate(raw: Any) -> None:
        errors = sorted(_VALIDATOR.iter_errors(raw), key=lambda error: list(map(str, error.path)))
        if errors:
            raise SchemaError(_describe(errors[0]))

        for task_id, task in raw["tasks"].items():
            execution = task["testExecution"]
            seen: set[str] = set()
            for phase_key in ("prerequisites", "steps", "cleanup"):
                for action in execution.get(phase_key) or []:
                    action_id = action["actionId"]
                    if action_id in seen:
                        raise SchemaError(f"Task {task_id} has duplicate actionId {action_id}")
                    seen.add(action_id)

    def build_variables(self, raw: dict[str, Any], source_path: Path | None) -> dict[str, str]:
        defaults: dict[str, str] = {
            "WORKSPACE_ROOT": str(Path.cwd()),
            "API_BASE_URL": DEFAULT_API_BASE_URL,
        }
        if source_path is not None:
            defaults["SPEC_DIR"] = str(source_path.resolve().parent)

        declared = raw["globalConfiguration"].get("environment") or {}
        if isinstance(declared, dict):
            defaults.update(
                {str(key): str(value) for key, value in declared.items() if value is not None}
            )

        variables = dict(defaults)
        variables.update(self.environ)
        variables.update(self.overrides)
        return variables

    def _build(self, document: dict[str, Any], source_path: Path | None) -> TestSpecification:
        global_raw = document["globalConfiguration"]
        environment = global_raw.get("environment") or {}
        if not isinstance(environment, dict):
            raise SchemaError("globalConfiguration.environment must be an object")

        global_config = GlobalConfiguration(
            workspace_root=Path(str(global_raw.get("workspaceRoot") or Path.cwd())),
            evidence_directory=str(global_raw.get("evidenceDirectory") or "evidence"),
            environment={str(key): str(value) for key, value in environment.items()},
            timeout=_timeout(global_raw.get("timeout"), "globalConfiguration.timeout"),
            extra={
                key: value for key, value in global_raw.items() if key not in GLOBAL_CONFIG_KEYS
            },
        )

        tasks = {
            str(task_id): _build_task(str(task_id), task)
            for task_id, task in document["tasks"].items()
        }
        metadata = document.get("metadata")
        return TestSpecification(
            schema_version=str(document["schemaVersion"]),
            global_configuration=global_config,
            tasks=tasks,
            metadata=metadata if isinstance(metadata, dict) else {},
            source_path=source_path,
        )


def _timeout(value: Any, where: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SchemaError(f"{where} must be a number of milliseconds, got {value!r}")
    if value <= 0:
        raise SchemaError(f"{where} must be positive, got {value!r}")
    return int(value)


def _build_action(task_id: str, raw: dict[str, Any]) -> Action:
    action_id = str(raw["actionId"])
    parameters = raw.get("parameters") or {}
    if not isinstance(parameters, dict):
        raise SchemaError(f"Task {task_id} action {action_id} parameters must be an object")
    return Action(
        action_id=action_id,
        type=str(raw["type"]),
        description=str(raw.get("description") or ""),
        parameters=parameters,
        timeout=_timeout(raw.get("timeout"), f"Task {task_id} action {action_id} timeout"),
        continue_on_failure=bool(raw.get("continueOnFailure", False)),
    )


def _build_task(task_id: str, raw: dict[str, Any]) -> Task:
    execution = raw["testExecution"]
    criteria = raw["validationCriteria"]
    conditions = criteria.get("successConditions") or []
    if not isinstance(conditions, list):
        raise SchemaError(f"Task {task_id} successConditions must be a list")

    success_conditions: list[SuccessCondition] = []
    for item in conditions:
        if isinstance(item, str):
            success_conditions.append(SuccessCondition(condition=item))
        elif isinstance(item, dict) and isinstance(item.get("condition"), str):
            success_conditions.append(
                SuccessCondition(
                    condition=item["condition"],
                    description=str(item.get("description") or item["condition"]),
                )
            )
        else:
            raise SchemaError(f"Task {task_id} has a success condition without an expression")

    completion = raw.get("completionCriteria") or {}
    required = completion.get("requiredEvidence") or []
    return Task(
        task_id=task_id,
        title=str(raw.get("title") or task_id),
        description=str(raw.get("description") or ""),
        prerequisites=tuple(
            _build_action(task_id, item) for item in execution.get("prerequisites") or []
        ),
        steps=tuple(_build_action(task_id, item) for item in execution["steps"]),
        cleanup=tuple(_build_action(task_id, item) for item in execution.get("cleanup") or []),
        validation_criteria=ValidationCriteria(success_conditions=tuple(success_conditions)),
        completion_criteria=CompletionCriteria(
            all_steps_must_pass=bool(completion.get("allStepsMustPass", True)),
            required_evidence=tuple(str(item) for item in required),
        ),
        timeout=_timeout(raw.get("timeout"), f"Task {task_id} timeout"),
    )
