"""Pattern-based failure classification.

The first failed action (or the task's failure reason when no action failed)
is matched against an ordered list of categories; the first category whose
patterns match wins. Every category knows how to pull the items that block
progress out of the error text.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from typing import Any

from specexec.models import ActionResult, FailureAnalysisResult, Task
from specexec.plugins.base import FailureAnalyzer
from specexec.validation import failed_conditions

MAX_COMPILER_LINES = 3


def _contains(*needles: str) -> Callable[[str, dict[str, Any], dict[str, Any]], bool]:
    def check(text: str, action: dict[str, Any], payload: dict[str, Any]) -> bool:
        return any(needle in text for needle in needles)

    return check


def _command(action: dict[str, Any]) -> str:
    parameters = action.get("parameters") or {}
    return str(parameters.get("command") or "")


def _incomplete(text: str, action: dict[str, Any], payload: dict[str, Any]) -> bool:
    return action.get("type") == "FILE_VALIDATION" or any(
        needle in text
        for needle in (
            "file not found",
            "no such file or directory",
            "filenotfounderror",
            "enoent",
            "cannot find module",
            "404 not found",
            "does not exist",
        )
    )


def _compilation(text: str, action: dict[str, Any], payload: dict[str, Any]) -> bool:
    if re.search(r"\bts\d+:", text):
        return True
    if any(
        needle in text
        for needle in ("syntaxerror", "indentationerror", "compilation failed", "could not compile")
    ):
        return True
    command = _command(action)
    return action.get("type") == "TERMINAL_COMMAND" and bool(
        re.search(r"\btsc\b|\bcompileall\b|\bpy_compile\b", command)
    )


def _authentication(text: str, action: dict[str, Any], payload: dict[str, Any]) -> bool:
    return bool(re.search(r"\b(401|403)\b", text)) or any(
        needle in text for needle in ("unauthorized", "forbidden", "invalid token")
    )


def _dependency(text: str, action: dict[str, Any], payload: dict[str, Any]) -> bool:
    if "npm" in text and "err" in text:
        return True
    if any(
        needle in text
        for needle in (
            "package not found",
            "eresolve",
            "no module named",
            "modulenotfounderror",
            "could not find a version that satisfies",
            "no matching distribution",
        )
    ):
        return True
    command = _command(action)
    return action.get("type") == "TERMINAL_COMMAND" and (
        "npm install" in command or "pip install" in command
    )


def _validation(text: str, action: dict[str, Any], payload: dict[str, Any]) -> bool:
    if "expected" in text and "but got" in text:
        return True
    if any(
        needle in text for needle in ("assertion failed", "assertionerror", "schema validation")
    ):
        return True
    status = payload.get("status")
    return action.get("type") == "HTTP_REQUEST" and isinstance(status, int) and status >= 400


CATEGORY_RULES: list[tuple[str, Callable[[str, dict[str, Any], dict[str, Any]], bool]]] = [
    ("INCOMPLETE_IMPLEMENTATION", _incomplete),
    ("COMPILATION_ERROR", _compilation),
    (
        "ENVIRONMENT_ERROR",
        _contains(
            "econnrefused",
            "connection refused",
            "connection error",
            "port already in use",
            "address already in use",
            "not running",
        ),
    ),
    ("AUTHENTICATION_ERROR", _authentication),
    ("TIMEOUT", _contains("timeout", "timed out", "etimedout")),
    ("DEPENDENCY_ERROR", _dependency),
    (
        "RUNTIME_ERROR",
        _contains(
            "typeerror",
            "referenceerror",
            "rangeerror",
            "attributeerror",
            "keyerror",
            "nameerror",
            "valueerror",
            "zerodivisionerror",
            "traceback (most recent call last)",
            "cannot read property",
            "is not defined",
        ),
    ),
    ("VALIDATION_FAILURE", _validation),
    (
        "CONFIGURATION_ERROR",
        _contains(
            "invalid configuration",
            "parse error",
            "missing required parameters",
            "no executor plugin found",
        ),
    ),
]


def detect_category(error: str, action: dict[str, Any], payload: dict[str, Any]) -> str:
    text = error.lower()
    for category, matches in CATEGORY_RULES:
        if matches(text, action, payload):
            return category
    if "config" in text and "error" in text:
        return "CONFIGURATION_ERROR"
    return "UNKNOWN_ERROR"


def first_line(error: str) -> str:
    return error.split("\n", 1)[0].strip()


def extract_error_type(error: str) -> str:
    matches = re.findall(
        r"^(\w+(?:Error|Exception)|ENOENT|ECONNREFUSED|ETIMEDOUT)\b:?",
        error,
        re.MULTILINE,
    )
    return matches[-1] if matches else "Error"


def extract_file_path(error: str, action: dict[str, Any]) -> str | None:
    match = re.search(
        r"(?:File not found|ENOENT|No such file or directory):\s*(.+)$",
        error,
        re.IGNORECASE | re.MULTILINE,
    )
    if match:
        return match.group(1).strip().strip("'\"")
    parameters = action.get("parameters") or {}
    for key in ("filePath", "script"):
        if parameters.get(key):
            return str(parameters[key])
    return None


def extract_compiler_lines(error: str) -> list[str]:
    lines = [
        line.strip()
        for line in error.splitlines()
        if re.search(r"\.(ts|tsx|py|rs|go|java):\d+|TS\d+:|SyntaxError|IndentationError", line)
    ]
    return lines[:MAX_COMPILER_LINES]


def extract_service(error: str) -> str:
    for pattern in (
        r"(\w+)\s+not running",
        r"ECONNREFUSED.*?//([^:/\s]+)",
        r"connect.*?:(\d+)",
        r"\((https?://[^)\s]+)\)",
    ):
        match = re.search(pattern, error, re.I)
        if match:
            return match.group(1)
    return "Required service"


def extract_packages(error: str) -> list[str]:
    found = re.findall(r"No module named '([\w.]+)'", error)
    found += re.findall(r"@[\w-]+/[\w-]+|\b[\w-]+@\d[\w.]*", error)
    found += re.findall(r"satisfies the requirement ([\w.-]+)", error)
    unique = list(dict.fromkeys(found))
    return unique or ["project dependencies"]


def extract_stack_location(error: str) -> str | None:
    python_frames = re.findall(r'File "([^"]+)", line (\d+)', error)
    if python_frames:
        path, line = python_frames[-1]
        return f"{path}:{line}"
    match = re.search(r"at .+ \((.+:\d+:\d+)\)", error)
    return match.group(1) if match else None


def extract_config_file(error: str, action: dict[str, Any]) -> str:
    match = re.search(r"([\w./-]+\.(?:json|ya?ml|toml|ini|cfg))\b", error, re.I)
    if match:
        return match.group(1)
    parameters = action.get("parameters") or {}
    if parameters.get("filePath"):
        return str(parameters["filePath"])
    return "configuration file"


class PatternBasedAnalyzer(FailureAnalyzer):
    name = "pattern-based-analyzer"
    priority = 100

    async def analyze(
        self,
        action_results: Sequence[ActionResult],
        failure_reason: str,
        task: Task,
    ) -> FailureAnalysisResult | None:
        failed = self.find_failed_actions(action_results)
        if not failed:
            conditions = failed_conditions(failure_reason or "")
            if conditions:
                return self.create_result(
                    "VALIDATION_FAILURE",
                    "Success conditions were not met",
                    "Update implementation to satisfy the task's success conditions",
                    {"taskId": task.task_id, "phase": "EVALUATING"},
                    blocked_by=conditions,
                )
            return self._classify(failure_reason or "", {}, {}, {"taskId": task.task_id})

        step = failed[0]
        evidence = {
            "taskId": task.task_id,
            "actionId": step.action_id,
            "actionType": step.action_type,
            "phase": step.phase,
        }
        return self._classify(
            step.error or failure_reason or "",
            step.action.to_dict(),
            step.payload(),
            evidence,
        )

    def _classify(
        self,
        error: str,
        action: dict[str, Any],
        payload: dict[str, Any],
        evidence: dict[str, Any],
    ) -> FailureAnalysisResult:
        category = detect_category(error, action, payload)
        reason, blocked_by, suggestion = self._explain(category, error, action, payload)
        return self.create_result(
            category,
            reason,
            suggestion,
            {**evidence, "errorType": extract_error_type(error), "fullError": error},
            blocked_by=blocked_by,
        )

    @staticmethod
    def _explain(
        category: str,
        error: str,
        action: dict[str, Any],
        payload: dict[str, Any],
    ) -> tuple[str, list[str], str]:
        reason = first_line(error)
        parameters = action.get("parameters") or {}

        if category == "INCOMPLETE_IMPLEMENTATION":
            path = extract_file_path(error, action)
            return (
                reason or "Required implementation does not exist",
                [path] if path else [],
                "Create the missing file or implementation",
            )
        if category == "COMPILATION_ERROR":
            return (
                "Compilation failed",
                extract_compiler_lines(error),
                "Fix compilation errors before running tests",
            )
        if category == "ENVIRONMENT_ERROR":
            return (
                reason or "Environment service unavailable",
                [extract_service(error)],
                "Start required services or check environment configuration",
            )
        if category == "AUTHENTICATION_ERROR":
            return (
                f"Authentication failed: {reason or 'Invalid credentials'}",
                ["Check authentication token or credentials"],
                "Ensure the credentials used by the request are set correctly",
            )
        if category == "TIMEOUT":
            target = parameters.get("url") or parameters.get("command") or "Unknown operation"
            return (
                "Operation exceeded timeout threshold",
                [str(target)],
                "Check operation performance or increase the timeout",
            )
        if category == "DEPENDENCY_ERROR":
            return (
                "Package installation or dependency resolution failed",
                extract_packages(error),
                "Install the missing packages or fix the dependency declarations",
            )
        if category == "RUNTIME_ERROR":
            location = extract_stack_location(error)
            return (
                reason or "Uncaught exception during execution",
                [location] if location else [],
                "Add error handling or fix the runtime exception",
            )
        if category == "VALIDATION_FAILURE":
            items: list[str] = []
            if "expected" in error.lower() and "but got" in error.lower():
                items.append(reason)
            status = payload.get("status")
            if isinstance(status, int) and status >= 400:
                items.append(f"HTTP {status}: {payload.get('statusText') or 'Validation failed'}")
            return (
                "Test validation or assertion failed",
                items or ["Validation criteria not met"],
                "Update implementation to match expected behavior",
            )
        if category == "CONFIGURATION_ERROR":
            return (
                reason or "Invalid or missing configuration",
                [extract_config_file(error, action)],
                "Fix configuration syntax or add missing settings",
            )
        return reason or "Unknown failure", [], "Review error details and check logs"


plugin = PatternBasedAnalyzer
