from __future__ import annotations

from typing import Any


class SpecExecError(RuntimeError):
    """Base class for engine errors."""


class SchemaError(SpecExecError):
    """Raised when a specification document is malformed."""


class PluginValidationError(SpecExecError):
    """Raised when a discovered plugin does not satisfy its capability contract."""

    def __init__(self, message: str, *, source: str | None = None) -> None:
        super().__init__(message)
        self.source = source


class ExecutorNotFoundError(SpecExecError):
    """Raised when no executor plugin serves an action type."""

    def __init__(self, action_type: str) -> None:
        super().__init__(f"No executor plugin found for action type: {action_type}")
        self.action_type = action_type


class ActionFailedError(SpecExecError):
    """Raised by executors when an action ran but did not meet its expectations.

    ``result`` keeps whatever payload the executor gathered before failing so
    that it still reaches the evidence files and the failure analyzers.
    """

    def __init__(self, message: str, *, result: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.result = result


class ActionTimeoutError(SpecExecError):
    """Raised when an action exceeds its timeout."""

    def __init__(self, action_id: str, timeout_ms: int) -> None:
        super().__init__(f"Action {action_id} timed out after {timeout_ms}ms")
        self.action_id = action_id
        self.timeout_ms = timeout_ms


class LifecycleError(SpecExecError):
    """Raised on an illegal task state transition."""


class ExpressionError(SpecExecError):
    """Raised when a success condition cannot be parsed or evaluated."""


class ConfigError(SpecExecError):
    """Raised when the engine configuration file cannot be used."""


class EvidenceError(SpecExecError):
    """Raised when an evidence file would land outside the evidence directory."""
