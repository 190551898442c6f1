"""Evidence files written while a specification runs.

Layout under the evidence directory::

    {taskId}/{phase}/{actionType}/{actionId}.json
    {taskId}/task-summary.json
    {taskId}/validations/validation-results.json
    execution-report-{timestamp}.json
    execution-report-latest.json

Every record carries a ``metadata`` block and, unless disabled, an
``integrity`` block holding the SHA-256 of the record's canonical JSON
(sorted keys, compact separators, ``integrity`` itself excluded).
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import platform
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from specexec import GENERATOR_NAME, __version__
from specexec.errors import EvidenceError
from specexec.models import ActionResult, ExecutionResults, TaskResult, isoformat

logger = logging.getLogger(__name__)

INTEGRITY_KEY = "integrity"
LATEST_REPORT = "execution-report-latest.json"


def _canonical(record: dict[str, Any]) -> str:
    body = {key: value for key, value in record.items() if key != INTEGRITY_KEY}
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def digest(record: dict[str, Any]) -> str:
    return hashlib.sha256(_canonical(record).encode("utf-8")).hexdigest()


def verify_record(record: dict[str, Any]) -> bool:
    """Return True when the record's stored digest matches its content."""
    integrity = record.get(INTEGRITY_KEY)
    if not isinstance(integrity, dict) or not isinstance(integrity.get("sha256"), str):
        return False
    return integrity["sha256"] == digest(record)


def runtime_metadata() -> dict[str, Any]:
    return {
        "generatedBy": f"{GENERATOR_NAME} {__version__}",
        "platform": sys.platform,
        "pythonVersion": platform.python_version(),
        "pid": os.getpid(),
    }


def safe_path_component(value: str) -> str:
    """Make a task id or action type usable as a single directory name."""
    cleaned = value.replace("/", "-").replace("\\", "-").replace("\x00", "")
    if not cleaned.strip("."):
        cleaned = cleaned.replace(".", "-") or "_"
    return cleaned


def safe_action_id(action_id: str) -> str:
    return safe_path_component(action_id.replace(".", "-"))


class EvidenceCollector:
    def __init__(self, evidence_dir: Path, *, integrity: bool = True) -> None:
        self.evidence_dir = Path(evidence_dir)
        self.integrity = integrity

    def _seal(self, record: dict[str, Any]) -> dict[str, Any]:
        # Round-trip first so the digest covers exactly what lands on disk.
        sealed = json.loads(json.dumps(record, ensure_ascii=False, default=str))
        sealed["metadata"] = runtime_metadata()
        if self.integrity:
            sealed[INTEGRITY_KEY] = {"algorithm": "sha256", "sha256": digest(sealed)}
        return sealed

    def _write(self, path: Path, record: dict[str, Any]) -> Path:
        if not path.resolve().is_relative_to(self.evidence_dir.resolve()):
            raise EvidenceError(f"Evidence path escapes {self.evidence_dir}: {path}")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(self._seal(record), ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        return path

    def action_path(self, task_id: str, action_id: str, result: ActionResult) -> Path:
        return (
            self.evidence_dir
            / safe_path_component(task_id)
            / safe_path_component(result.phase.lower())
            / safe_path_component(result.action_type.lower())
            / f"{safe_action_id(action_id)}.json"
        )

    def save_action_evidence(self, task_id: str, action_id: str, result: ActionResult) -> Path:
        record = {
            "actionId": action_id,
            "taskId": task_id,
            "phase": result.phase,
            "actionType": result.action_type,
            "timestamp": isoformat(result.started_at),
            "action": {
                "type": result.action_type,
                "description": result.action.description,
                "parameters": result.action.parameters,
            },
            "result": {
                "success": result.success,
                "durationMs": result.duration_ms,
                "data": result.data,
                "error": result.error,
                "executor": result.executor,
            },
        }
        path = self._write(self.action_path(task_id, action_id, result), record)
        logger.debug("Saved action evidence: %s", path)
        return path

    def save_task_evidence(self, task_id: str, task_result: TaskResult) -> Path:
        task_dir = self.evidence_dir / safe_path_component(task_id)
        summary_path = self._write(task_dir / "task-summary.json", task_result.to_dict())

        validation = task_result.validation
        if validation is not None:
            evaluations = [item.to_dict() for item in validation.evaluations]
            passed = sum(1 for item in validation.evaluations if item.passed)
            self._write(
                task_dir / "validations" / "validation-results.json",
                {
                    "taskId": task_id,
                    "timestamp": isoformat(task_result.ended_at),
                    "overallPassed": validation.passed,
                    "total": len(evaluations),
                    "passed": passed,
                    "failed": len(evaluations) - passed,
                    "results": evaluations,
                },
            )
        logger.info("Saved task summary: %s", summary_path)
        return summary_path

    def _timestamped_report_path(self) -> Path:
        stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S")
        candidate = self.evidence_dir / f"execution-report-{stamp}.json"
        suffix = 1
        while candidate.exists():
            candidate = self.evidence_dir / f"execution-report-{stamp}-{suffix}.json"
            suffix += 1
        return candidate

    def generate_final_report(self, results: ExecutionResults) -> tuple[Path, Path]:
        report = {
            **results.to_dict(),
            "generatedAt": datetime.now(UTC).isoformat(timespec="milliseconds"),
        }
        timestamped = self._write(self._timestamped_report_path(), report)
        latest = self._write(self.evidence_dir / LATEST_REPORT, report)

        summary = results.summary
        logger.info("Final report: %s", timestamped)
        logger.info("Latest report: %s", latest)
        logger.info(
            "Passed: %d/%d, failed: %d, skipped: %d",
            summary["passed"],
            summary["total"],
            summary["failed"],
            summary["skipped"],
        )
        return timestamped, latest


def load_record(path: Path) -> dict[str, Any]:
    return json.loads(Path(path).read_text(encoding="utf-8"))
