from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from typing import Any

from specexec.errors import ActionFailedError
from specexec.models import GlobalConfiguration
from specexec.plugins.base import Executor
from specexec.plugins.executors._process import resolve_path

VALIDATION_TYPES = {"EXISTS", "NOT_EXISTS", "CONTENT_MATCH", "CONTENT_PATTERN", "JSON_VALID"}


class FileValidationExecutor(Executor):
    name = "file-validation"
    version = "1.0.0"
    action_types = ("FILE_VALIDATION",)

    async def execute(
        self,
        parameters: dict[str, Any],
        global_config: GlobalConfiguration,
    ) -> dict[str, Any]:
        self.require(parameters, "filePath", "validationType")
        validation_type = str(parameters["validationType"]).upper()
        if validation_type not in VALIDATION_TYPES:
            raise ActionFailedError(f"Unknown validationType: {validation_type}")
        encoding = str(parameters.get("encoding", "utf-8"))
        path = resolve_path(str(parameters["filePath"]), global_config.workspace_root)

        result: dict[str, Any] = {
            "filePath": str(path),
            "validationType": validation_type,
            "exists": path.exists(),
            "timestamp": datetime.now(UTC).isoformat(timespec="milliseconds"),
        }

        if not result["exists"]:
            if validation_type == "NOT_EXISTS":
                return result
            raise ActionFailedError(f"File not found: {path}", result=result)
        if validation_type == "NOT_EXISTS":
            raise ActionFailedError(f"File exists but should not: {path}", result=result)

        stats = path.stat()
        result["size"] = stats.st_size
        result["modified"] = datetime.fromtimestamp(stats.st_mtime, UTC).isoformat()
        result["isDirectory"] = path.is_dir()

        min_size = parameters.get("minSize")
        if min_size is not None and stats.st_size < min_size:
            raise ActionFailedError(
                f"File size {stats.st_size} bytes is less than minimum {min_size} bytes",
                result=result,
            )
        max_size = parameters.get("maxSize")
        if max_size is not None and stats.st_size > max_size:
            raise ActionFailedError(
                f"File size {stats.st_size} bytes exceeds maximum {max_size} bytes",
                result=result,
            )

        if validation_type == "EXISTS":
            return result
        if result["isDirectory"]:
            raise ActionFailedError("Cannot validate content of a directory", result=result)

        try:
            content = path.read_text(encoding=encoding)
        except (OSError, UnicodeDecodeError, LookupError) as exc:
            raise ActionFailedError(f"Cannot read {path}: {exc}", result=result) from exc
        result["contentLength"] = len(content)

        if validation_type == "CONTENT_MATCH":
            self.require(parameters, "expectedContent")
            result["contentMatches"] = str(parameters["expectedContent"]) in content
            if not result["contentMatches"]:
                raise ActionFailedError(
                    "File content does not match expected string", result=result
                )
        elif validation_type == "CONTENT_PATTERN":
            self.require(parameters, "contentPattern")
            pattern = str(parameters["contentPattern"])
            try:
                result["patternMatches"] = re.search(pattern, content) is not None
            except re.error as exc:
                raise ActionFailedError(
                    f"Invalid configuration: bad contentPattern {pattern!r}: {exc}",
                    result=result,
                ) from exc
            if not result["patternMatches"]:
                raise ActionFailedError(
                    f"File content does not match pattern: {pattern}", result=result
                )
        elif validation_type == "JSON_VALID":
            try:
                result["json"] = json.loads(content)
                result["isValidJSON"] = True
            except json.JSONDecodeError as exc:
                result["isValidJSON"] = False
                raise ActionFailedError(f"Invalid JSON: {exc}", result=result) from exc

        return result


plugin = FileValidationExecutor
