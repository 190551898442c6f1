from __future__ import annotations

import shlex
import sys
from pathlib import Path
from typing import Any

from specexec.errors import ActionFailedError
from specexec.models import GlobalConfiguration
from specexec.plugins.base import Executor
from specexec.plugins.executors._process import (
    expected_codes,
    merged_environment,
    resolve_path,
    run_process,
)

INTERPRETERS = {
    ".py": [sys.executable],
    ".sh": ["/bin/sh"],
    ".bash": ["bash"],
    ".js": ["node"],
    ".ts": ["npx", "ts-node"],
    ".ps1": ["powershell.exe", "-NoProfile", "-File"],
}


class CustomScriptExecutor(Executor):
    name = "custom-script"
    version = "1.0.0"
    action_types = ("CUSTOM_SCRIPT",)

    @staticmethod
    def interpreter_for(script: Path, interpreter: Any = None) -> list[str]:
        if isinstance(interpreter, str) and interpreter.strip():
            return shlex.split(interpreter)
        if isinstance(interpreter, list) and interpreter:
            return [str(part) for part in interpreter]
        return list(INTERPRETERS.get(script.suffix.lower(), []))

    async def execute(
        self,
        parameters: dict[str, Any],
        global_config: GlobalConfiguration,
    ) -> dict[str, Any]:
        self.require(parameters, "script")
        workspace = global_config.workspace_root
        script = resolve_path(str(parameters["script"]), workspace)
        if not script.is_file():
            raise ActionFailedError(f"File not found: {script}")
        args = parameters.get("args") or []
        if not isinstance(args, list):
            raise ActionFailedError("CUSTOM_SCRIPT 'args' must be a list")

        argv = [
            *self.interpreter_for(script, parameters.get("interpreter")),
            str(script),
            *(str(item) for item in args),
        ]
        result = await run_process(
            argv,
            cwd=resolve_path(parameters.get("workingDirectory"), workspace),
            env=merged_environment(global_config.environment, parameters.get("environment")),
            expected_exit_codes=expected_codes(parameters),
            display=shlex.join(argv),
        )
        result["script"] = str(script)
        return result


plugin = CustomScriptExecutor
