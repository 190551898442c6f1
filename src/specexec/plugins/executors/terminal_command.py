from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import Any

from specexec.errors import ActionFailedError
from specexec.models import GlobalConfiguration
from specexec.plugins.base import Executor
from specexec.plugins.executors._process import (
    _utcnow_iso,
    expected_codes,
    merged_environment,
    resolve_path,
    run_process,
    spawn,
    terminate,
)

logger = logging.getLogger(__name__)


def default_shell() -> list[str]:
    if sys.platform == "win32":
        return ["powershell.exe", "-NoProfile", "-Command"]
    return ["/bin/sh", "-c"]


class TerminalCommandExecutor(Executor):
    name = "terminal-command"
    version = "1.0.0"
    action_types = ("TERMINAL_COMMAND",)

    def __init__(self) -> None:
        self.background_processes: list[asyncio.subprocess.Process] = []

    @staticmethod
    def build_command(command: str, shell: Any = None) -> list[str]:
        if shell is None:
            return [*default_shell(), command]
        if isinstance(shell, str):
            powershell = shell.lower().endswith(("powershell", "powershell.exe", "pwsh"))
            return [shell, "-Command" if powershell else "-c", command]
        if isinstance(shell, list) and all(isinstance(part, str) for part in shell):
            return [*shell, command]
        raise ActionFailedError(f"Unsupported shell parameter: {shell!r}")

    async def execute(
        self,
        parameters: dict[str, Any],
        global_config: GlobalConfiguration,
    ) -> dict[str, Any]:
        self.require(parameters, "command")
        command = str(parameters["command"])
        cwd = resolve_path(parameters.get("workingDirectory"), global_config.workspace_root)
        env = merged_environment(global_config.environment, parameters.get("environment"))
        argv = self.build_command(command, parameters.get("shell"))

        if parameters.get("background"):
            return await self._start_background(argv, command, cwd, env)

        return await run_process(
            argv,
            cwd=cwd,
            env=env,
            expected_exit_codes=expected_codes(parameters),
            display=command,
        )

    async def _start_background(
        self,
        argv: list[str],
        command: str,
        cwd: Any,
        env: dict[str, str],
    ) -> dict[str, Any]:
        if not cwd.is_dir():
            raise ActionFailedError(f"Working directory does not exist: {cwd}")
        process = await spawn(argv, cwd=cwd, env=env, capture=False)
        self.background_processes.append(process)
        logger.info("Started background process %s: %s", process.pid, command)
        return {
            "command": command,
            "workingDirectory": str(cwd),
            "background": True,
            "pid": process.pid,
            "status": "started",
            "timestamp": _utcnow_iso(),
        }

    async def cleanup(self) -> None:
        if not self.background_processes:
            return
        logger.info("Stopping %d background processes", len(self.background_processes))
        for process in self.background_processes:
            terminate(process)
            with contextlib.suppress(Exception):
                await process.wait()
        self.background_processes.clear()


plugin = TerminalCommandExecutor
