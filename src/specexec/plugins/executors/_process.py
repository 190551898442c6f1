from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from specexec.errors import ActionFailedError

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 2000


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def merged_environment(*layers: dict[str, str] | None) -> dict[str, str]:
    env = os.environ.copy()
    for layer in layers:
        if layer:
            env.update({str(key): str(value) for key, value in layer.items()})
    return env


def _session_kwargs() -> dict[str, Any]:
    if sys.platform == "win32":
        return {}
    return {"start_new_session": True}


def terminate(process: asyncio.subprocess.Process) -> None:
    """Kill a spawned process and everything in its process group."""
    if process.returncode is not None:
        return
    if sys.platform != "win32":
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)
            return
    with contextlib.suppress(ProcessLookupError):
        process.kill()


async def spawn(
    argv: Sequence[str],
    *,
    cwd: Path | None,
    env: dict[str, str],
    capture: bool = True,
) -> asyncio.subprocess.Process:
    stream = asyncio.subprocess.PIPE if capture else asyncio.subprocess.DEVNULL
    try:
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=stream,
            stderr=stream,
            **_session_kwargs(),
        )
    except FileNotFoundError as exc:
        raise ActionFailedError(f"Command not found: {argv[0]}") from exc
    except NotADirectoryError as exc:
        raise ActionFailedError(f"Working directory does not exist: {cwd}") from exc


async def run_process(
    argv: Sequence[str],
    *,
    cwd: Path | None,
    env: dict[str, str],
    expected_exit_codes: Sequence[int] = (0,),
    display: str | None = None,
) -> dict[str, Any]:
    """Run a command to completion and describe it as an action payload.

    Cancellation (an action timeout) kills the process group before the
    cancellation propagates.
    """
    if cwd is not None and not cwd.is_dir():
        raise ActionFailedError(f"Working directory does not exist: {cwd}")
    process = await spawn(argv, cwd=cwd, env=env)
    logger.debug("Started pid %s: %s", process.pid, display or " ".join(argv))
    try:
        stdout_bytes, stderr_bytes = await process.communicate()
    except asyncio.CancelledError:
        logger.info("Terminating pid %s after cancellation", process.pid)
        terminate(process)
        with contextlib.suppress(Exception):
            await process.wait()
        raise

    stdout = stdout_bytes.decode("utf-8", errors="replace")
    stderr = stderr_bytes.decode("utf-8", errors="replace")
    exit_code = process.returncode if process.returncode is not None else -1
    result: dict[str, Any] = {
        "command": display or " ".join(argv),
        "workingDirectory": str(cwd) if cwd else None,
        "exitCode": exit_code,
        "stdout": stdout,
        "stderr": stderr,
        "expectedExitCodes": list(expected_exit_codes),
        "timestamp": _utcnow_iso(),
    }
    if exit_code not in expected_exit_codes:
        message = (
            f"Command exited with code {exit_code}. "
            f"Expected: {', '.join(str(code) for code in expected_exit_codes)}"
        )
        details = stderr.strip() or stdout.strip()
        if details:
            message = f"{message}\n{details[-OUTPUT_TAIL_CHARS:]}"
        raise ActionFailedError(message, result=result)
    return result


def expected_codes(parameters: dict[str, Any]) -> list[int]:
    raw = parameters.get("expectedExitCodes", [0])
    if isinstance(raw, int) and not isinstance(raw, bool):
        return [raw]
    if not isinstance(raw, list) or not all(
        isinstance(item, int) and not isinstance(item, bool) for item in raw
    ):
        raise ActionFailedError(f"expectedExitCodes must be a list of integers, got {raw!r}")
    return raw


def resolve_path(value: str | None, workspace_root: Path) -> Path:
    if not value:
        return workspace_root
    path = Path(value)
    return path if path.is_absolute() else workspace_root / path
