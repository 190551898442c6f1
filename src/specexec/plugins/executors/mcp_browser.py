from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import shlex
from typing import Any

from specexec import GENERATOR_NAME, __version__
from specexec.errors import ActionFailedError
from specexec.models import GlobalConfiguration
from specexec.plugins.base import Executor
from specexec.plugins.executors._process import (
    _session_kwargs,
    _utcnow_iso,
    merged_environment,
    terminate,
)

logger = logging.getLogger(__name__)

DEFAULT_SERVER_COMMAND = ["npx", "-y", "chrome-devtools-mcp@latest"]
PROTOCOL_VERSION = "2024-11-05"


class McpBrowserExecutor(Executor):
    """Drives a browser through an MCP server spoken to over stdio.

    The server is started on first use and kept for the rest of the run.
    Requests are newline-delimited JSON-RPC 2.0 messages.
    """

    name = "mcp-browser"
    version = "1.0.0"
    action_types = ("MCP_BROWSER_COMMAND",)

    def __init__(self) -> None:
        self.server_command: list[str] | None = None
        self.process: asyncio.subprocess.Process | None = None
        self._next_id = 1

    def configure(self, settings: dict[str, Any]) -> None:
        command = settings.get("server_command")
        if command:
            self.server_command = self._as_argv(command)

    @staticmethod
    def _as_argv(command: Any) -> list[str]:
        if isinstance(command, str):
            return shlex.split(command)
        if isinstance(command, list) and command:
            return [str(part) for part in command]
        raise ActionFailedError(f"Invalid MCP server command: {command!r}")

    def resolve_server_command(
        self,
        parameters: dict[str, Any],
        global_config: GlobalConfiguration,
    ) -> list[str]:
        explicit = parameters.get("serverCommand") or global_config.get("mcpServerCommand")
        if explicit:
            return self._as_argv(explicit)
        return list(self.server_command or DEFAULT_SERVER_COMMAND)

    def _live_process(self) -> asyncio.subprocess.Process:
        process = self.process
        if process is None or process.stdin is None or process.stdout is None:
            raise ActionFailedError("MCP server is not running")
        return process

    async def _send(self, message: dict[str, Any]) -> None:
        stdin = self._live_process().stdin
        stdin.write((json.dumps(message) + "\n").encode("utf-8"))
        await stdin.drain()

    async def _request(self, method: str, params: dict[str, Any]) -> Any:
        message_id = self._next_id
        self._next_id += 1
        await self._send({"jsonrpc": "2.0", "id": message_id, "method": method, "params": params})

        process = self._live_process()
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                response = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("MCP server output: %s", line)
                continue
            if not isinstance(response, dict) or response.get("id") != message_id:
                continue
            error = response.get("error")
            if error:
                message = error.get("message") if isinstance(error, dict) else error
                raise ActionFailedError(f"MCP error: {message}")
            return response.get("result")

        code = await process.wait()
        self.process = None
        raise ActionFailedError(f"MCP server exited with code {code} before answering {method}")

    async def _connect(self, argv: list[str], env: dict[str, str]) -> None:
        logger.info("Starting MCP server: %s", shlex.join(argv))
        try:
            self.process = await asyncio.create_subprocess_exec(
                *argv,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                **_session_kwargs(),
            )
        except FileNotFoundError as exc:
            raise ActionFailedError(f"Command not found: {argv[0]}") from exc
        await self._request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": GENERATOR_NAME, "version": __version__},
            },
        )
        await self._send({"jsonrpc": "2.0", "method": "notifications/initialized"})

    async def execute(
        self,
        parameters: dict[str, Any],
        global_config: GlobalConfiguration,
    ) -> dict[str, Any]:
        self.require(parameters, "action")
        action = str(parameters["action"])
        arguments = {
            key: value
            for key, value in parameters.items()
            if key not in {"action", "serverCommand"}
        }

        try:
            if self.process is None or self.process.returncode is not None:
                await self._connect(
                    self.resolve_server_command(parameters, global_config),
                    merged_environment(global_config.environment),
                )
            result = await self._request("tools/call", {"name": action, "arguments": arguments})
        except asyncio.CancelledError:
            # A half-read response leaves the stream unusable.
            await self.cleanup()
            raise

        payload = {
            "action": action,
            "parameters": arguments,
            "result": result,
            "timestamp": _utcnow_iso(),
        }
        if isinstance(result, dict) and result.get("isError"):
            raise ActionFailedError(f"MCP tool {action} reported an error", result=payload)
        return payload

    async def cleanup(self) -> None:
        process, self.process = self.process, None
        if process is None:
            return
        logger.info("Closing MCP server connection")
        if process.stdin is not None:
            with contextlib.suppress(Exception):
                process.stdin.close()
        terminate(process)
        with contextlib.suppress(Exception):
            await process.wait()


plugin = McpBrowserExecutor
