from __future__ import annotations

import shlex
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


class DockerCommandExecutor(Executor):
    """Runs the docker CLI without a shell in between."""

    name = "docker-command"
    version = "1.0.0"
    action_types = ("DOCKER_COMMAND",)

    def __init__(self, binary: str = "docker") -> None:
        self.binary = binary

    def configure(self, settings: dict[str, Any]) -> None:
        self.binary = str(settings.get("binary", self.binary))

    def build_command(self, parameters: dict[str, Any]) -> list[str]:
        args = parameters.get("args")
        if args is None and "command" in parameters:
            args = shlex.split(str(parameters["command"]))
        if not isinstance(args, list) or not args:
            raise ActionFailedError("DOCKER_COMMAND requires 'args' (list) or 'command' (string)")
        args = [str(item) for item in args]
        if args[0] == self.binary or args[0] == "docker":
            args = args[1:]
        return [self.binary, *args]

    async def execute(
        self,
        parameters: dict[str, Any],
        global_config: GlobalConfiguration,
    ) -> dict[str, Any]:
        argv = self.build_command(parameters)
        return await run_process(
            argv,
            cwd=resolve_path(parameters.get("workingDirectory"), global_config.workspace_root),
            env=merged_environment(global_config.environment, parameters.get("environment")),
            expected_exit_codes=expected_codes(parameters),
            display=shlex.join(argv),
        )


plugin = DockerCommandExecutor
