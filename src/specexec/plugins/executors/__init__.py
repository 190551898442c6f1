from specexec.plugins.executors.custom_script import CustomScriptExecutor
from specexec.plugins.executors.docker_command import DockerCommandExecutor
from specexec.plugins.executors.file_validation import FileValidationExecutor
from specexec.plugins.executors.http_request import HttpRequestExecutor
from specexec.plugins.executors.mcp_browser import McpBrowserExecutor
from specexec.plugins.executors.terminal_command import TerminalCommandExecutor

__all__ = [
    "CustomScriptExecutor",
    "DockerCommandExecutor",
    "FileValidationExecutor",
    "HttpRequestExecutor",
    "McpBrowserExecutor",
    "TerminalCommandExecutor",
]
