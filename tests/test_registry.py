import asyncio
import textwrap
from pathlib import Path
from typing import Any

from specexec.plugins.base import Executor
from specexec.plugins.registry import PluginRegistry

GOOD_EXECUTOR = """
from specexec.plugins.base import Executor


class EchoExecutor(Executor):
    name = "echo"
    version = "0.0.1"
    action_types = ("ECHO", "TERMINAL_COMMAND")

    async def execute(self, parameters, global_config):
        return {"echo": parameters.get("value")}


plugin = EchoExecutor
"""

VERSIONLESS_EXECUTOR = """
class NoVersion:
    name = "no-version"

    def get_action_types(self):
        return ["X"]

    async def execute(self, parameters, global_config):
        return {}


plugin = NoVersion()
"""

ANALYZER_TEMPLATE = """
from specexec.plugins.base import FailureAnalyzer


class Analyzer(FailureAnalyzer):
    name = "{name}"
    priority = {priority}

    async def analyze(self, action_results, failure_reason, task):
        return None


plugin = Analyzer
"""


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(content), encoding="utf-8")


def test_builtin_plugins_are_discovered() -> None:
    registry = PluginRegistry()
    registry.load_all()

    listing = registry.list_all()
    assert set(listing["executors"]) == {
        "CUSTOM_SCRIPT",
        "DOCKER_COMMAND",
        "FILE_VALIDATION",
        "HTTP_REQUEST",
        "MCP_BROWSER_COMMAND",
        "TERMINAL_COMMAND",
    }
    assert [item["name"] for item in listing["failureAnalyzers"]] == ["pattern-based-analyzer"]
    assert [item["name"] for item in listing["debtDetectors"]] == ["performance-detector"]
    assert listing["rejected"] == []
    assert registry.executor_count == 6
    assert registry.get_executors_for_action_type("DATABASE_QUERY") == []


def test_external_root_discovery_skips_private_and_invalid_modules(tmp_path: Path) -> None:
    _write(tmp_path / "executors" / "echo.py", GOOD_EXECUTOR)
    _write(tmp_path / "executors" / "_helpers.py", "raise RuntimeError('never imported')\n")
    _write(tmp_path / "executors" / "broken.py", "def oops(:\n")
    _write(tmp_path / "executors" / "versionless.py", VERSIONLESS_EXECUTOR)
    _write(tmp_path / "executors" / "empty.py", "VALUE = 1\n")

    registry = PluginRegistry([tmp_path], include_builtins=False)
    registry.load_all()

    assert [item.name for item in registry.get_executors_for_action_type("ECHO")] == ["echo"]
    rejected = {Path(item["source"]).name: item["reason"] for item in registry.rejected}
    assert set(rejected) == {"broken.py", "versionless.py", "empty.py"}
    assert "SyntaxError" in rejected["broken.py"]
    assert "version" in rejected["versionless.py"]
    assert "does not export a plugin" in rejected["empty.py"]


def test_several_executors_may_serve_one_type_in_registration_order(tmp_path: Path) -> None:
    _write(tmp_path / "executors" / "echo.py", GOOD_EXECUTOR)

    registry = PluginRegistry([tmp_path])
    registry.load_all()

    names = [item.name for item in registry.get_executors_for_action_type("TERMINAL_COMMAND")]
    assert names == ["terminal-command", "echo"]


def test_analyzers_are_sorted_by_descending_priority(tmp_path: Path) -> None:
    _write(
        tmp_path / "failure-analyzers" / "low.py",
        ANALYZER_TEMPLATE.format(name="low", priority=10),
    )
    _write(
        tmp_path / "failure_analyzers" / "high.py",
        ANALYZER_TEMPLATE.format(name="high", priority=500),
    )
    _write(
        tmp_path / "failure_analyzers" / "flag.py",
        ANALYZER_TEMPLATE.format(name="flag", priority=True),
    )

    registry = PluginRegistry([tmp_path])
    registry.load_all()

    names = [item.name for item in registry.get_failure_analyzers()]
    assert names == ["high", "pattern-based-analyzer", "low"]
    assert any("numeric priority" in item["reason"] for item in registry.rejected)


def test_disabled_plugins_and_settings() -> None:
    registry = PluginRegistry(
        settings={
            "pattern-based-analyzer": {},
            "docker-command": {"binary": "podman"},
        },
        disabled=["performance-detector"],
    )
    registry.load_all()

    assert registry.get_debt_detectors() == []
    docker = registry.get_executors_for_action_type("DOCKER_COMMAND")[0]
    assert docker.binary == "podman"


def test_load_all_is_idempotent() -> None:
    registry = PluginRegistry()
    registry.load_all()
    registry.load_all()

    assert registry.executor_count == 6


def test_cleanup_all_tolerates_failing_executors() -> None:
    calls: list[str] = []

    class Tracked(Executor):
        name = "tracked"
        version = "1.0.0"
        action_types = ("TRACKED",)

        async def execute(self, parameters: dict[str, Any], global_config: Any) -> dict[str, Any]:
            return {}

        async def cleanup(self) -> None:
            calls.append("tracked")

    class Exploding(Tracked):
        name = "exploding"

        async def cleanup(self) -> None:
            calls.append("exploding")
            raise RuntimeError("cleanup failed")

    registry = PluginRegistry(include_builtins=False)
    registry.register_executor(Exploding())
    registry.register_executor(Tracked())

    asyncio.run(registry.cleanup_all())

    assert calls == ["exploding", "tracked"]
