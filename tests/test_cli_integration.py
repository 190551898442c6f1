import json
import textwrap
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from specexec import __version__
from specexec.cli import main
from specexec.evidence import load_record, verify_record

ECHO_EXECUTOR = """
from specexec.plugins.base import Executor


class EchoExecutor(Executor):
    name = "echo"
    version = "0.0.1"
    action_types = ("ECHO",)

    async def execute(self, parameters, global_config):
        return {"echo": parameters.get("value")}


plugin = EchoExecutor
"""


def _task(*steps: dict[str, Any], conditions: list[str] | None = None) -> dict[str, Any]:
    return {
        "title": "CLI task",
        "testExecution": {"prerequisites": [], "steps": list(steps), "cleanup": []},
        "validationCriteria": {
            "successConditions": conditions or ['STEP["1"].success === true']
        },
    }


def _write_spec(root: Path, tasks: dict[str, Any]) -> Path:
    spec_path = root / "spec.json"
    spec_path.write_text(
        json.dumps(
            {
                "schemaVersion": "2.0",
                "metadata": {"taskTitle": "CLI run"},
                "globalConfiguration": {"environment": {}},
                "tasks": tasks,
            }
        ),
        encoding="utf-8",
    )
    return spec_path


def _command(action_id: str, command: str) -> dict[str, Any]:
    return {
        "actionId": action_id,
        "type": "TERMINAL_COMMAND",
        "description": f"run {command}",
        "parameters": {"command": command},
    }


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_version_option() -> None:
    result = CliRunner().invoke(main, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_list_plugins_includes_builtins_and_plugin_dirs(workspace: Path) -> None:
    plugin_path = workspace / "extra" / "executors" / "echo.py"
    plugin_path.parent.mkdir(parents=True)
    plugin_path.write_text(textwrap.dedent(ECHO_EXECUTOR), encoding="utf-8")

    result = CliRunner().invoke(main, ["--list-plugins", "--plugin-dir", "extra"])

    assert result.exit_code == 0, result.output
    assert "TERMINAL_COMMAND: terminal-command@1.0.0" in result.output
    assert "ECHO: echo@0.0.1" in result.output
    assert "pattern-based-analyzer (priority 100)" in result.output
    assert "performance-detector (priority 50)" in result.output


def test_passing_run_writes_evidence(workspace: Path) -> None:
    (workspace / "README.md").write_text("hello\n", encoding="utf-8")
    spec_path = _write_spec(
        workspace,
        {
            "T001": _task(
                {
                    "actionId": "STEP.1",
                    "type": "FILE_VALIDATION",
                    "parameters": {"filePath": "README.md", "validationType": "EXISTS"},
                },
                _command("STEP.2", "echo ${GREETING}"),
                conditions=['STEP["1"].exists === true', 'STEP["2"].exitCode === 0'],
            )
        },
    )

    result = CliRunner().invoke(main, [str(spec_path), "--env", "GREETING=hello"])

    assert result.exit_code == 0, result.output
    assert "PASS [STEP] STEP.1" in result.output
    assert "Passed: 1/1" in result.output
    report = load_record(workspace / "evidence" / "execution-report-latest.json")
    assert report["summary"]["passed"] == 1
    assert verify_record(report) is True
    step_dir = workspace / "evidence" / "T001" / "step" / "terminal_command"
    step = load_record(step_dir / "STEP-2.json")
    assert step["action"]["parameters"]["command"] == "echo hello"
    assert step["result"]["data"]["stdout"].strip() == "hello"


def test_failing_run_exits_non_zero_with_analysis(workspace: Path) -> None:
    spec_path = _write_spec(workspace, {"T001": _task(_command("STEP.1", "exit 1"))})

    result = CliRunner().invoke(main, [str(spec_path)])

    assert result.exit_code == 1
    assert "FAIL [STEP] STEP.1: Command exited with code 1. Expected: 0" in result.output
    assert "1 of 1 tasks failed" in result.output


def test_stop_on_failure_skips_later_tasks(workspace: Path) -> None:
    spec_path = _write_spec(
        workspace,
        {
            "T001": _task(_command("STEP.1", "exit 1")),
            "T002": _task(_command("STEP.1", "echo later")),
        },
    )

    result = CliRunner().invoke(main, [str(spec_path), "--stop-on-failure"])

    assert result.exit_code == 1
    assert "=> SKIPPED" in result.output
    report = load_record(workspace / "evidence" / "execution-report-latest.json")
    assert report["tasks"]["T002"]["status"] == "SKIPPED"


def test_dry_run_reports_missing_executors(workspace: Path) -> None:
    ready = _write_spec(workspace, {"T001": _task(_command("STEP.1", "echo ok"))})

    ok = CliRunner().invoke(main, [str(ready), "--dry-run"])

    assert ok.exit_code == 0, ok.output
    assert "[STEP] STEP.1 TERMINAL_COMMAND -> terminal-command@1.0.0" in ok.output
    assert "All actions have an executor." in ok.output
    assert not (workspace / "evidence").exists()

    missing = _write_spec(
        workspace,
        {
            "T001": _task(
                _command("STEP.1", "echo ok"),
                {"actionId": "STEP.2", "type": "DATABASE_QUERY", "parameters": {}},
            )
        },
    )

    result = CliRunner().invoke(main, [str(missing), "--dry-run"])

    assert result.exit_code == 1
    assert "No executor for: STEP.2 (DATABASE_QUERY)" in result.output


def test_invalid_inputs_are_reported(workspace: Path) -> None:
    runner = CliRunner()
    spec_path = _write_spec(workspace, {})

    bad_env = runner.invoke(main, [str(spec_path), "--env", "NOVALUE"])
    no_spec = runner.invoke(main, [])
    no_tasks = runner.invoke(main, [str(spec_path)])

    assert bad_env.exit_code == 2
    assert "Expected KEY=VALUE" in bad_env.output
    assert no_spec.exit_code == 1
    assert "Missing specification path." in no_spec.output
    assert no_tasks.exit_code == 1
    assert "No tasks" in no_tasks.output


def test_invalid_config_file_is_reported(workspace: Path) -> None:
    (workspace / "specexec.toml").write_text("[runtime]\nbogus = 1\n", encoding="utf-8")

    result = CliRunner().invoke(main, ["--list-plugins"])

    assert result.exit_code == 1
    assert "Invalid configuration file" in result.output
