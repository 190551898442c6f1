from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from specexec import __version__
from specexec.config import DEFAULT_CONFIG_FILE, EngineConfig, load_config
from specexec.engine import ExecutionEngine
from specexec.errors import SpecExecError
from specexec.loader import SpecificationLoader
from specexec.models import ExecutionResults, TaskStatus, TestSpecification
from specexec.plugins.registry import PluginRegistry

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    workspace: Path
    config_path: Path
    config: EngineConfig
    registry: PluginRegistry
    engine: ExecutionEngine


def _resolve_config_path(workspace: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace / config_path
    return config_path.resolve()


def _parse_env(values: tuple[str, ...]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for item in values:
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got {item!r}", param_hint="--env")
        overrides[key.strip()] = value
    return overrides


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _echo_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name == "task_started":
        click.echo(f"\n== {event['task_id']}")
    elif name == "action_finished":
        label = f"[{event['phase']}] {event['action_id']}"
        if event["success"]:
            click.echo(f"  PASS {label} ({event['duration_ms']}ms)")
        else:
            first_line = str(event.get("error") or "").splitlines()[0:1]
            click.echo(f"  FAIL {label}: {first_line[0] if first_line else 'failed'}")
    elif name == "task_finished":
        click.echo(f"  => {event['status']}")
    elif name == "task_skipped":
        click.echo(f"\n== {event['task_id']}\n  => SKIPPED")


def _load_runtime(
    workspace: Path,
    config_path: Path,
    *,
    plugin_dirs: tuple[Path, ...],
    stop_on_failure: bool,
    verbose: bool,
) -> Runtime:
    config = load_config(config_path)
    if stop_on_failure:
        config.runtime.stop_on_failure = True
    if verbose:
        config.runtime.verbose = True

    roots = [
        path if path.is_absolute() else workspace / path
        for path in [*(Path(item) for item in config.plugins.directories), *plugin_dirs]
    ]
    registry = PluginRegistry(
        roots,
        settings=config.plugins.settings,
        disabled=config.plugins.disabled,
    )
    engine = ExecutionEngine(registry, config=config, event_hook=_echo_event)
    return Runtime(
        workspace=workspace,
        config_path=config_path,
        config=config,
        registry=registry,
        engine=engine,
    )


def _print_plugins(registry: PluginRegistry) -> None:
    listing = registry.list_all()
    click.echo("Executors:")
    for action_type, executors in listing["executors"].items():
        click.echo(f"  {action_type}: {', '.join(executors)}")
    click.echo("Failure analyzers:")
    for item in listing["failureAnalyzers"]:
        click.echo(f"  {item['name']} (priority {item['priority']})")
    click.echo("Debt detectors:")
    for item in listing["debtDetectors"]:
        click.echo(f"  {item['name']} (priority {item['priority']})")
    if listing["rejected"]:
        click.echo("Rejected:")
        for item in listing["rejected"]:
            click.echo(f"  {item['source']}: {item['reason']}")


def _print_plan(spec: TestSpecification, entries: list[dict[str, Any]]) -> list[str]:
    click.echo(f"Dry run: {spec.title}")
    missing: list[str] = []
    current_task = None
    for entry in entries:
        if entry["taskId"] != current_task:
            current_task = entry["taskId"]
            click.echo(f"\n== {current_task}")
        executor = entry["executor"] or "NO EXECUTOR"
        click.echo(
            f"  [{entry['phase']}] {entry['actionId']} {entry['type']} -> {executor}"
            f" (timeout {entry['timeoutMs']}ms)"
        )
        if entry["executor"] is None:
            missing.append(f"{entry['actionId']} ({entry['type']})")
    return missing


def _print_summary(results: ExecutionResults, report_paths: Any) -> None:
    summary = results.summary
    click.echo(
        f"\nPassed: {summary['passed']}/{summary['total']}  "
        f"Failed: {summary['failed']}  Skipped: {summary['skipped']}"
    )
    for task_id, task in results.tasks.items():
        if task.status is not TaskStatus.FAILED:
            continue
        click.echo(f"  {task_id}: {task.failure_reason}")
        for analysis in task.failure_analysis:
            click.echo(f"    {analysis.category}: {analysis.reason}")
            click.echo(f"    -> {analysis.suggested_action}")
    if report_paths:
        click.echo(f"Report: {report_paths[0]}")


async def _execute(engine: ExecutionEngine, spec: TestSpecification) -> ExecutionResults:
    try:
        return await engine.execute(spec)
    finally:
        await engine.cleanup()


@click.command()
@click.argument("spec_path", required=False, type=click.Path(path_type=Path))
@click.option("--verbose", is_flag=True, default=False, help="Log at DEBUG level.")
@click.option("--dry-run", is_flag=True, default=False, help="Resolve executors only.")
@click.option("--stop-on-failure", is_flag=True, default=False)
@click.option("--list-plugins", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
@click.option(
    "--plugin-dir",
    "plugin_dirs",
    multiple=True,
    type=click.Path(path_type=Path, file_okay=False),
)
@click.option("--env", "env_values", multiple=True, metavar="KEY=VALUE")
@click.version_option(__version__, prog_name="specexec")
def main(
    spec_path: Path | None,
    verbose: bool,
    dry_run: bool,
    stop_on_failure: bool,
    list_plugins: bool,
    config_value: str,
    plugin_dirs: tuple[Path, ...],
    env_values: tuple[str, ...],
) -> None:
    """Execute a JSON test specification and record evidence."""
    workspace = Path.cwd().resolve()
    overrides = _parse_env(env_values)
    try:
        runtime = _load_runtime(
            workspace,
            _resolve_config_path(workspace, config_value),
            plugin_dirs=plugin_dirs,
            stop_on_failure=stop_on_failure,
            verbose=verbose,
        )
    except SpecExecError as exc:
        raise click.ClickException(str(exc)) from exc
    _configure_logging(runtime.config.runtime.verbose)

    if list_plugins:
        runtime.registry.load_all()
        _print_plugins(runtime.registry)
        return
    if spec_path is None:
        raise click.ClickException("Missing specification path.")

    try:
        spec = SpecificationLoader(overrides).load(spec_path)
    except SpecExecError as exc:
        raise click.ClickException(str(exc)) from exc

    if dry_run:
        missing = _print_plan(spec, runtime.engine.plan(spec))
        if missing:
            raise click.ClickException(f"No executor for: {', '.join(missing)}")
        click.echo("\nAll actions have an executor.")
        return

    try:
        results = asyncio.run(_execute(runtime.engine, spec))
    except (SpecExecError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc

    _print_summary(results, runtime.engine.report_paths)
    if not results.succeeded:
        failed = results.summary["failed"]
        raise click.ClickException(
            results.fatal_error or f"{failed} of {results.summary['total']} tasks failed"
        )


if __name__ == "__main__":
    main()
