from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskgate.config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    TaskgateConfig,
    load_config,
    save_config,
)
from taskgate.logging_config import configure_logging
from taskgate.scheduler import Scheduler
from taskgate.sources import resolve_project_root
from taskgate.state import VALID_SIGNALS, ReviewLog, RunCache, StateError
from taskgate.tasks import AllPassed, Failed, Outcome, RunContext, parse_tasks

FAILURE_EXIT_CODE = 2


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: TaskgateConfig
    review_log: ReviewLog
    scheduler: Scheduler


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _load_runtime(
    project_dir: str | None,
    config_value: str,
    session_id: str | None = None,
) -> Runtime:
    project_root = resolve_project_root(Path(project_dir or Path.cwd()))
    config_path = _resolve_config_path(project_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    home = config.state_home()
    review_log = ReviewLog(home, project_root)
    scheduler = Scheduler(
        config,
        home=home,
        event_hook=lambda event: review_log.record_event(session_id, event),
    )
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        config=config,
        review_log=review_log,
        scheduler=scheduler,
    )


def _outcome_payload(outcome: Outcome) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "passed": outcome.passed,
        "outcome": type(outcome).__name__,
        "message": outcome.describe(),
        "results": [result.to_dict() for result in outcome.results],
    }
    if isinstance(outcome, Failed):
        payload.update(
            {
                "task": outcome.task_name,
                "mode": outcome.mode.value,
                "reason": outcome.reason,
                "harvested": outcome.harvested,
                "ambiguous": outcome.ambiguous,
            }
        )
    elif not isinstance(outcome, AllPassed):
        payload["pending"] = list(outcome.pending)
    return payload


def _parse_tool_input(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint="--tool-input") from exc
    if not isinstance(parsed, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--tool-input")
    return parsed


def _require_session(session_id: str | None) -> str:
    if not session_id:
        raise click.ClickException(
            "A session id is required (pass --session-id or set TASKGATE_SESSION_ID)."
        )
    return session_id


session_option = click.option(
    "--session-id",
    envvar="TASKGATE_SESSION_ID",
    default=None,
    help="Session identifier; signal and async state are scoped to it.",
)
project_option = click.option("--project-dir", default=None, help="Project directory.")
config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging on stderr.")
def cli(verbose: bool) -> None:
    """Taskgate CLI."""
    configure_logging(verbose=verbose)


@cli.command("init")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing config.")
@project_option
@config_option
def init_command(force: bool, project_dir: str | None, config_value: str) -> None:
    project_root = Path(project_dir or Path.cwd()).resolve()
    config_path = _resolve_config_path(project_root, config_value)
    if config_path.exists() and not force:
        raise click.ClickException(f"{config_path} already exists (use --force to overwrite).")
    config = TaskgateConfig.default()
    save_config(config_path, config)
    home = config.state_home()
    (home / "sessions").mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized taskgate in {project_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State home: {home}")


@cli.command("run")
@click.argument("event")
@click.option("--tool-input", default=None, help="JSON object describing the tool call.")
@session_option
@project_option
@config_option
@click.pass_context
def run_command(
    ctx: click.Context,
    event: str,
    tool_input: str | None,
    session_id: str | None,
    project_dir: str | None,
    config_value: str,
) -> None:
    """Run the tasks configured for EVENT and print the outcome as JSON."""
    if os.environ.get("TASKGATE_DISABLED"):
        click.echo(json.dumps({"passed": True, "outcome": "Disabled", "results": []}))
        return

    runtime = _load_runtime(project_dir, config_value, session_id)
    try:
        tasks = parse_tasks(runtime.config.task_entries(event))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    context = RunContext(
        project_root=runtime.project_root,
        session_id=session_id,
        event=event,
        sources=list(runtime.config.cache.sources),
        tool_input=_parse_tool_input(tool_input),
    )
    outcome = runtime.scheduler.run_plan(tasks, context)
    click.echo(json.dumps(_outcome_payload(outcome), ensure_ascii=False, indent=2))
    if not outcome.passed:
        ctx.exit(FAILURE_EXIT_CODE)


@cli.command("session-start")
@session_option
@project_option
@config_option
def session_start_command(
    session_id: str | None, project_dir: str | None, config_value: str
) -> None:
    session_id = _require_session(session_id)
    runtime = _load_runtime(project_dir, config_value, session_id)
    cleared = runtime.scheduler.start_session(session_id)
    click.echo(f"Session {session_id} started" + (" (cleared async results)" if cleared else ""))


@cli.command("harvest")
@session_option
@project_option
@config_option
@click.pass_context
def harvest_command(
    ctx: click.Context, session_id: str | None, project_dir: str | None, config_value: str
) -> None:
    """Collect finished async results for a session."""
    session_id = _require_session(session_id)
    runtime = _load_runtime(project_dir, config_value, session_id)
    try:
        results = runtime.scheduler.async_results.harvest(session_id, stop_on_failure=False)
        pending = runtime.scheduler.async_results.pending(session_id)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(
        json.dumps(
            {"results": [result.to_dict() for result in results], "pending": pending},
            ensure_ascii=False,
            indent=2,
        )
    )
    if any(not result.passed for result in results):
        ctx.exit(FAILURE_EXIT_CODE)


@cli.group("signal")
def signal_group() -> None:
    """Inspect or change the session signal."""


@signal_group.command("set")
@click.argument("signal_type", type=click.Choice(list(VALID_SIGNALS)))
@click.option("--message", "-m", default=None)
@session_option
@project_option
@config_option
def signal_set_command(
    signal_type: str,
    message: str | None,
    session_id: str | None,
    project_dir: str | None,
    config_value: str,
) -> None:
    session_id = _require_session(session_id)
    runtime = _load_runtime(project_dir, config_value, session_id)
    try:
        runtime.scheduler.signals.set(session_id, signal_type, message)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Signal set: {signal_type}")


@signal_group.command("clear")
@session_option
@project_option
@config_option
def signal_clear_command(
    session_id: str | None, project_dir: str | None, config_value: str
) -> None:
    session_id = _require_session(session_id)
    runtime = _load_runtime(project_dir, config_value, session_id)
    try:
        runtime.scheduler.signals.clear(session_id)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Signal cleared.")


@signal_group.command("show")
@session_option
@project_option
@config_option
def signal_show_command(
    session_id: str | None, project_dir: str | None, config_value: str
) -> None:
    session_id = _require_session(session_id)
    runtime = _load_runtime(project_dir, config_value, session_id)
    signal = runtime.scheduler.signals.get(session_id)
    click.echo(json.dumps(signal.to_dict() if signal else None, ensure_ascii=False))


@cli.group("cache")
def cache_group() -> None:
    """Inspect or reset the run cache."""


@cache_group.command("show")
@project_option
@config_option
def cache_show_command(project_dir: str | None, config_value: str) -> None:
    runtime = _load_runtime(project_dir, config_value)
    cache = RunCache(runtime.config.cache_path(runtime.project_root))
    try:
        entries = cache.entries()
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    payload = {name: entry.to_dict() for name, entry in sorted(entries.items())}
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cache_group.command("clear")
@click.option("--task", "task_name", default=None, help="Only forget this task.")
@project_option
@config_option
def cache_clear_command(task_name: str | None, project_dir: str | None, config_value: str) -> None:
    runtime = _load_runtime(project_dir, config_value)
    cache = RunCache(runtime.config.cache_path(runtime.project_root))
    try:
        cache.clear(task_name)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Cleared cache for {task_name}" if task_name else "Cleared run cache.")


@cli.command("log")
@click.option("--limit", default=20, show_default=True, type=int)
@session_option
@project_option
@config_option
def log_command(
    limit: int, session_id: str | None, project_dir: str | None, config_value: str
) -> None:
    """Print recent task lifecycle entries."""
    runtime = _load_runtime(project_dir, config_value, session_id)
    entries = runtime.review_log.entries(session_id)
    for entry in entries[-limit:] if limit > 0 else entries:
        reason = f" {entry['reason']}" if entry.get("reason") else ""
        click.echo(f"{entry.get('status', '?'):9} {entry.get('task', '')}{reason}")

