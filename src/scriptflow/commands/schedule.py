# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Schedule command for ScriptFlow.

Create and manage schedules. A schedule can be given as a YAML file with the
full config, or with the --cron/--every/--at/--on shortcuts.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from scriptflow.commands._service import CLI_TAB_ID, echo_json, run_with_service, unwrap

app = typer.Typer(help="Create, inspect and run schedules", no_args_is_help=True)

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to config file")


def _parse_at(value: str) -> int:
    """ISO-8601 time to epoch ms; naive times are UTC."""
    try:
        moment = datetime.fromisoformat(value)
    except ValueError:
        typer.echo(f"Error: --at must be an ISO-8601 time, got: {value}", err=True)
        raise typer.Exit(1)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def _load_file(path: Path) -> Dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        typer.echo(f"Error: cannot read {path}: {e}", err=True)
        raise typer.Exit(1)
    except yaml.YAMLError as e:
        typer.echo(f"Error: invalid YAML in {path}: {e}", err=True)
        raise typer.Exit(1)
    if not isinstance(data, dict):
        typer.echo(f"Error: {path} must contain a YAML mapping", err=True)
        raise typer.Exit(1)
    return data


def _config_from_options(
    file: Optional[Path],
    script_id: Optional[str],
    name: Optional[str],
    cron: Optional[str],
    every: Optional[int],
    at: Optional[str],
    on: Optional[List[str]],
    tz: Optional[str],
) -> Dict[str, Any]:
    config = _load_file(file) if file else {}

    shortcuts = [s for s in (cron, every, at, on) if s]
    if len(shortcuts) > 1:
        typer.echo("Error: use only one of --cron, --every, --at, --on", err=True)
        raise typer.Exit(1)
    if cron:
        config.update(mode="cron", trigger={"expression": cron})
    elif every:
        config.update(mode="interval", trigger={"interval_ms": every})
    elif at:
        config.update(mode="once", trigger={"execute_at": _parse_at(at)})
    elif on:
        config.update(mode="event", trigger={"events": list(on)})

    if script_id:
        config["script_id"] = script_id
    if name:
        config["name"] = name
    if tz:
        config["timezone"] = tz
    if not config.get("mode") and not (config.get("trigger") or {}).get("mode"):
        typer.echo("Error: give --file or one of --cron, --every, --at, --on", err=True)
        raise typer.Exit(1)
    config.setdefault("name", config.get("script_id") or "")
    return config


def _describe_trigger(schedule: Dict[str, Any]) -> str:
    trigger = schedule["trigger"]
    mode = schedule["mode"]
    if mode == "once":
        return f"once at {trigger['execute_at']}"
    if mode == "interval":
        return f"every {trigger['interval_ms']}ms"
    if mode == "cron":
        return f"cron '{trigger['expression']}'"
    if mode == "conditional":
        return f"{len(trigger['conditions'])} condition(s), checked every {trigger['check_interval_ms']}ms"
    return f"on {', '.join(trigger['events'])}"


def _print_report(report: Dict[str, Any]) -> None:
    for issue in report["errors"]:
        typer.echo(f"  Error [{issue['code']}] {issue['field']}: {issue['message']}", err=True)
    for issue in report["warnings"]:
        typer.echo(f"  Warning [{issue['code']}] {issue['field']}: {issue['message']}")


@app.command("create")
def create_command(
    script_id: Optional[str] = typer.Argument(None, help="Script id to schedule"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="YAML schedule config"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Schedule name"),
    cron: Optional[str] = typer.Option(None, "--cron", help="Cron expression"),
    every: Optional[int] = typer.Option(None, "--every", help="Interval in milliseconds"),
    at: Optional[str] = typer.Option(None, "--at", help="Run once at an ISO-8601 time"),
    on: Optional[List[str]] = typer.Option(None, "--on", help="Event name (repeatable)"),
    tz: Optional[str] = typer.Option(None, "--timezone", help="IANA time zone"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Create a schedule.

    Examples:
        scriptflow schedule create hello --cron "0 9 * * 1-5"
        scriptflow schedule create hello --every 60000
        scriptflow schedule create --file nightly.yaml
    """
    config = _config_from_options(file, script_id, name, cron, every, at, on, tz)
    schedule = unwrap(run_with_service(config_path, lambda service: service.create_schedule(config)))
    typer.echo(f"Created schedule: {schedule['id']} ({_describe_trigger(schedule)})")
    if schedule["next_execution"]:
        typer.echo(f"  Next run: {schedule['next_execution']}")


@app.command("validate")
def validate_command(
    script_id: Optional[str] = typer.Argument(None, help="Script id to schedule"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="YAML schedule config"),
    cron: Optional[str] = typer.Option(None, "--cron", help="Cron expression"),
    every: Optional[int] = typer.Option(None, "--every", help="Interval in milliseconds"),
    at: Optional[str] = typer.Option(None, "--at", help="Run once at an ISO-8601 time"),
    on: Optional[List[str]] = typer.Option(None, "--on", help="Event name (repeatable)"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Check a schedule config without creating it."""
    config = _config_from_options(file, script_id, None, cron, every, at, on, None)
    report = unwrap(run_with_service(config_path, lambda service: service.validate_schedule_config(config)))
    _print_report(report)
    if not report["valid"]:
        typer.echo("Schedule config is invalid", err=True)
        raise typer.Exit(1)
    typer.echo("Schedule config is valid")


@app.command("list")
def list_command(
    script_id: Optional[str] = typer.Option(None, "--script", "-s", help="Only schedules for this script"),
    status: Optional[str] = typer.Option(None, "--status", help="Filter by status"),
    mode: Optional[str] = typer.Option(None, "--mode", help="Filter by mode"),
    tags: Optional[List[str]] = typer.Option(None, "--tag", help="Filter by tag (repeatable)"),
    as_json: bool = typer.Option(False, "--json", help="Print schedules as JSON"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """List schedules, highest priority first."""
    filters = {"script_id": script_id, "status": status, "mode": mode, "tags": tags or None}

    async def _list(service):
        return service.list_schedules(filters)

    schedules = unwrap(run_with_service(config_path, _list))
    if as_json:
        echo_json(schedules)
        return
    if not schedules:
        typer.echo("No schedules found.")
        return

    typer.echo("Schedules:\n")
    for schedule in schedules:
        typer.echo(f"  {schedule['id']} [{schedule['status'].upper()}]")
        typer.echo(f"    {schedule['name']} -> {schedule['script_id']}")
        typer.echo(f"    Trigger: {_describe_trigger(schedule)}")
        if schedule["next_execution"]:
            typer.echo(f"    Next run: {schedule['next_execution']}")
        typer.echo(f"    Runs: {schedule['execution_count']} (failed: {schedule['failure_count']})")
        typer.echo()


@app.command("pause")
def pause_command(
    schedule_id: str = typer.Argument(..., help="Schedule id"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Pause an active schedule."""
    unwrap(run_with_service(config_path, lambda service: service.pause_schedule(schedule_id)))
    typer.echo(f"Paused schedule: {schedule_id}")


@app.command("resume")
def resume_command(
    schedule_id: str = typer.Argument(..., help="Schedule id"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Resume a paused, disabled or failed schedule."""
    schedule = unwrap(run_with_service(config_path, lambda service: service.resume_schedule(schedule_id)))
    typer.echo(f"Resumed schedule: {schedule_id}")
    if schedule["next_execution"]:
        typer.echo(f"  Next run: {schedule['next_execution']}")


@app.command("delete")
def delete_command(
    schedule_id: str = typer.Argument(..., help="Schedule id"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Delete a schedule and its history."""
    unwrap(run_with_service(config_path, lambda service: service.delete_schedule(schedule_id)))
    typer.echo(f"Deleted schedule: {schedule_id}")


@app.command("run")
def run_command(
    schedule_id: str = typer.Argument(..., help="Schedule id"),
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Register a tab at this URL first"),
    force: bool = typer.Option(False, "--force", help="Run even if the schedule is not active"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Run a schedule now without changing its timer or status.

    Exit code 1 on failure, 2 when blocked by resource limits.
    """

    async def _run(service):
        if url:
            tab = await service.update_tab_state(CLI_TAB_ID, url, "complete", ready=True)
            if not tab.ok:
                return tab
        return await service.execute_schedule(schedule_id, force=force)

    run = unwrap(run_with_service(config_path, _run))
    if run["success"]:
        typer.echo(f"Schedule {schedule_id} ran in {run['duration']}ms ({run['execution_id']})")
        return
    typer.echo(f"Failed [{run['error_code']}]: {run['error']}", err=True)
    raise typer.Exit(2 if run["error_code"] == "EXECUTION_BLOCKED" else 1)


@app.command("history")
def history_command(
    schedule_id: str = typer.Argument(..., help="Schedule id"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Show recent runs of a schedule."""

    async def _history(service):
        return service.schedule_history(schedule_id)

    runs = unwrap(run_with_service(config_path, _history))
    if not runs:
        typer.echo(f"No runs recorded for {schedule_id}.")
        return
    for run in runs:
        outcome = "ok" if run["success"] else f"failed [{run['error_code']}]"
        typer.echo(f"  {run['start_time']}  {run['trigger']['source']:<6}  {outcome}  {run['duration']}ms")


@app.command("stats")
def stats_command(config_path: Optional[str] = CONFIG_OPTION):
    """Show scheduler statistics."""

    async def _stats(service):
        return service.get_scheduler_stats()

    stats = unwrap(run_with_service(config_path, _stats))
    typer.echo(f"Schedules: {stats['total_schedules']}")
    for status, count in stats["by_status"].items():
        if count:
            typer.echo(f"  {status}: {count}")
    typer.echo(f"Executions: {stats['total_executions']}")
    typer.echo(f"  Successful: {stats['successful_executions']}")
    typer.echo(f"  Failed: {stats['failed_executions']}")
    typer.echo(f"  Average time: {stats['average_execution_time']:.0f}ms")
