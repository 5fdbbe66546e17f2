"""
Script command for ScriptFlow.

Registers userscripts and runs them against a URL through the configured host.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

from pathlib import Path
from typing import Optional

import typer

from scriptflow.commands._service import (
    CLI_TAB_ID,
    build_service,
    echo_json,
    fail,
    run_with_service,
    unwrap,
)
from scriptflow.scripts import ScriptValidationError, load_userscript

app = typer.Typer(help="Register, inspect and run userscripts", no_args_is_help=True)

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to config file")


@app.command("add")
def add_command(
    path: Path = typer.Argument(..., help="Path to a *.user.js file"),
    script_id: Optional[str] = typer.Option(None, "--id", help="Script id (derived from @name when omitted)"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Add (or replace) a userscript.

    Examples:
        scriptflow script add ./hello.user.js
        scriptflow script add ./hello.user.js --id hello
    """
    script = unwrap(run_with_service(
        config_path, lambda service: service.add_script(path=path, script_id=script_id)
    ))
    typer.echo(f"Added script: {script['id']} ({script['name']} v{script['version']})")


@app.command("list")
def list_command(config_path: Optional[str] = CONFIG_OPTION):
    """List registered scripts."""
    scripts = unwrap(run_with_service(config_path, lambda service: service.list_scripts()))

    if not scripts:
        typer.echo("No scripts registered.")
        typer.echo("\nAdd one with: scriptflow script add <file.user.js>")
        return

    typer.echo("Registered scripts:\n")
    for script in scripts:
        badge = "" if script["enabled"] else " [DISABLED]"
        typer.echo(f"  {script['id']}{badge}")
        if script["description"]:
            typer.echo(f"    {script['description']}")
        typer.echo(f"    Matches: {', '.join(script['matches'] + script['include'])}")
        typer.echo(f"    Runs: {script['execution_count']}")
        typer.echo()


@app.command("info")
def info_command(
    script_id: str = typer.Argument(..., help="Script id"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Show metadata and counters for a script."""
    info = unwrap(run_with_service(config_path, lambda service: service.get_script(script_id)))

    typer.echo(f"Script: {info['id']}")
    typer.echo(f"  Name: {info['name']}")
    typer.echo(f"  Version: {info['version']}")
    if info["namespace"]:
        typer.echo(f"  Namespace: {info['namespace']}")
    if info["author"]:
        typer.echo(f"  Author: {info['author']}")
    typer.echo(f"  Description: {info['description']}")
    typer.echo(f"  Enabled: {'yes' if info['enabled'] else 'no'}")
    typer.echo()
    typer.echo("Targeting:")
    for key in ("matches", "include", "exclude"):
        if info[key]:
            typer.echo(f"  {key.capitalize()}: {', '.join(info[key])}")
    typer.echo(f"  Run at: {info['run_at']}")
    typer.echo(f"  World: {info['world']}")
    if info["grants"]:
        typer.echo(f"  Grants: {', '.join(info['grants'])}")
    typer.echo()
    typer.echo("Status:")
    typer.echo(f"  Run count: {info['execution_count']}")
    if info["last_executed"]:
        typer.echo(f"  Last run: {info['last_executed']}")


@app.command("validate")
def validate_command(
    path: Path = typer.Argument(..., help="Path to a *.user.js file"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Parse a userscript and run the security checks without storing it."""
    try:
        script = load_userscript(path)
    except ScriptValidationError as e:
        typer.echo(f"Invalid: {e}", err=True)
        raise typer.Exit(1)

    report = unwrap(build_service(config_path).validate_script(script))
    typer.echo(f"Script: {script.id}")
    typer.echo(f"  Security level: {report['security_level']}")
    typer.echo(f"  CSP compliant: {'yes' if report['csp_compliant'] else 'no'}")
    for warning in report["warnings"]:
        typer.echo(f"  Warning: {warning}")
    for error in report["errors"]:
        typer.echo(f"  Error: {error}", err=True)
    if not report["ok"]:
        raise typer.Exit(1)
    typer.echo("Script is valid")


@app.command("run")
def run_command(
    script_id: str = typer.Argument(..., help="Script id"),
    url: str = typer.Option(..., "--url", "-u", help="Page URL the script runs against"),
    force: bool = typer.Option(
        False, "--force", "-f", help="Run even if the script is disabled"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the full result as JSON"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Run a script once against a URL.

    Exit code 1 on failure or rejection, 2 when blocked by resource limits.

    Examples:
        scriptflow script run hello --url https://example.com/
    """

    async def _run(service):
        tab = await service.update_tab_state(CLI_TAB_ID, url, "complete", ready=True)
        if not tab.ok:
            return tab
        return await service.execute_script(script_id, CLI_TAB_ID, url, force=force)

    result = unwrap(run_with_service(config_path, _run))

    if as_json:
        echo_json(result)
    if result["status"] == "succeeded":
        if not as_json:
            typer.echo(result["message"])
            if result["result"] is not None:
                typer.echo(f"Result: {result['result']}")
        return
    typer.echo(f"{result['status'].capitalize()}: {result['message']}", err=True)
    raise typer.Exit(2 if result["status"] == "blocked" else 1)


def _set_enabled(script_id: str, enabled: bool, config_path: Optional[str]) -> None:
    response = run_with_service(config_path, lambda service: service.set_script_enabled(script_id, enabled))
    if not response.ok:
        fail(response)
    typer.echo(f"{'Enabled' if enabled else 'Disabled'} script: {script_id}")


@app.command("enable")
def enable_command(
    script_id: str = typer.Argument(..., help="Script id"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Enable a script."""
    _set_enabled(script_id, True, config_path)


@app.command("disable")
def disable_command(
    script_id: str = typer.Argument(..., help="Script id"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Disable a script; it will be rejected unless run with --force."""
    _set_enabled(script_id, False, config_path)


@app.command("remove")
def remove_command(
    script_id: str = typer.Argument(..., help="Script id"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Remove a script and every schedule that runs it."""
    removed = unwrap(run_with_service(config_path, lambda service: service.remove_script(script_id)))
    typer.echo(f"Removed script: {script_id}")
    for schedule_id in removed["schedules_removed"]:
        typer.echo(f"  Removed schedule: {schedule_id}")
