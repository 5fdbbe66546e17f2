# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Main CLI entry point for ScriptFlow.

Thin trigger: parses args, builds the service from config, calls one
operation and renders the response. All logic lives in the service.
"""

import asyncio
import logging
from typing import Optional

import typer

from scriptflow import __version__
from scriptflow.commands._service import CLI_TAB_ID, build_service, fail

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="scriptflow",
    help="Userscript execution engine and scheduler",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run userscripts against pages and schedule them."""
    setup_logging(verbose)


@app.command()
def version():
    """Show version information."""
    typer.echo(f"scriptflow version {__version__}")


@app.command()
def daemon(
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Register a ready tab at this URL"),
    run_matching: bool = typer.Option(
        False, "--run-matching", help="Run every matching script on the tab at startup"
    ),
    tick: float = typer.Option(60.0, "--tick", help="Seconds between maintenance passes"),
    duration: Optional[float] = typer.Option(None, "--duration", help="Stop after this many seconds"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Run the scheduler loop until interrupted.

    Armed timers fire on this process; stale contexts, expired errors and old
    metrics are swept every --tick seconds.

    Examples:
        scriptflow daemon --url https://example.com/
        scriptflow daemon --url https://example.com/ --run-matching --duration 300
    """
    service = build_service(config_path)

    async def _daemon() -> None:
        started = await service.start()
        if not started.ok:
            fail(started)
        summary = started.data
        typer.echo(
            f"Scheduler started ({summary['rearmed']} timers re-armed, "
            f"{summary['orphans_cleared']} orphans cleared)"
        )

        try:
            if url:
                await service.update_tab_state(CLI_TAB_ID, url, "complete", ready=True)
                typer.echo(f"Registered tab {CLI_TAB_ID}: {url}")
                if run_matching:
                    response = await service.execute_scripts_for_tab(CLI_TAB_ID, url)
                    for result in response.data or []:
                        typer.echo(f"  {result['script_id']}: {result['status']} - {result['message']}")

            loop = asyncio.get_running_loop()
            deadline = loop.time() + duration if duration is not None else None
            while deadline is None or loop.time() < deadline:
                wait = tick if deadline is None else min(tick, deadline - loop.time())
                await asyncio.sleep(max(wait, 0))
                swept = service.maintenance()
                logger.debug(f"Maintenance pass: {swept}")
        finally:
            service.stop()

    try:
        asyncio.run(_daemon())
    except KeyboardInterrupt:
        typer.echo("Stopped")


# Static command groups
from scriptflow.commands import config, schedule, script  # noqa: E402

app.add_typer(config.app, name="config")
app.add_typer(script.app, name="script")
app.add_typer(schedule.app, name="schedule")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
