# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Shared plumbing for CLI commands: config loading and service runs."""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from scriptflow.config import ConfigError, load_config
from scriptflow.service import Response, ScriptFlowService

T = TypeVar("T")

# Tab id used when the CLI stands in for a browser tab.
CLI_TAB_ID = 1


def build_service(config_path: Optional[str]) -> ScriptFlowService:
    """Load config and build the service, exiting 1 on bad config."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    return ScriptFlowService.build(config)


def run_with_service(
    config_path: Optional[str],
    operation: Callable[[ScriptFlowService], Awaitable[T]],
) -> T:
    """Start a service, run one operation against it, then stop it."""
    service = build_service(config_path)

    async def _run() -> T:
        started = await service.start()
        if not started.ok:
            fail(started)
        try:
            return await operation(service)
        finally:
            service.stop()

    return asyncio.run(_run())


def fail(response: Response, exit_code: int = 1) -> None:
    """Print a failed response on stderr and exit."""
    error = response.error
    if error is None:
        typer.echo("Error: operation failed", err=True)
    else:
        typer.echo(f"Error [{error.code}]: {error.message}", err=True)
    raise typer.Exit(exit_code)


def unwrap(response: Response) -> Any:
    if not response.ok:
        fail(response)
    return response.data


def echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))
