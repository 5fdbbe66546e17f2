# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Config command for ScriptFlow.

Validates and shows the effective configuration.
"""

from typing import Optional

import typer
import yaml

from scriptflow.config import ConfigError, load_config

app = typer.Typer(help="Manage and validate configuration", no_args_is_help=True)


@app.command()
def validate(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """
    Validate configuration file.

    Checks that the file is valid YAML and that every section and key is known
    and correctly typed.
    """
    typer.echo("Validating configuration...")
    typer.echo()

    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except ConfigError as e:
        typer.echo(f"Validation failed: {e}", err=True)
        raise typer.Exit(1)

    if config.source is None:
        typer.echo("No config file found, using built-in defaults")
    else:
        typer.echo(f"Config file: {config.source}")
    typer.echo(f"Store: {config.store_path}")
    typer.echo(f"Events: {config.events_path}")
    typer.echo()
    typer.echo("Configuration validation complete!")


@app.command()
def show(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Print the effective configuration (defaults merged with the file) as YAML."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(yaml.safe_dump(config.to_dict(), sort_keys=False), nl=False)
