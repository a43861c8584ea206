#!/usr/bin/env python
"""CLI entry point for sqlagent."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from sqlagent.agent import SqlAgent
from sqlagent.config import DatabaseConfig, detect_config, load_config
from sqlagent.errors import SqlAgentError


def _resolve_config(config_path: Optional[str]) -> DatabaseConfig:
    path = Path(config_path) if config_path else detect_config()
    if path is None:
        raise click.ClickException(
            "No database config found (set DB_CONFIG or add database.json/.yaml)"
        )
    click.echo(f"Config file: {path}")
    try:
        return load_config(path).with_default_parameters()
    except SqlAgentError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """sqlagent - database config discovery and connection checks."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("show-config")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Config file path (default: DB_CONFIG or discovery)")
def show_config(config_path: Optional[str]):
    """Print the resolved database config (password omitted)."""
    config = _resolve_config(config_path)
    click.echo(repr(config))
    for key, value in sorted(config.parameters.items()):
        click.echo(f"  {key} = {value}")


@cli.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Config file path (default: DB_CONFIG or discovery)")
def check(config_path: Optional[str]):
    """Connect to the database and print the pool health check."""
    config = _resolve_config(config_path)

    async def run():
        agent = await SqlAgent.connect(config)
        try:
            return await agent.check_health()
        finally:
            await agent.close()

    try:
        health = asyncio.run(run())
    except SqlAgentError as e:
        raise click.ClickException(str(e))

    click.echo(json.dumps(health, indent=2, default=str))
    if health.get("status") != "healthy":
        sys.exit(1)


if __name__ == "__main__":
    cli()
