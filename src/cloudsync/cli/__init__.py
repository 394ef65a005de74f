"""Command-line interface for cloudsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- sync: Synchronize the sync folder with the remote folder
- status: Show the synced state and cache usage
- cache: Cache management (stats, clear, cleanup, pin, verify, export, import)
"""

from __future__ import annotations

import logging
from pathlib import Path

import click

from cloudsync import __version__
from cloudsync.cli.cache import cache
from cloudsync.cli.sync import status, sync
from cloudsync.core.config import load_settings


@click.group()
@click.version_option(__version__, prog_name="cloudsync")
@click.option(
    "--settings",
    "settings_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Settings file (default: ~/.cloudsync/config.json).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, settings_path: Path | None, verbose: bool) -> None:
    """cloudsync - keep a local folder in sync with a remote one."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = load_settings(settings_path)


# Sync commands
cli.add_command(sync)
cli.add_command(status)

# Cache commands
cli.add_command(cache)


def main() -> None:
    cli()
