"""Command-line interface for attachsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- configure: Store server connection and sync settings
- capture: Prepare an image and queue it for upload
- status: Show counts per state and the delivery backlog
- list: List attachments
- retry: Re-queue failed attachments
- delete: Record a user-initiated delete
- log: Show operation log entries
- run: Upload and deliver (once or continuously)
"""

from __future__ import annotations

import click

from attachsync.client.cli.attachments import capture, delete, list_attachments, retry
from attachsync.client.cli.config import (
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
    setup_logging,
)
from attachsync.client.cli.configure import configure
from attachsync.client.cli.run import run
from attachsync.client.cli.status import log, status


@click.group()
@click.version_option(package_name="attachsync")
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging.")
def cli(verbose: bool) -> None:
    """attachsync - offline attachment sync."""
    setup_logging(verbose)


# Setup
cli.add_command(configure)

# Attachment commands
cli.add_command(capture)
cli.add_command(list_attachments)
cli.add_command(retry)
cli.add_command(delete)

# Sync commands
cli.add_command(status)
cli.add_command(log)
cli.add_command(run)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "main",
    "get_config_dir",
    "get_config_file",
    "load_config",
    "save_config",
    "setup_logging",
]
