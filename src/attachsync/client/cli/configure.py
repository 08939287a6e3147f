"""Configuration command for the attachsync CLI.

Commands:
- configure: Store server connection and sync settings
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from attachsync.client.cli.config import get_config_file, load_config, parse_pairs, save_config
from attachsync.core.config import SyncConfig


@click.command()
@click.option("--server-url", default=None, help="Server URL (e.g., https://sync.example.com).")
@click.option("--token", default=None, help="API token for the server.")
@click.option(
    "--local-storage",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Store uploads in this directory instead of signed URLs (testing).",
)
@click.option(
    "--set",
    "settings",
    multiple=True,
    help="Sync setting as key=value, e.g. max_retries=5 (repeatable).",
)
def configure(
    server_url: str | None,
    token: str | None,
    local_storage: Path | None,
    settings: tuple[str, ...],
) -> None:
    """Write connection and sync settings to the config file."""
    config = load_config()

    if server_url:
        config["server_url"] = server_url.rstrip("/")
    if token:
        config["auth_token"] = token
    if local_storage:
        config["local_storage"] = str(local_storage.expanduser().resolve())

    if settings:
        sync_settings = dict(config.get("sync", {}))
        sync_settings.update(parse_pairs(settings))
        try:
            sync_config = SyncConfig.from_dict(sync_settings)
        except (TypeError, ValueError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        # Keep only recognized keys, with their coerced values
        config["sync"] = {
            key: value for key, value in sync_config.to_dict().items() if key in sync_settings
        }

    save_config(config)
    click.echo(f"Configuration saved to {get_config_file()}")
