"""Configuration utilities for the attachsync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click

from attachsync.client.store import LocalStore
from attachsync.client.sync.attachment_queue import AttachmentQueue
from attachsync.client.sync.oplog import OperationLog
from attachsync.core.config import ServerConfig, SyncConfig

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_log_handler: logging.Handler | None = None


def get_config_dir() -> Path:
    """Get the configuration directory for attachsync.

    Returns:
        Path to ~/.attachsync.
    """
    return Path.home() / ".attachsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_state_db() -> Path:
    """Get the path to the state database."""
    return get_config_dir() / "state.db"


def get_media_dir() -> Path:
    """Get the directory holding prepared captures."""
    return get_config_dir() / "media"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def load_sync_config(config: dict[str, Any] | None = None) -> SyncConfig:
    """Build the sync policy from the ``sync`` section of the config."""
    if config is None:
        config = load_config()
    try:
        return SyncConfig.from_dict(config.get("sync", {}))
    except (TypeError, ValueError) as e:
        click.echo(f"Error: invalid sync settings in {get_config_file()}: {e}", err=True)
        sys.exit(1)


def require_server_config(config: dict[str, Any] | None = None) -> ServerConfig:
    """Get server settings, exiting with a message if not configured."""
    if config is None:
        config = load_config()
    if not config.get("server_url") or not config.get("auth_token"):
        click.echo(
            "Error: No server configured. Run 'attachsync configure' first.", err=True
        )
        sys.exit(1)
    return ServerConfig(
        server_url=config["server_url"],
        token=config["auth_token"],
        timeout=float(config.get("timeout", 30.0)),
        verify_ssl=bool(config.get("verify_ssl", True)),
    )


def parse_pairs(values: tuple[str, ...]) -> dict[str, str]:
    """Parse repeated ``key=value`` options into a dictionary.

    Raises:
        click.BadParameter: If a value has no ``=``.
    """
    pairs: dict[str, str] = {}
    for value in values:
        key, sep, item = value.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {value!r}")
        pairs[key.strip()] = item.strip()
    return pairs


def setup_logging(verbose: bool = False) -> None:
    """Send attachsync logs to stderr.

    Args:
        verbose: Show debug messages instead of warnings only.
    """
    global _log_handler

    package_logger = logging.getLogger("attachsync")
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if _log_handler is None:
        _log_handler = logging.StreamHandler(sys.stderr)
        _log_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(_log_handler)


@contextmanager
def open_queue() -> Iterator[tuple[LocalStore, OperationLog, AttachmentQueue]]:
    """Open the local state database for a single command."""
    store = LocalStore(get_state_db())
    try:
        oplog = OperationLog(store)
        queue = AttachmentQueue(store, oplog, load_sync_config())
        yield store, oplog, queue
    finally:
        store.close()
