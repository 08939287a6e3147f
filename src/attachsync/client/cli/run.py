"""Run command for the attachsync CLI.

Commands:
- run: Upload queued attachments and deliver the operation log
"""

from __future__ import annotations

import sys
import threading

import click

from attachsync.client.cli.config import (
    get_media_dir,
    get_state_db,
    load_config,
    load_sync_config,
    require_server_config,
)


@click.command()
@click.option("--once", is_flag=True, help="Run a single upload and delivery pass, then exit.")
def run(once: bool) -> None:
    """Synchronize attachments with the server.

    Without --once, keeps running until interrupted (Ctrl+C).
    """
    from attachsync.client.api import HTTPClient
    from attachsync.client.storage import (
        LocalFSStorageAdapter,
        SignedUrlStorageAdapter,
        StorageAdapter,
    )
    from attachsync.client.store import LocalStore
    from attachsync.client.sync.service import SyncService

    config = load_config()
    server_config = require_server_config(config)
    sync_config = load_sync_config(config)

    client = HTTPClient(server_config)
    store = LocalStore(get_state_db())
    adapter: StorageAdapter
    if config.get("local_storage"):
        adapter = LocalFSStorageAdapter(config["local_storage"])
    else:
        adapter = SignedUrlStorageAdapter(client)

    def on_auth_error(error: Exception) -> None:
        click.echo(f"Error: server refused credentials ({error}).", err=True)
        click.echo("Update the token with 'attachsync configure --token ...'.", err=True)

    service = SyncService(
        store,
        adapter,
        client,
        sync_config,
        media_dir=get_media_dir(),
        on_auth_error=on_auth_error,
    )

    try:
        if once:
            uploads, report = service.sync_once()
            click.echo(
                f"Uploads: {uploads['synced']} synced, "
                f"{uploads['retry_scheduled']} to retry, {uploads['failed']} failed"
            )
            click.echo(
                f"Log: {len(report.applied)} delivered, {len(report.rejected)} rejected, "
                f"{len(report.retried)} to retry"
            )
            for outcome in report.rejected:
                click.echo(
                    f"  rejected {outcome.operation_type.value} {outcome.attachment_id}: "
                    f"{outcome.reason}",
                    err=True,
                )
            status = service.status()
            if status.paused or report.rejected:
                sys.exit(1)
            return

        click.echo(f"Syncing attachments with {server_config.server_url} (Ctrl+C to stop)")
        service.start()
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            click.echo("\nStopping...")
        finally:
            service.stop()
    finally:
        store.close()
        client.close()
