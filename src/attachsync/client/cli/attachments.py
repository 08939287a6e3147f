"""Attachment commands for the attachsync CLI.

Commands:
- capture: Prepare an image and queue it for upload
- list: List attachments
- retry: Re-queue failed attachments
- delete: Record a user-initiated delete
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from attachsync.client.cli.config import get_media_dir, open_queue, parse_pairs
from attachsync.client.media import prepare_image
from attachsync.client.sync.types import (
    AttachmentNotFoundError,
    AttachmentState,
    InvalidTransitionError,
)

ROLES = ("before", "after", "signature")


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


@click.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--role", type=click.Choice(ROLES), default=None, help="Capture role.")
@click.option(
    "--meta",
    "meta",
    multiple=True,
    help="Owner metadata as key=value (repeatable).",
)
def capture(file: Path, role: str | None, meta: tuple[str, ...]) -> None:
    """Prepare FILE and queue it for upload.

    The image is re-encoded (JPEG, or PNG for signatures) and copied to the
    local media directory. Prints the attachment id.
    """
    metadata = parse_pairs(meta)
    if role:
        metadata["role"] = role

    try:
        prepared = prepare_image(file, get_media_dir(), role=role)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    with open_queue() as (_store, _oplog, queue):
        attachment_id = queue.enqueue(
            prepared.path,
            prepared.media_type,
            prepared.size_bytes,
            metadata,
            attachment_id=prepared.attachment_id,
        )
    click.echo(attachment_id)


@click.command("list")
@click.option(
    "--state",
    type=click.Choice([s.value for s in AttachmentState], case_sensitive=False),
    default=None,
    help="Only show attachments in this state.",
)
def list_attachments(state: str | None) -> None:
    """List attachments and their sync state."""
    with open_queue() as (_store, _oplog, queue):
        attachments = queue.list(AttachmentState(state.upper()) if state else None)

    if not attachments:
        click.echo("No attachments.")
        return

    for attachment in attachments:
        location = attachment.remote_url or attachment.local_path or "-"
        line = (
            f"{attachment.id}  {attachment.state.value:<13}  {attachment.media_type:<10}  "
            f"{_format_size(attachment.size_bytes):>9}  retries={attachment.retry_count}  "
            f"{location}"
        )
        click.echo(line)
        if attachment.last_error and attachment.state != AttachmentState.SYNCED:
            click.echo(f"    last error: {attachment.last_error}")


@click.command()
@click.argument("attachment_id", required=False)
@click.option("--all", "retry_all", is_flag=True, help="Re-queue every failed attachment.")
def retry(attachment_id: str | None, retry_all: bool) -> None:
    """Re-queue a FAILED attachment (or all of them with --all)."""
    if not attachment_id and not retry_all:
        click.echo("Error: give an attachment id or --all.", err=True)
        sys.exit(1)

    with open_queue() as (_store, _oplog, queue):
        if retry_all:
            ids = queue.retry_all_failed()
            click.echo(f"Re-queued {len(ids)} attachment(s).")
            return
        assert attachment_id is not None
        try:
            queue.retry_failed(attachment_id)
        except (AttachmentNotFoundError, InvalidTransitionError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(f"Re-queued {attachment_id}.")


@click.command()
@click.argument("attachment_id")
@click.option("--remote-url", default=None, help="Remote URL if the attachment is not local.")
def delete(attachment_id: str, remote_url: str | None) -> None:
    """Record a user-initiated delete of ATTACHMENT_ID.

    The remote object and record are removed on the next sync.
    """
    with open_queue() as (_store, _oplog, queue):
        entry = queue.delete(attachment_id, remote_url=remote_url)
    click.echo(f"Delete of {attachment_id} logged as {entry.id}.")
