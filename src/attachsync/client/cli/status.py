"""Status commands for the attachsync CLI.

Commands:
- status: Attachment counts per state and operation log backlog
- log: Operation log entries
"""

from __future__ import annotations

from datetime import datetime

import click

from attachsync.client.cli.config import open_queue
from attachsync.client.sync.types import OperationLogEntry


def _format_time(timestamp: float | None) -> str:
    if timestamp is None:
        return "-"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def _entry_status(entry: OperationLogEntry) -> str:
    if entry.is_delivered:
        return f"delivered {_format_time(entry.delivered_at)}"
    if entry.is_failed:
        return f"REJECTED: {entry.failure_reason}"
    if entry.attempts:
        return f"pending (attempts={entry.attempts}, next {_format_time(entry.next_attempt_at)})"
    return "pending"


@click.command()
def status() -> None:
    """Show attachment counts and the delivery backlog."""
    with open_queue() as (_store, oplog, queue):
        counts = queue.counts()
        undelivered = oplog.undelivered_count()
        rejected = len(oplog.list_failed())
        remote_deletes = oplog.pending_remote_delete_count()

    click.echo("Attachments:")
    for state, count in counts.items():
        click.echo(f"  {state.value:<14} {count}")
    click.echo(f"Operation log: {undelivered} undelivered, {rejected} rejected")
    if remote_deletes:
        click.echo(f"Remote objects awaiting deletion: {remote_deletes}")


@click.command()
@click.option("--failed", is_flag=True, help="Only show rejected entries.")
@click.option("--attachment", "attachment_id", default=None, help="Filter by attachment id.")
def log(failed: bool, attachment_id: str | None) -> None:
    """Show operation log entries in creation order."""
    with open_queue() as (_store, oplog, _queue):
        entries = oplog.list_failed() if failed else oplog.list_entries(attachment_id)
    if failed and attachment_id:
        entries = [e for e in entries if e.attachment_id == attachment_id]

    if not entries:
        click.echo("No entries.")
        return

    for entry in entries:
        click.echo(
            f"{entry.seq:>5}  {entry.id}  {entry.operation_type.value:<6}  "
            f"{entry.attachment_id}  {_entry_status(entry)}"
        )
