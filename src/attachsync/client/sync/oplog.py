"""Append-only operation log.

This module provides:
- OperationLog: ledger of ADD/DELETE facts awaiting remote reconciliation

Entries are written once per logical event. The idempotency key
``<attachment_id>:<operation_type>`` makes a repeated append return the
existing entry instead of creating a second row, and the key stays reserved
after the entry is archived. The fact columns of an entry are never
updated; only delivery bookkeeping changes, and only while the entry is
still pending.

A DELETE entry that names a remote object also records a RemoteDelete in
the same transaction. Removing the object is retried on its own schedule,
so the entry (and local cleanup) never waits for storage.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from attachsync.client.sync.types import (
    OperationLogEntry,
    OperationType,
    RemoteDelete,
    SyncError,
    idempotency_key,
)
from attachsync.core.ids import generate_object_id

if TYPE_CHECKING:
    from attachsync.client.store import LocalStore
    from attachsync.client.sync.retry import BackoffPolicy

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class OperationLog:
    """Ledger of attachment additions and deletions.

    Usage:
        log = OperationLog(store)
        entry = log.append(OperationType.ADD, attachment_id, remote_url, metadata)
        for head in log.pending_heads(limit=25):
            ...
        log.mark_delivered(entry.id)
    """

    def __init__(
        self,
        store: LocalStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the log.

        Args:
            store: Durable store holding the ``operation_log`` table.
            clock: Source of epoch seconds (injectable for tests).
        """
        self._store = store
        self._clock = clock

    def append(
        self,
        operation_type: OperationType,
        attachment_id: str,
        remote_url: str | None = None,
        owner_metadata: dict[str, Any] | None = None,
    ) -> OperationLogEntry:
        """Record an ADD or DELETE fact.

        If an entry with the same idempotency key already exists (live or
        archived), it is returned unchanged and nothing is written.

        Args:
            operation_type: ADD or DELETE.
            attachment_id: The attachment the fact is about.
            remote_url: Remote URL of the object, when known.
            owner_metadata: Copy of the attachment's metadata bag.

        Returns:
            The entry for this logical event.

        Raises:
            LocalStorageError: If the store fails; nothing is written.
        """
        key = idempotency_key(attachment_id, operation_type)
        entry = OperationLogEntry(
            id=generate_object_id(),
            seq=0,
            operation_type=operation_type,
            attachment_id=attachment_id,
            remote_url=remote_url,
            owner_metadata=dict(owner_metadata or {}),
            created_at=self._clock(),
        )

        with self._store.transaction():
            seq = self._store.insert_entry(entry, key)
            if seq is None:
                existing = self._store.get_entry_by_key(key)
                if existing is None:
                    raise SyncError(f"Idempotency key {key} reserved but entry missing")
                logger.debug("Operation %s already logged as %s", key, existing.id)
                return existing
            if operation_type == OperationType.DELETE and remote_url:
                self._store.insert_remote_delete(
                    RemoteDelete(
                        remote_url=remote_url,
                        attachment_id=attachment_id,
                        created_at=entry.created_at,
                    )
                )

        entry.seq = seq
        logger.info(
            "Logged %s for attachment %s (entry %s)",
            operation_type.value,
            attachment_id,
            entry.id,
        )
        return entry

    # === Queries ===

    def get(self, entry_id: str) -> OperationLogEntry | None:
        """Get a live entry by id."""
        return self._store.get_entry(entry_id)

    def find(
        self,
        attachment_id: str,
        operation_type: OperationType,
    ) -> OperationLogEntry | None:
        """Get the entry for one logical event, if it was logged."""
        return self._store.get_entry_by_key(idempotency_key(attachment_id, operation_type))

    def list_entries(self, attachment_id: str | None = None) -> list[OperationLogEntry]:
        """List live entries in creation order."""
        return self._store.list_entries(attachment_id)

    def list_failed(self) -> list[OperationLogEntry]:
        """Entries terminally rejected by the remote side."""
        return self._store.list_entries(failed_only=True)

    def undelivered_count(self) -> int:
        """Number of entries still awaiting delivery."""
        return self._store.count_undelivered()

    def pending_heads(self, limit: int) -> list[OperationLogEntry]:
        """Entries ready for delivery, at most one per attachment.

        Only the oldest pending entry of each attachment is returned, and
        only once its retry time (if any) has passed.
        """
        return self._store.select_pending_heads(self._clock(), limit)

    # === Delivery bookkeeping ===

    def mark_delivered(self, entry_id: str) -> bool:
        """Stamp ``delivered_at`` on a pending entry.

        Returns:
            True if the entry was pending and is now delivered.
        """
        with self._store.transaction():
            entry = self._store.get_entry(entry_id)
            if entry is None:
                return False
            updated = self._store.update_entry(
                entry_id,
                {
                    "delivered_at": self._clock(),
                    "attempts": entry.attempts + 1,
                    "next_attempt_at": None,
                },
            )
        if updated:
            logger.debug("Entry %s delivered", entry_id)
        return updated

    def mark_failed(self, entry_id: str, reason: str) -> bool:
        """Mark a pending entry as terminally rejected.

        Returns:
            True if the entry was pending and is now failed.
        """
        with self._store.transaction():
            entry = self._store.get_entry(entry_id)
            if entry is None:
                return False
            updated = self._store.update_entry(
                entry_id,
                {
                    "failed_at": self._clock(),
                    "failure_reason": reason,
                    "attempts": entry.attempts + 1,
                    "next_attempt_at": None,
                },
            )
        if updated:
            logger.error("Entry %s rejected: %s", entry_id, reason)
        return updated

    def schedule_retry(
        self,
        entry_id: str,
        backoff: BackoffPolicy,
        reason: str | None = None,
    ) -> float | None:
        """Record a transient delivery failure and push the entry back.

        Returns:
            The delay in seconds, or None if the entry was not pending.
        """
        with self._store.transaction():
            entry = self._store.get_entry(entry_id)
            if entry is None:
                return None
            attempts = entry.attempts + 1
            delay = backoff.delay(attempts)
            updated = self._store.update_entry(
                entry_id,
                {
                    "attempts": attempts,
                    "next_attempt_at": self._clock() + delay,
                    "failure_reason": reason,
                },
            )
        if not updated:
            return None
        logger.warning(
            "Delivery of entry %s failed (attempt %d), retrying in %.1fs: %s",
            entry_id,
            attempts,
            delay,
            reason,
        )
        return delay

    # === Remote object deletes ===

    def get_remote_delete(self, remote_url: str) -> RemoteDelete | None:
        """Get the remote delete recorded for ``remote_url``."""
        return self._store.get_remote_delete(remote_url)

    def due_remote_deletes(self, limit: int) -> list[RemoteDelete]:
        """Remote deletes ready for an attempt, oldest first."""
        return self._store.select_due_remote_deletes(self._clock(), limit)

    def pending_remote_delete_count(self) -> int:
        """Number of remote objects still to be removed."""
        return self._store.count_pending_remote_deletes()

    def mark_remote_deleted(self, remote_delete: RemoteDelete) -> bool:
        """Record that the remote object is gone."""
        with self._store.transaction():
            updated = self._store.update_remote_delete(
                remote_delete.remote_url,
                {
                    "completed_at": self._clock(),
                    "attempts": remote_delete.attempts + 1,
                    "next_attempt_at": None,
                },
            )
        if updated:
            logger.info("Removed remote object %s", remote_delete.remote_url)
        return updated

    def mark_remote_delete_failed(self, remote_delete: RemoteDelete, reason: str) -> bool:
        """Record that the storage side refused the delete for good."""
        with self._store.transaction():
            updated = self._store.update_remote_delete(
                remote_delete.remote_url,
                {
                    "failed_at": self._clock(),
                    "attempts": remote_delete.attempts + 1,
                    "next_attempt_at": None,
                    "last_error": reason,
                },
            )
        if updated:
            logger.error("Remote delete of %s refused: %s", remote_delete.remote_url, reason)
        return updated

    def schedule_remote_delete_retry(
        self,
        remote_delete: RemoteDelete,
        backoff: BackoffPolicy,
        reason: str | None = None,
    ) -> float | None:
        """Record a transient delete failure and push the attempt back.

        Returns:
            The delay in seconds, or None if the delete was not pending.
        """
        attempts = remote_delete.attempts + 1
        delay = backoff.delay(attempts)
        with self._store.transaction():
            updated = self._store.update_remote_delete(
                remote_delete.remote_url,
                {
                    "attempts": attempts,
                    "next_attempt_at": self._clock() + delay,
                    "last_error": reason,
                },
            )
        if not updated:
            return None
        logger.warning(
            "Remote delete of %s failed (attempt %d), retrying in %.1fs: %s",
            remote_delete.remote_url,
            attempts,
            delay,
            reason,
        )
        return delay

    def archive_delivered(self, older_than_days: int) -> int:
        """Move delivered entries past the retention window to the archive.

        Returns:
            Number of archived entries.
        """
        cutoff = self._clock() - older_than_days * SECONDS_PER_DAY
        with self._store.transaction():
            archived = self._store.archive_delivered(cutoff)
        if archived:
            logger.info("Archived %d delivered log entries", archived)
        return archived
