"""Attachment queue and upload state machine.

This module provides:
- AttachmentQueue: owns attachment state transitions and upload eligibility

State machine:
    QUEUED_UPLOAD --claim--> UPLOADING
    UPLOADING --success--> SYNCED                       (ADD entry logged)
    UPLOADING --failure, retries left--> QUEUED_UPLOAD  (retry_count + 1, backoff)
    UPLOADING --failure, bound reached--> FAILED        (terminal)
    SYNCED / QUEUED_UPLOAD / UPLOADING / FAILED --delete--> QUEUED_DELETE
                                                        (DELETE entry logged)
    QUEUED_DELETE --DELETE delivered--> row removed
    FAILED --retry_failed--> QUEUED_UPLOAD

Every transition is a single store transaction. ``claim_next_batch`` is the
only place a lease is taken: it re-checks ``state = QUEUED_UPLOAD`` in the
UPDATE itself, so concurrent callers partition the eligible rows instead of
sharing them. Reports from workers are only honored while the worker still
holds the lease.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from attachsync.client.media import detect_media_type
from attachsync.client.sync.retry import BackoffPolicy
from attachsync.client.sync.types import (
    Attachment,
    AttachmentNotFoundError,
    AttachmentState,
    AuthorizationError,
    InvalidTransitionError,
    LeaseLostError,
    OperationLogEntry,
    OperationType,
    PermanentValidationError,
)
from attachsync.core.config import SyncConfig
from attachsync.core.ids import generate_object_id

if TYPE_CHECKING:
    from attachsync.client.store import LocalStore
    from attachsync.client.sync.oplog import OperationLog

logger = logging.getLogger(__name__)

# Errors that no amount of retrying will fix
PERMANENT_UPLOAD_ERRORS: tuple[type[BaseException], ...] = (
    PermanentValidationError,
    FileNotFoundError,
)


class AttachmentQueue:
    """Durable queue of attachments awaiting upload or deletion.

    Usage:
        queue = AttachmentQueue(store, oplog, SyncConfig(max_retries=3))
        attachment_id = queue.enqueue("/data/photo.jpg", "image/jpeg", 1024, {...})

        for attachment in queue.claim_next_batch(2, owner="worker-0"):
            try:
                url = adapter.upload(attachment)
            except Exception as e:
                queue.report_failure(attachment.id, e, owner="worker-0")
            else:
                queue.report_success(attachment.id, url, owner="worker-0")
    """

    def __init__(
        self,
        store: LocalStore,
        oplog: OperationLog,
        config: SyncConfig | None = None,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the queue.

        Args:
            store: Durable store shared with the operation log.
            oplog: Operation log receiving ADD/DELETE facts.
            config: Retry bound and lease duration.
            backoff: Delay policy for failed uploads.
            clock: Source of epoch seconds (injectable for tests).
        """
        self._store = store
        self._oplog = oplog
        self._config = config or SyncConfig()
        self._backoff = backoff or BackoffPolicy.for_uploads(self._config)
        self._clock = clock
        self._on_enqueued: Callable[[str], None] | None = None

    @property
    def max_retries(self) -> int:
        """Failed attempts after which an attachment becomes FAILED."""
        return self._config.max_retries

    def set_on_enqueued(self, callback: Callable[[str], None]) -> None:
        """Set callback invoked after a new attachment is queued."""
        self._on_enqueued = callback

    # === Capture side ===

    def enqueue(
        self,
        local_path: Path | str,
        media_type: str | None = None,
        size_bytes: int | None = None,
        metadata: dict[str, Any] | None = None,
        attachment_id: str | None = None,
    ) -> str:
        """Queue a captured file for upload.

        Calling again with the same ``attachment_id`` returns that id without
        creating a second record.

        Args:
            local_path: File to upload.
            media_type: MIME type of the encoded bytes; sniffed from the
                file content when omitted.
            size_bytes: Size of the file; read from disk when omitted.
            metadata: Capture metadata copied into the log entries.
            attachment_id: Caller-chosen id; generated when omitted.

        Returns:
            The attachment id.

        Raises:
            FileNotFoundError: If the file does not exist.
            InvalidTransitionError: If the id was already used and deleted.
        """
        path = Path(local_path)
        if not path.is_file():
            raise FileNotFoundError(f"Attachment file not found: {path}")
        if size_bytes is None:
            size_bytes = path.stat().st_size
        if media_type is None:
            media_type = detect_media_type(path)

        attachment_id = attachment_id or generate_object_id()
        now = self._clock()

        with self._store.transaction():
            existing = self._store.get_attachment(attachment_id)
            if existing is not None:
                logger.debug("Attachment %s already queued", attachment_id)
                return attachment_id
            if self._oplog.find(attachment_id, OperationType.DELETE) is not None:
                raise InvalidTransitionError(
                    f"Attachment id {attachment_id} was deleted and cannot be reused"
                )
            self._store.insert_attachment(
                Attachment(
                    id=attachment_id,
                    local_path=str(path),
                    remote_url=None,
                    media_type=media_type,
                    size_bytes=size_bytes,
                    state=AttachmentState.QUEUED_UPLOAD,
                    metadata=dict(metadata or {}),
                    created_at=now,
                    updated_at=now,
                )
            )

        logger.info("Queued attachment %s (%s, %d bytes)", attachment_id, media_type, size_bytes)
        if self._on_enqueued:
            self._on_enqueued(attachment_id)
        return attachment_id

    # === Worker side ===

    def claim_next_batch(self, limit: int, owner: str) -> list[Attachment]:
        """Lease up to ``limit`` eligible attachments to ``owner``.

        Eligible means QUEUED_UPLOAD with no retry scheduled in the future.
        Each row is moved to UPLOADING with a conditional update, so a row
        that another caller claimed first is skipped.

        Returns:
            Only the attachments this call actually claimed.
        """
        if limit < 1:
            return []

        now = self._clock()
        lease_expires_at = now + self._config.lease_seconds
        claimed_ids: list[str] = []

        with self._store.transaction():
            for attachment_id in self._store.select_claimable_ids(now, limit):
                if self._store.update_attachment(
                    attachment_id,
                    {
                        "state": AttachmentState.UPLOADING,
                        "lease_owner": owner,
                        "lease_expires_at": lease_expires_at,
                        "updated_at": now,
                    },
                    expected_state=AttachmentState.QUEUED_UPLOAD,
                ):
                    claimed_ids.append(attachment_id)
            claimed = [
                attachment
                for attachment in map(self._store.get_attachment, claimed_ids)
                if attachment is not None
            ]

        if claimed:
            logger.debug("%s claimed %s", owner, [a.id for a in claimed])
        return claimed

    def holds_lease(self, attachment_id: str, owner: str) -> bool:
        """Check whether ``owner`` still holds the upload lease."""
        attachment = self._store.get_attachment(attachment_id)
        return (
            attachment is not None
            and attachment.state == AttachmentState.UPLOADING
            and attachment.lease_owner == owner
        )

    def _require_lease(self, attachment_id: str, owner: str) -> Attachment:
        attachment = self._store.get_attachment(attachment_id)
        if attachment is None:
            raise LeaseLostError(f"Attachment {attachment_id} no longer exists")
        if attachment.state != AttachmentState.UPLOADING or attachment.lease_owner != owner:
            raise LeaseLostError(
                f"Attachment {attachment_id} is {attachment.state.value}, "
                f"not leased to {owner}"
            )
        return attachment

    def report_success(self, attachment_id: str, remote_url: str, owner: str) -> OperationLogEntry:
        """Record a completed upload and log its ADD entry atomically.

        Raises:
            LeaseLostError: If the attachment was deleted or re-leased while
                the transfer was in flight; nothing is changed.
        """
        now = self._clock()
        with self._store.transaction():
            attachment = self._require_lease(attachment_id, owner)
            if attachment.remote_url is not None and attachment.remote_url != remote_url:
                raise InvalidTransitionError(
                    f"Attachment {attachment_id} already has remote URL {attachment.remote_url}"
                )
            self._store.update_attachment(
                attachment_id,
                {
                    "state": AttachmentState.SYNCED,
                    "remote_url": remote_url,
                    "lease_owner": None,
                    "lease_expires_at": None,
                    "next_retry_at": None,
                    "last_error": None,
                    "updated_at": now,
                },
                expected_state=AttachmentState.UPLOADING,
                expected_owner=owner,
            )
            entry = self._oplog.append(
                OperationType.ADD,
                attachment_id,
                remote_url,
                attachment.metadata,
            )

        logger.info("Attachment %s synced to %s", attachment_id, remote_url)
        return entry

    def report_failure(self, attachment_id: str, error: BaseException, owner: str) -> Attachment:
        """Record a failed upload attempt.

        - Authorization errors release the lease without counting an attempt.
        - Permanent errors (validation, missing local file) fail immediately.
        - Otherwise ``retry_count`` is incremented; the attachment is
          re-queued with a backoff delay, or marked FAILED once the count
          reaches ``max_retries``.

        Returns:
            The attachment after the transition.

        Raises:
            LeaseLostError: If ``owner`` no longer holds the lease.
        """
        now = self._clock()
        message = f"{type(error).__name__}: {error}"

        with self._store.transaction():
            attachment = self._require_lease(attachment_id, owner)
            values: dict[str, Any] = {
                "lease_owner": None,
                "lease_expires_at": None,
                "last_error": message,
                "updated_at": now,
            }
            if isinstance(error, AuthorizationError):
                values.update(state=AttachmentState.QUEUED_UPLOAD, next_retry_at=None)
            else:
                retry_count = attachment.retry_count + 1
                values["retry_count"] = retry_count
                if isinstance(error, PERMANENT_UPLOAD_ERRORS) or retry_count >= self.max_retries:
                    values.update(state=AttachmentState.FAILED, next_retry_at=None)
                else:
                    values.update(
                        state=AttachmentState.QUEUED_UPLOAD,
                        next_retry_at=now + self._backoff.delay(retry_count),
                    )
            self._store.update_attachment(
                attachment_id,
                values,
                expected_state=AttachmentState.UPLOADING,
                expected_owner=owner,
            )
            updated = self._store.get_attachment(attachment_id)

        assert updated is not None
        if updated.state == AttachmentState.FAILED:
            logger.error(
                "Attachment %s failed after %d attempt(s): %s",
                attachment_id,
                updated.retry_count,
                message,
            )
        elif isinstance(error, AuthorizationError):
            logger.warning("Upload of %s not authorized, lease released: %s", attachment_id, message)
        else:
            logger.warning(
                "Upload of %s failed (attempt %d/%d), retry at %.0f: %s",
                attachment_id,
                updated.retry_count,
                self.max_retries,
                updated.next_retry_at or now,
                message,
            )
        return updated

    def release(
        self,
        attachment_id: str,
        owner: str,
        error: BaseException | None = None,
    ) -> bool:
        """Give back a lease without counting an attempt.

        Used on shutdown and when the remote side refuses our credentials.

        Args:
            attachment_id: Attachment to release.
            owner: Worker holding the lease.
            error: Reason stored as ``last_error``, if any.

        Returns:
            True if the attachment was returned to QUEUED_UPLOAD.
        """
        values: dict[str, Any] = {
            "state": AttachmentState.QUEUED_UPLOAD,
            "lease_owner": None,
            "lease_expires_at": None,
            "updated_at": self._clock(),
        }
        if error is not None:
            values["last_error"] = f"{type(error).__name__}: {error}"
        with self._store.transaction():
            released = self._store.update_attachment(
                attachment_id,
                values,
                expected_state=AttachmentState.UPLOADING,
                expected_owner=owner,
            )
        if released:
            logger.debug("%s released %s", owner, attachment_id)
        return released

    def recover_expired_leases(self) -> int:
        """Return UPLOADING rows with lapsed leases to QUEUED_UPLOAD.

        A lease lapses when its worker crashed or hung; the attempt is not
        counted against the retry bound.

        Returns:
            Number of recovered attachments.
        """
        now = self._clock()
        recovered = 0
        with self._store.transaction():
            for attachment_id in self._store.select_expired_lease_ids(now):
                if self._store.update_attachment(
                    attachment_id,
                    {
                        "state": AttachmentState.QUEUED_UPLOAD,
                        "lease_owner": None,
                        "lease_expires_at": None,
                        "updated_at": now,
                    },
                    expected_state=AttachmentState.UPLOADING,
                ):
                    recovered += 1
        if recovered:
            logger.warning("Recovered %d attachment(s) with expired leases", recovered)
        return recovered

    def next_retry_at(self) -> float | None:
        """Earliest scheduled retry, for sleeping until work is due."""
        return self._store.next_retry_time()

    # === Deletion ===

    def delete(
        self,
        attachment_id: str,
        remote_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> OperationLogEntry:
        """Record a user-initiated delete.

        If the attachment exists locally it moves to QUEUED_DELETE (any
        in-flight upload loses its lease) and its row is removed once the
        DELETE entry is delivered. If it does not exist locally, only the
        DELETE entry is logged, using ``remote_url`` and ``metadata`` or the
        values from the earlier ADD entry.

        Returns:
            The DELETE entry (the existing one if delete was already called).
        """
        now = self._clock()
        with self._store.transaction():
            attachment = self._store.get_attachment(attachment_id)
            if attachment is None:
                add_entry = self._oplog.find(attachment_id, OperationType.ADD)
                if add_entry is not None:
                    remote_url = remote_url or add_entry.remote_url
                    if metadata is None:
                        metadata = add_entry.owner_metadata
                entry = self._oplog.append(
                    OperationType.DELETE, attachment_id, remote_url, metadata
                )
            else:
                entry = self._oplog.append(
                    OperationType.DELETE,
                    attachment_id,
                    attachment.remote_url or remote_url,
                    attachment.metadata,
                )
                if attachment.state != AttachmentState.QUEUED_DELETE:
                    self._store.update_attachment(
                        attachment_id,
                        {
                            "state": AttachmentState.QUEUED_DELETE,
                            "lease_owner": None,
                            "lease_expires_at": None,
                            "next_retry_at": None,
                            "updated_at": now,
                        },
                    )

        logger.info("Attachment %s queued for deletion (entry %s)", attachment_id, entry.id)
        return entry

    def confirm_deleted(self, attachment_id: str) -> bool:
        """Remove a QUEUED_DELETE row and its local file.

        Called once the DELETE entry has been applied remotely.

        Returns:
            True if a row was removed.
        """
        with self._store.transaction():
            attachment = self._store.get_attachment(attachment_id)
            if attachment is None or attachment.state != AttachmentState.QUEUED_DELETE:
                return False
            self._store.delete_attachment(attachment_id)

        if attachment.local_path:
            _remove_local_file(attachment.local_path)
        logger.info("Attachment %s removed", attachment_id)
        return True

    # === Manual recovery ===

    def retry_failed(self, attachment_id: str) -> Attachment:
        """Re-enqueue a FAILED attachment with a fresh retry budget.

        Raises:
            AttachmentNotFoundError: If the attachment does not exist.
            InvalidTransitionError: If it is not FAILED.
        """
        with self._store.transaction():
            attachment = self.require(attachment_id)
            if attachment.state != AttachmentState.FAILED:
                raise InvalidTransitionError(
                    f"Attachment {attachment_id} is {attachment.state.value}, not FAILED"
                )
            self._store.update_attachment(
                attachment_id,
                {
                    "state": AttachmentState.QUEUED_UPLOAD,
                    "retry_count": 0,
                    "next_retry_at": None,
                    "updated_at": self._clock(),
                },
                expected_state=AttachmentState.FAILED,
            )
            updated = self.require(attachment_id)

        logger.info("Attachment %s re-queued after failure", attachment_id)
        if self._on_enqueued:
            self._on_enqueued(attachment_id)
        return updated

    def retry_all_failed(self) -> list[str]:
        """Re-enqueue every FAILED attachment. Returns their ids."""
        return [
            self.retry_failed(attachment.id).id
            for attachment in self._store.list_attachments(AttachmentState.FAILED)
        ]

    # === Local cleanup ===

    def purge_delivered_files(self, retention_seconds: float = 0.0) -> int:
        """Delete local files of attachments whose ADD entry was delivered.

        The row stays (SYNCED, remote URL only) so the UI keeps showing it.
        A file is never removed before its ADD entry is confirmed remotely.

        Args:
            retention_seconds: Minimum time since delivery before purging.

        Returns:
            Number of files purged.
        """
        cutoff = self._clock() - retention_seconds
        purged = 0
        for attachment in self._store.select_purgeable(cutoff):
            with self._store.transaction():
                cleared = self._store.update_attachment(
                    attachment.id,
                    {"local_path": None, "updated_at": self._clock()},
                    expected_state=AttachmentState.SYNCED,
                )
            if cleared and attachment.local_path:
                _remove_local_file(attachment.local_path)
                purged += 1
        if purged:
            logger.info("Purged %d local file(s) after confirmed delivery", purged)
        return purged

    # === Queries ===

    def get(self, attachment_id: str) -> Attachment | None:
        """Get an attachment by id."""
        return self._store.get_attachment(attachment_id)

    def require(self, attachment_id: str) -> Attachment:
        """Get an attachment by id or raise AttachmentNotFoundError."""
        attachment = self._store.get_attachment(attachment_id)
        if attachment is None:
            raise AttachmentNotFoundError(f"Unknown attachment: {attachment_id}")
        return attachment

    def list(self, state: AttachmentState | None = None) -> list[Attachment]:
        """List attachments, optionally only those in ``state``."""
        return self._store.list_attachments(state)

    def counts(self) -> dict[AttachmentState, int]:
        """Number of attachments per state."""
        return self._store.count_by_state()


def _remove_local_file(local_path: str) -> None:
    """Delete a local file; a missing file is not an error."""
    try:
        os.remove(local_path)
    except FileNotFoundError:
        logger.debug("Local file already gone: %s", local_path)
    except OSError as e:
        logger.warning("Could not remove local file %s: %s", local_path, e)
