"""Upload worker for leased attachments.

This module provides:
- UploadOutcome: what happened to one claimed attachment
- UploadWorker: drives the storage adapter for one attachment and reports
  the result back to the queue
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from attachsync.client.sync.types import (
    AttachmentState,
    AuthorizationError,
    LeaseLostError,
)
from attachsync.client.sync.workers.base import (
    BaseWorker,
    CancelledException,
    WorkerContext,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from attachsync.client.storage import StorageAdapter
    from attachsync.client.sync.attachment_queue import AttachmentQueue
    from attachsync.client.sync.types import Attachment

logger = logging.getLogger(__name__)


class UploadOutcome(str, Enum):
    """Result of processing one claimed attachment."""

    SYNCED = "synced"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    RELEASED = "released"
    UNAUTHORIZED = "unauthorized"
    DISCARDED = "discarded"


class UploadWorker(BaseWorker):
    """Worker uploading attachments leased to ``owner``.

    The transfer is cancelled between steps when the pool stops or when the
    lease is lost (typically because the user deleted the attachment). An
    object that reached remote storage after its lease was lost is deleted
    again so nothing is left orphaned.

    Usage:
        worker = UploadWorker(queue, adapter, owner="worker-0")
        for attachment in queue.claim_next_batch(2, "worker-0"):
            outcome = worker.process(attachment)
    """

    def __init__(
        self,
        queue: AttachmentQueue,
        adapter: StorageAdapter,
        owner: str,
    ) -> None:
        """Initialize the upload worker.

        Args:
            queue: Queue that leased the attachments.
            adapter: Storage adapter performing the transfer.
            owner: Lease owner name used for claims and reports.
        """
        super().__init__()
        self._queue = queue
        self._adapter = adapter
        self._owner = owner

    @property
    def worker_type(self) -> str:
        """Return worker type name."""
        return "upload"

    @property
    def owner(self) -> str:
        """Lease owner name."""
        return self._owner

    def _do_work(self, ctx: WorkerContext) -> str:
        """Obtain a target and transfer the file.

        Returns:
            The remote URL of the uploaded object.

        Raises:
            CancelledException: If cancelled before the transfer started.
            FileNotFoundError: If the local file is gone.
        """
        attachment = ctx.attachment
        path = attachment.require_local_file()

        target = self._adapter.request_upload_target(attachment)
        if ctx.cancel_check():
            raise CancelledException(f"Upload of {attachment.id} cancelled")

        return self._adapter.transfer(path, target)

    def process(
        self,
        attachment: Attachment,
        stop_check: Callable[[], bool] | None = None,
    ) -> UploadOutcome:
        """Upload one leased attachment and record the outcome.

        Args:
            attachment: Attachment claimed by this worker's owner.
            stop_check: Returns True when the pool is shutting down.

        Returns:
            The resulting UploadOutcome.
        """
        attachment_id = attachment.id

        def cancel_check() -> bool:
            if stop_check is not None and stop_check():
                return True
            return not self._queue.holds_lease(attachment_id, self._owner)

        result = self.execute(attachment, cancel_check=cancel_check)

        # A transfer that completed is kept if the lease survived, even when
        # a stop was requested meanwhile
        if result.success or (result.cancelled and result.result):
            try:
                self._queue.report_success(attachment_id, result.result, self._owner)
            except LeaseLostError as e:
                logger.warning("Discarding upload of %s: %s", attachment_id, e)
                if self._is_orphaned(attachment_id, result.result):
                    self._discard_remote(attachment_id, result.result)
                return UploadOutcome.DISCARDED
            return UploadOutcome.SYNCED

        if result.cancelled:
            if self._queue.release(attachment_id, self._owner):
                return UploadOutcome.RELEASED
            return UploadOutcome.DISCARDED

        error = result.error
        assert error is not None
        if isinstance(error, AuthorizationError):
            self._queue.release(attachment_id, self._owner, error)
            return UploadOutcome.UNAUTHORIZED

        try:
            updated = self._queue.report_failure(attachment_id, error, self._owner)
        except LeaseLostError as e:
            logger.info("Failure of %s not recorded: %s", attachment_id, e)
            return UploadOutcome.DISCARDED

        if updated.state == AttachmentState.FAILED:
            return UploadOutcome.FAILED
        return UploadOutcome.RETRY_SCHEDULED

    def _is_orphaned(self, attachment_id: str, remote_url: str) -> bool:
        """Check whether an upload that lost its lease is referenced elsewhere.

        The object is kept when the row already points at it (another worker
        re-claimed the attachment and stored the same object) or when the row
        went back to the upload queue, since the next attempt may write to the
        same destination.
        """
        current = self._queue.get(attachment_id)
        if current is None:
            return True
        if current.remote_url == remote_url:
            return False
        return current.state in (AttachmentState.QUEUED_DELETE, AttachmentState.SYNCED)

    def _discard_remote(self, attachment_id: str, remote_url: str) -> None:
        """Best-effort removal of an object nobody will reference."""
        try:
            self._adapter.delete(remote_url, attachment_id)
            logger.info("Removed orphaned upload %s of %s", remote_url, attachment_id)
        except Exception as e:
            logger.warning("Could not remove orphaned upload %s: %s", remote_url, e)
