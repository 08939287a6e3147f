"""Sync service composing the attachment sync engine.

This module provides:
- SyncStatus: snapshot for progress display
- SyncService: explicitly constructed engine with start/stop lifecycle

Nothing here is global. The capture layer builds one SyncService with its
store, storage adapter and HTTP client, and passes it to whoever needs it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from attachsync.client.media import prepare_image
from attachsync.client.sync.attachment_queue import AttachmentQueue
from attachsync.client.sync.connector import BackendConnector
from attachsync.client.sync.network import NetworkMonitor
from attachsync.client.sync.oplog import OperationLog
from attachsync.client.sync.scheduler import SyncScheduler
from attachsync.client.sync.types import (
    AttachmentState,
    AuthorizationError,
    DeliveryReport,
    OperationLogEntry,
    OperationType,
    SyncError,
)
from attachsync.client.sync.workers import UploadWorkerPool
from attachsync.core.config import SyncConfig

if TYPE_CHECKING:
    from collections.abc import Callable

    from attachsync.client.api import HTTPClient
    from attachsync.client.storage import StorageAdapter
    from attachsync.client.store import LocalStore

logger = logging.getLogger(__name__)


@dataclass
class SyncStatus:
    """Snapshot of the sync engine for display.

    Attributes:
        counts: Number of attachments per state.
        undelivered: Operation log entries awaiting delivery.
        rejected: Operation log entries terminally rejected.
        pending_remote_deletes: Remote objects still to be removed.
        online: Last known connectivity.
        paused: True while waiting for credentials to be refreshed.
        running: True between start() and stop().
    """

    counts: dict[AttachmentState, int] = field(default_factory=dict)
    undelivered: int = 0
    rejected: int = 0
    pending_remote_deletes: int = 0
    online: bool = False
    paused: bool = False
    running: bool = False

    @property
    def pending_uploads(self) -> int:
        """Attachments not yet uploaded (queued or in flight)."""
        return self.counts.get(AttachmentState.QUEUED_UPLOAD, 0) + self.counts.get(
            AttachmentState.UPLOADING, 0
        )

    @property
    def failed(self) -> int:
        """Attachments that need manual intervention."""
        return self.counts.get(AttachmentState.FAILED, 0)


class SyncService:
    """Offline attachment sync engine.

    Usage:
        service = SyncService(store, adapter, client, SyncConfig())
        service.start()
        attachment_id = service.capture("/tmp/IMG_0001.jpg", role="before",
                                        metadata={"scheduleId": "..."})
        ...
        service.stop()

    Triggers:
    - ``trigger()`` after enqueue and on demand
    - ``notify_foreground()`` when the app comes to the foreground
    - ``notify_network_available()`` from the network monitor
    - the scheduler's periodic tick
    """

    def __init__(
        self,
        store: LocalStore,
        adapter: StorageAdapter,
        client: HTTPClient,
        config: SyncConfig | None = None,
        media_dir: Path | str | None = None,
        on_auth_error: Callable[[AuthorizationError], None] | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            store: Durable store for attachments and the operation log.
            adapter: Storage adapter used for uploads and remote deletes.
            client: HTTP client for reconciliation and health checks.
            config: Sync policy.
            media_dir: Where captured media is prepared; defaults to a
                ``media`` directory beside the database.
            on_auth_error: Called when the server refuses our credentials.
        """
        self._config = config or SyncConfig()
        self._store = store
        self._media_dir = Path(media_dir) if media_dir else store.path.parent / "media"
        self._on_auth_error = on_auth_error
        self._auth_error: AuthorizationError | None = None

        self.oplog = OperationLog(store)
        self.queue = AttachmentQueue(store, self.oplog, self._config)
        self.queue.set_on_enqueued(lambda _attachment_id: self.trigger())

        self.connector = BackendConnector(self.oplog, client, adapter, self._config)
        self.connector.set_on_delivered(self._on_delivered)

        self.pool = UploadWorkerPool(
            self.queue,
            adapter,
            self._config,
            on_auth_error=self._handle_auth_error,
        )
        self.network = NetworkMonitor(
            client,
            on_available=self.notify_network_available,
            check_interval=self._config.network_check_interval,
        )
        self.scheduler = SyncScheduler(self.queue, self.oplog, self.trigger, self._config)

        self._running = False
        self._stop_event = threading.Event()
        self._delivery_requested = threading.Event()
        self._delivery_thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        """True between start() and stop()."""
        return self._running

    # === Lifecycle ===

    def start(self) -> None:
        """Recover interrupted uploads and start every background component."""
        if self._running:
            return
        self.queue.recover_expired_leases()

        self._stop_event.clear()
        self.pool.start()
        self._delivery_thread = threading.Thread(
            target=self._delivery_loop,
            name="LogDelivery",
            daemon=True,
        )
        self._delivery_thread.start()
        self.network.start()
        self.scheduler.start()
        self._running = True
        logger.info("Sync service started")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop background components in reverse order."""
        if not self._running:
            return
        self.scheduler.stop()
        self.network.stop()
        self._stop_event.set()
        self._delivery_requested.set()
        if self._delivery_thread is not None:
            self._delivery_thread.join(timeout=timeout)
            self._delivery_thread = None
        self.pool.stop(timeout=timeout)
        self._running = False
        logger.info("Sync service stopped")

    def __enter__(self) -> SyncService:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()

    # === Triggers ===

    def trigger(self) -> None:
        """Wake the upload workers and the log delivery."""
        self.pool.trigger()
        self._delivery_requested.set()

    def notify_foreground(self) -> None:
        """The app came to the foreground."""
        logger.debug("Foreground trigger")
        self.trigger()

    def notify_network_available(self) -> None:
        """Connectivity was restored."""
        logger.debug("Network trigger")
        self.trigger()

    def resume(self) -> None:
        """Continue after credentials were refreshed."""
        self._auth_error = None
        self.pool.resume()
        self._delivery_requested.set()

    # === Capture layer API ===

    def capture(
        self,
        source: Path | str,
        role: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Prepare a captured image and queue it for upload.

        Args:
            source: Original capture.
            role: before/after/signature; stored in the metadata.
            metadata: Ids linking the attachment to its owner record.

        Returns:
            The attachment id.
        """
        prepared = prepare_image(source, self._media_dir, role=role)
        attachment_metadata = dict(metadata or {})
        if role:
            attachment_metadata["role"] = role
        return self.queue.enqueue(
            prepared.path,
            prepared.media_type,
            prepared.size_bytes,
            attachment_metadata,
            attachment_id=prepared.attachment_id,
        )

    def delete(
        self,
        attachment_id: str,
        remote_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> OperationLogEntry:
        """Record a user-initiated delete and schedule its delivery."""
        entry = self.queue.delete(attachment_id, remote_url, metadata)
        self._delivery_requested.set()
        return entry

    def status(self) -> SyncStatus:
        """Snapshot for progress display."""
        return SyncStatus(
            counts=self.queue.counts(),
            undelivered=self.oplog.undelivered_count(),
            rejected=len(self.oplog.list_failed()),
            pending_remote_deletes=self.oplog.pending_remote_delete_count(),
            online=self.network.is_online,
            paused=self._auth_error is not None or self.pool.is_paused,
            running=self._running,
        )

    # === Synchronous passes ===

    def deliver(self) -> DeliveryReport:
        """Drain the operation log once.

        Authorization failures pause delivery until resume().
        """
        try:
            return self.connector.drain()
        except AuthorizationError as e:
            self._handle_auth_error(e)
        except SyncError as e:
            logger.error("Log delivery failed: %s", e)
        return DeliveryReport()

    def sync_once(self) -> tuple[dict[str, int], DeliveryReport]:
        """Run one upload pass and one delivery pass in the calling thread.

        Returns:
            Upload outcome counts and the delivery report.
        """
        self.queue.recover_expired_leases()
        uploads = self.pool.run_once()
        report = self.deliver()
        self.queue.purge_delivered_files(self._config.local_retention_seconds)
        return uploads, report

    # === Internals ===

    def _delivery_loop(self) -> None:
        while not self._stop_event.is_set():
            self._delivery_requested.wait(timeout=self._config.poll_interval)
            self._delivery_requested.clear()
            if self._stop_event.is_set():
                break
            if self._auth_error is not None:
                continue
            try:
                self.deliver()
            except Exception:
                logger.exception("Unexpected error in log delivery")

    def _on_delivered(self, entry: OperationLogEntry) -> None:
        if entry.operation_type == OperationType.DELETE:
            self.queue.confirm_deleted(entry.attachment_id)

    def _handle_auth_error(self, error: AuthorizationError) -> None:
        first = self._auth_error is None
        self._auth_error = error
        if first:
            logger.error("Server refused credentials, sync paused: %s", error)
            if self._on_auth_error:
                self._on_auth_error(error)
