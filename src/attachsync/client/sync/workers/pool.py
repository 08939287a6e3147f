"""Worker pool for concurrent attachment uploads.

This module provides:
- PoolState: lifecycle state of the pool
- UploadWorkerPool: fixed set of threads claiming and uploading attachments

Workers never share rows: each thread claims its own batch through
``AttachmentQueue.claim_next_batch``, which leases rows transactionally.
Idle threads sleep until ``trigger()`` is called, the poll interval passes,
or the earliest scheduled retry becomes due.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import Counter
from collections.abc import Callable, Iterator
from enum import Enum, auto
from typing import TYPE_CHECKING

from attachsync.client.sync.types import AuthorizationError, SyncError
from attachsync.client.sync.workers.upload_worker import UploadOutcome, UploadWorker
from attachsync.core.config import SyncConfig

if TYPE_CHECKING:
    from attachsync.client.storage import StorageAdapter
    from attachsync.client.sync.attachment_queue import AttachmentQueue
    from attachsync.client.sync.types import Attachment

logger = logging.getLogger(__name__)

# Shortest sleep while waiting for a scheduled retry
MIN_IDLE_WAIT = 0.05


class PoolState(Enum):
    """State of the worker pool."""

    STOPPED = auto()
    RUNNING = auto()
    STOPPING = auto()


class UploadWorkerPool:
    """Pool of upload threads draining the attachment queue.

    Usage:
        pool = UploadWorkerPool(queue, adapter, SyncConfig(worker_count=3))
        pool.start()
        queue.enqueue(...)
        pool.trigger()
        ...
        pool.stop()

    When an upload is refused with AuthorizationError, the pool pauses (no
    new claims) and calls ``on_auth_error``; ``resume()`` continues once
    credentials were refreshed.
    """

    def __init__(
        self,
        queue: AttachmentQueue,
        adapter: StorageAdapter,
        config: SyncConfig | None = None,
        on_auth_error: Callable[[AuthorizationError], None] | None = None,
        owner_prefix: str | None = None,
    ) -> None:
        """Initialize the worker pool.

        Args:
            queue: Attachment queue to claim from.
            adapter: Storage adapter used by every worker.
            config: Worker count, batch size and poll interval.
            on_auth_error: Called when uploads are refused for credentials.
            owner_prefix: Lease owner prefix; defaults to one per process.
        """
        self._queue = queue
        self._adapter = adapter
        self._config = config or SyncConfig()
        self._on_auth_error = on_auth_error
        self._owner_prefix = owner_prefix or f"uploader-{os.getpid()}"

        self._pool_state = PoolState.STOPPED
        self._lock = threading.Lock()
        self._work_available = threading.Condition()
        self._paused = threading.Event()
        self._workers: list[threading.Thread] = []

        # Statistics
        self._outcomes: Counter[UploadOutcome] = Counter()
        self._active: set[str] = set()

    @property
    def state(self) -> PoolState:
        """Get current pool state."""
        return self._pool_state

    @property
    def is_paused(self) -> bool:
        """True while uploads are held back after an authorization error."""
        return self._paused.is_set()

    @property
    def active_count(self) -> int:
        """Number of attachments currently being uploaded."""
        with self._lock:
            return len(self._active)

    def stats(self) -> dict[str, int]:
        """Outcome counters since the pool was created."""
        with self._lock:
            return {outcome.value: self._outcomes[outcome] for outcome in UploadOutcome}

    # === Lifecycle ===

    def start(self) -> None:
        """Start the worker threads."""
        with self._lock:
            if self._pool_state != PoolState.STOPPED:
                logger.warning("Upload pool already running")
                return

            self._pool_state = PoolState.RUNNING
            for i in range(self._config.worker_count):
                thread = threading.Thread(
                    target=self._worker_loop,
                    args=(f"{self._owner_prefix}-{i}",),
                    name=f"UploadPool-{i}",
                    daemon=True,
                )
                thread.start()
                self._workers.append(thread)

        logger.info("Upload pool started with %d workers", self._config.worker_count)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the pool.

        In-flight uploads are cancelled at their next checkpoint and claimed
        attachments not yet processed are released back to the queue.

        Args:
            timeout: Maximum time to wait for workers to finish.
        """
        with self._lock:
            if self._pool_state == PoolState.STOPPED:
                return
            self._pool_state = PoolState.STOPPING
            workers = list(self._workers)
        logger.info("Upload pool stopping...")

        self._wake_all()
        for worker in workers:
            worker.join(timeout=timeout / len(workers))

        with self._lock:
            self._pool_state = PoolState.STOPPED
            self._workers.clear()
        logger.info("Upload pool stopped")

    def trigger(self) -> None:
        """Wake idle workers to look for claimable attachments."""
        self._wake_all()

    def resume(self) -> None:
        """Lift an authorization pause and wake the workers."""
        if self._paused.is_set():
            self._paused.clear()
            logger.info("Upload pool resumed")
        self._wake_all()

    def _wake_all(self) -> None:
        with self._work_available:
            self._work_available.notify_all()

    def _stopping(self) -> bool:
        return self._pool_state != PoolState.RUNNING

    # === Work ===

    def run_once(self, owner: str | None = None) -> dict[str, int]:
        """Upload everything claimable now, in the calling thread.

        Stops early when uploads are refused for credentials.

        Returns:
            Outcome counts of this pass.
        """
        owner = owner or f"{self._owner_prefix}-once"
        worker = UploadWorker(self._queue, self._adapter, owner)
        counts: Counter[UploadOutcome] = Counter()
        while not self._paused.is_set():
            batch = self._queue.claim_next_batch(self._config.claim_batch_size, owner)
            if not batch:
                break
            for outcome in self._process_batch(worker, batch, stop_check=self._paused.is_set):
                counts[outcome] += 1
        return {outcome.value: counts[outcome] for outcome in UploadOutcome}

    def _worker_loop(self, owner: str) -> None:
        """Main loop for worker threads."""
        worker = UploadWorker(self._queue, self._adapter, owner)
        while not self._stopping():
            try:
                if self._paused.is_set():
                    self._idle(self._config.poll_interval)
                    continue

                batch = self._queue.claim_next_batch(self._config.claim_batch_size, owner)
                if not batch:
                    self._idle(self._idle_timeout())
                    continue

                for _ in self._process_batch(worker, batch, stop_check=self._stopping):
                    pass
            except SyncError as e:
                logger.error("%s: %s", owner, e)
                self._idle(self._config.poll_interval)
            except Exception:
                logger.exception("Unexpected error in upload worker %s", owner)
                self._idle(self._config.poll_interval)

    def _process_batch(
        self,
        worker: UploadWorker,
        batch: list[Attachment],
        stop_check: Callable[[], bool],
    ) -> Iterator[UploadOutcome]:
        """Upload a claimed batch sequentially, yielding each outcome.

        Attachments left over when stopping or pausing are released.
        """
        for index, attachment in enumerate(batch):
            if stop_check() or self._paused.is_set():
                for leftover in batch[index:]:
                    self._queue.release(leftover.id, worker.owner)
                return

            with self._lock:
                self._active.add(attachment.id)
            try:
                outcome = worker.process(attachment, stop_check=stop_check)
            finally:
                with self._lock:
                    self._active.discard(attachment.id)

            with self._lock:
                self._outcomes[outcome] += 1
            if outcome == UploadOutcome.UNAUTHORIZED:
                self._pause(attachment.id)
            yield outcome

    def _pause(self, attachment_id: str) -> None:
        """Hold back uploads until resume() is called."""
        if self._paused.is_set():
            return
        self._paused.set()
        logger.error("Upload of %s not authorized; pausing uploads", attachment_id)
        if self._on_auth_error:
            attachment = self._queue.get(attachment_id)
            message = attachment.last_error if attachment and attachment.last_error else ""
            self._on_auth_error(AuthorizationError(message or "Upload not authorized"))

    def _idle_timeout(self) -> float:
        """Sleep until the next scheduled retry, bounded by the poll interval."""
        timeout = self._config.poll_interval
        next_retry = self._queue.next_retry_at()
        if next_retry is not None:
            timeout = min(timeout, max(MIN_IDLE_WAIT, next_retry - time.time()))
        return timeout

    def _idle(self, timeout: float) -> None:
        with self._work_available:
            if not self._stopping():
                self._work_available.wait(timeout=timeout)
