"""Scheduler for periodic sync triggers and maintenance tasks.

This module provides:
- Periodic sync trigger (upload wake-up + log delivery)
- Expired lease recovery
- Local file cleanup after confirmed delivery
- Daily operation log archival
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from attachsync.core.config import SyncConfig

if TYPE_CHECKING:
    from attachsync.client.sync.attachment_queue import AttachmentQueue
    from attachsync.client.sync.oplog import OperationLog

logger = logging.getLogger(__name__)

# Cleanup and lease recovery run at this multiple of the poll interval
MAINTENANCE_FACTOR = 4


class SyncScheduler:
    """Background jobs keeping the sync engine moving.

    Runs:
    - ``on_tick`` every ``poll_interval`` seconds
    - lease recovery and local cleanup every few poll intervals
    - operation log archival once a day
    """

    def __init__(
        self,
        queue: AttachmentQueue,
        oplog: OperationLog,
        on_tick: Callable[[], None],
        config: SyncConfig | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            queue: Attachment queue for lease recovery and cleanup.
            oplog: Operation log for archival.
            on_tick: Periodic trigger (wake workers, drain the log).
            config: Intervals and retention settings.
        """
        self._queue = queue
        self._oplog = oplog
        self._on_tick = on_tick
        self._config = config or SyncConfig()
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        """Check whether the scheduler is started."""
        return self._scheduler is not None

    def _tick_job(self) -> None:
        """Job function for the periodic trigger."""
        try:
            self._on_tick()
        except Exception:
            logger.exception("Error during periodic sync trigger")

    def _maintenance_job(self) -> None:
        """Job function for lease recovery and local cleanup."""
        try:
            self._queue.recover_expired_leases()
            self._queue.purge_delivered_files(self._config.local_retention_seconds)
        except Exception:
            logger.exception("Error during scheduled maintenance")

    def _archive_job(self) -> None:
        """Job function for operation log archival."""
        logger.info(
            "Starting scheduled log archival (retention: %d days)",
            self._config.archive_after_days,
        )
        try:
            self._oplog.archive_delivered(self._config.archive_after_days)
        except Exception:
            logger.exception("Error during scheduled log archival")

    def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler is not None:
            return  # Already running

        poll = self._config.poll_interval
        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._tick_job,
            trigger=IntervalTrigger(seconds=poll),
            id="sync_tick",
            name="Periodic sync trigger",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._maintenance_job,
            trigger=IntervalTrigger(seconds=poll * MAINTENANCE_FACTOR),
            id="maintenance",
            name="Lease recovery and local cleanup",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._archive_job,
            trigger=IntervalTrigger(days=1),
            id="log_archive",
            name="Daily operation log archival",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Sync scheduler started (tick every %.0fs)", poll)

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Sync scheduler stopped")

    def run_maintenance_now(self) -> None:
        """Run lease recovery, cleanup and archival immediately."""
        self._maintenance_job()
        self._archive_job()
