"""Delivery of the operation log to the reconciliation endpoint.

This module provides:
- BackendConnector: drains undelivered log entries in per-attachment order

Only the oldest pending entry of each attachment is sent in a batch, so a
DELETE is never delivered while the ADD before it is still pending. Every
entry gets its own DeliveryOutcome; a batch is never reported as a whole.

Remote objects of deleted attachments are removed in a separate pass with
their own retry schedule. A DELETE entry is reconciled without waiting for
that, so local cleanup never depends on the storage side.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from attachsync.client.sync.retry import BackoffPolicy
from attachsync.client.sync.types import (
    AuthorizationError,
    DeliveryOutcome,
    DeliveryReport,
    DeliveryStatus,
    OperationLogEntry,
    PermanentValidationError,
    TransientNetworkError,
)
from attachsync.core.config import SyncConfig

if TYPE_CHECKING:
    from attachsync.client.api import HTTPClient
    from attachsync.client.storage import StorageAdapter
    from attachsync.client.sync.oplog import OperationLog

logger = logging.getLogger(__name__)


class BackendConnector:
    """Sends operation log entries to the server and records the outcome.

    Usage:
        connector = BackendConnector(oplog, client, adapter, config)
        report = connector.drain()
        for outcome in report.rejected:
            notify_user(outcome.attachment_id, outcome.reason)

    Raises AuthorizationError out of ``deliver_batch``/``drain``: delivery
    stops until credentials are refreshed, nothing is marked.
    """

    def __init__(
        self,
        oplog: OperationLog,
        client: HTTPClient,
        adapter: StorageAdapter | None = None,
        config: SyncConfig | None = None,
        backoff: BackoffPolicy | None = None,
    ) -> None:
        """Initialize the connector.

        Args:
            oplog: Operation log to drain.
            client: HTTP client for the reconciliation endpoint.
            adapter: Storage adapter used to remove the remote objects of
                deleted attachments. Without it, remote objects are left to
                the server.
            config: Batch size and delivery backoff bounds.
            backoff: Delay policy for transient failures.
        """
        self._oplog = oplog
        self._client = client
        self._adapter = adapter
        self._config = config or SyncConfig()
        self._backoff = backoff or BackoffPolicy.for_delivery(self._config)
        self._on_delivered: Callable[[OperationLogEntry], None] | None = None

    def set_on_delivered(self, callback: Callable[[OperationLogEntry], None]) -> None:
        """Set callback invoked after an entry is applied remotely."""
        self._on_delivered = callback

    def drain(self, max_batches: int | None = None) -> DeliveryReport:
        """Deliver batches until nothing eligible is left.

        Stops early when a batch makes no progress (every entry was
        rescheduled), so an unreachable server does not cause a busy loop.
        Due remote deletes are attempted afterwards.

        Args:
            max_batches: Upper bound on the number of batches sent.

        Returns:
            Outcomes of every entry attempted.
        """
        report = DeliveryReport()
        batches = 0
        while max_batches is None or batches < max_batches:
            batch = self.deliver_batch()
            batches += 1
            report.extend(batch)
            if not batch.applied and not batch.rejected:
                break

        self.delete_remote_objects()

        if report:
            logger.info(
                "Delivery finished: %d applied, %d rejected, %d to retry",
                len(report.applied),
                len(report.rejected),
                len(report.retried),
            )
        return report

    def deliver_batch(self) -> DeliveryReport:
        """Deliver one batch of pending heads.

        Returns:
            One outcome per entry in the batch.

        Raises:
            AuthorizationError: If the server refuses our credentials.
        """
        heads = self._oplog.pending_heads(self._config.connector_batch_size)
        if not heads:
            return DeliveryReport()
        return self._reconcile(heads)

    def delete_remote_objects(self) -> dict[str, int]:
        """Attempt one batch of due remote deletes.

        Failures only affect the remote delete itself: a refused delete is
        recorded and dropped, a transient one is retried with the delivery
        backoff. Without a storage adapter nothing is attempted.

        Returns:
            Counts of deleted, retried and refused objects.

        Raises:
            AuthorizationError: If the storage side refuses our credentials.
        """
        counts = {"deleted": 0, "retry": 0, "refused": 0}
        if self._adapter is None:
            return counts

        for remote_delete in self._oplog.due_remote_deletes(self._config.connector_batch_size):
            try:
                self._adapter.delete(remote_delete.remote_url, remote_delete.attachment_id)
            except AuthorizationError:
                raise
            except PermanentValidationError as e:
                self._oplog.mark_remote_delete_failed(remote_delete, str(e))
                counts["refused"] += 1
            except (TransientNetworkError, OSError) as e:
                self._oplog.schedule_remote_delete_retry(remote_delete, self._backoff, str(e))
                counts["retry"] += 1
            else:
                self._oplog.mark_remote_deleted(remote_delete)
                counts["deleted"] += 1
        return counts

    def _reconcile(self, entries: list[OperationLogEntry]) -> DeliveryReport:
        report = DeliveryReport()
        try:
            results = self._client.reconcile(entries)
        except AuthorizationError:
            raise
        except TransientNetworkError as e:
            for entry in entries:
                report.add(self._retry(entry, str(e)))
            return report
        except PermanentValidationError as e:
            if len(entries) == 1:
                report.add(self._rejected(entries[0], str(e)))
                return report
            # Whole batch refused: send entries one by one to find the bad one
            logger.warning("Batch of %d refused (%s), delivering individually", len(entries), e)
            for entry in entries:
                report.extend(self._reconcile([entry]))
            return report

        by_id = {str(result.get("id")): result for result in results}
        for entry in entries:
            result = by_id.get(entry.id)
            if result is None:
                report.add(self._retry(entry, "Missing from reconciliation response"))
                continue
            status = str(result.get("status", "")).lower()
            reason = result.get("reason")
            if status == DeliveryStatus.APPLIED.value:
                report.add(self._applied(entry))
            elif status == DeliveryStatus.REJECTED.value:
                report.add(self._rejected(entry, reason or "Rejected by server"))
            else:
                report.add(self._retry(entry, reason or f"Unexpected status {status!r}"))
        return report

    # === Outcome recording ===

    def _applied(self, entry: OperationLogEntry) -> DeliveryOutcome:
        self._oplog.mark_delivered(entry.id)
        if self._on_delivered:
            try:
                self._on_delivered(entry)
            except Exception:
                logger.exception("on_delivered callback failed for entry %s", entry.id)
        return DeliveryOutcome(
            entry_id=entry.id,
            attachment_id=entry.attachment_id,
            operation_type=entry.operation_type,
            status=DeliveryStatus.APPLIED,
        )

    def _rejected(self, entry: OperationLogEntry, reason: str) -> DeliveryOutcome:
        self._oplog.mark_failed(entry.id, reason)
        return DeliveryOutcome(
            entry_id=entry.id,
            attachment_id=entry.attachment_id,
            operation_type=entry.operation_type,
            status=DeliveryStatus.REJECTED,
            reason=reason,
        )

    def _retry(self, entry: OperationLogEntry, reason: str) -> DeliveryOutcome:
        self._oplog.schedule_retry(entry.id, self._backoff, reason)
        return DeliveryOutcome(
            entry_id=entry.id,
            attachment_id=entry.attachment_id,
            operation_type=entry.operation_type,
            status=DeliveryStatus.RETRY,
            reason=reason,
        )
