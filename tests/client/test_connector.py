"""Tests for operation log delivery."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from attachsync.client.sync.attachment_queue import AttachmentQueue
from attachsync.client.sync.connector import BackendConnector
from attachsync.client.sync.oplog import OperationLog
from attachsync.client.sync.retry import BackoffPolicy
from attachsync.client.sync.types import (
    AttachmentState,
    AuthorizationError,
    DeliveryStatus,
    OperationLogEntry,
    OperationType,
    PermanentValidationError,
    TransientNetworkError,
)
from attachsync.core.config import SyncConfig


def applied_all(entries: list[OperationLogEntry]) -> list[dict]:
    """Server response applying every entry."""
    return [{"id": e.id, "status": "applied"} for e in entries]


def rejecting(bad_attachment: str):
    """Server response rejecting entries of one attachment."""

    def respond(entries: list[OperationLogEntry]) -> list[dict]:
        return [
            {"id": e.id, "status": "rejected", "reason": "unknown photo"}
            if e.attachment_id == bad_attachment
            else {"id": e.id, "status": "applied"}
            for e in entries
        ]

    return respond


@pytest.fixture
def client() -> MagicMock:
    """HTTP client stub applying everything by default."""
    mock = MagicMock()
    mock.reconcile.side_effect = applied_all
    return mock


@pytest.fixture
def connector(oplog: OperationLog, client: MagicMock) -> BackendConnector:
    """Connector without a storage adapter and without jitter."""
    return BackendConnector(
        oplog,
        client,
        config=SyncConfig(connector_batch_size=10),
        backoff=BackoffPolicy(initial=5.0, maximum=60.0, jitter=0.0),
    )


class TestDeliverBatch:
    """Tests for deliver_batch()."""

    def test_empty_log(self, connector: BackendConnector, client: MagicMock) -> None:
        """Nothing is sent when nothing is pending."""
        report = connector.deliver_batch()
        assert len(report) == 0
        client.reconcile.assert_not_called()

    def test_all_applied(self, connector: BackendConnector, oplog: OperationLog) -> None:
        """Applied entries are stamped delivered."""
        entries = [oplog.append(OperationType.ADD, f"a{i}", f"https://cdn/{i}") for i in range(3)]
        report = connector.deliver_batch()

        assert report.ok
        assert [o.entry_id for o in report.applied] == [e.id for e in entries]
        assert all(oplog.get(e.id).is_delivered for e in entries)

    def test_middle_entry_rejected(
        self, connector: BackendConnector, oplog: OperationLog, client: MagicMock
    ) -> None:
        """One rejected entry does not hide the other outcomes."""
        client.reconcile.side_effect = rejecting("a1")
        entries = [oplog.append(OperationType.ADD, f"a{i}", f"https://cdn/{i}") for i in range(3)]

        report = connector.deliver_batch()

        assert not report.ok
        assert [o.entry_id for o in report.rejected] == [entries[1].id]
        assert report.rejected[0].reason == "unknown photo"
        assert oplog.get(entries[0].id).is_delivered
        assert oplog.get(entries[1].id).is_failed
        assert oplog.get(entries[2].id).is_delivered
        assert [e.id for e in oplog.list_failed()] == [entries[1].id]

    def test_batch_refusal_falls_back_to_single_entries(
        self, connector: BackendConnector, oplog: OperationLog, client: MagicMock
    ) -> None:
        """A 4xx for the whole batch is narrowed down to the bad entry."""
        entries = [oplog.append(OperationType.ADD, f"a{i}", f"https://cdn/{i}") for i in range(3)]

        def respond(batch: list[OperationLogEntry]) -> list[dict]:
            if any(e.attachment_id == "a1" for e in batch):
                raise PermanentValidationError("invalid entry", 422)
            return applied_all(batch)

        client.reconcile.side_effect = respond
        report = connector.deliver_batch()

        statuses = {o.entry_id: o.status for o in report.outcomes}
        assert statuses == {
            entries[0].id: DeliveryStatus.APPLIED,
            entries[1].id: DeliveryStatus.REJECTED,
            entries[2].id: DeliveryStatus.APPLIED,
        }
        assert client.reconcile.call_count == 4

    def test_transient_failure_reschedules(
        self, connector: BackendConnector, oplog: OperationLog, client: MagicMock, clock
    ) -> None:
        """A network error leaves entries pending with a retry time."""
        client.reconcile.side_effect = TransientNetworkError("503", 503)
        entry = oplog.append(OperationType.ADD, "a1", "https://cdn/1")

        report = connector.deliver_batch()

        assert [o.status for o in report.outcomes] == [DeliveryStatus.RETRY]
        updated = oplog.get(entry.id)
        assert not updated.is_delivered
        assert not updated.is_failed
        assert updated.attempts == 1
        assert updated.next_attempt_at == clock.now + 5.0
        assert connector.deliver_batch().outcomes == []

    def test_missing_result_is_retried(
        self, connector: BackendConnector, oplog: OperationLog, client: MagicMock
    ) -> None:
        """An entry absent from the response is not assumed delivered."""
        first = oplog.append(OperationType.ADD, "a1", "https://cdn/1")
        second = oplog.append(OperationType.ADD, "a2", "https://cdn/2")
        client.reconcile.side_effect = lambda batch: [{"id": first.id, "status": "applied"}]

        report = connector.deliver_batch()

        assert [o.entry_id for o in report.applied] == [first.id]
        assert [o.entry_id for o in report.retried] == [second.id]
        assert oplog.get(second.id).next_attempt_at is not None

    def test_authorization_error_propagates(
        self, connector: BackendConnector, oplog: OperationLog, client: MagicMock
    ) -> None:
        """Credential failures stop delivery and mark nothing."""
        client.reconcile.side_effect = AuthorizationError("expired", 401)
        entry = oplog.append(OperationType.ADD, "a1", "https://cdn/1")

        with pytest.raises(AuthorizationError):
            connector.deliver_batch()

        pending = oplog.get(entry.id)
        assert pending.attempts == 0
        assert pending.next_attempt_at is None


class TestOrdering:
    """Per-attachment ordering of ADD and DELETE."""

    def test_add_before_delete(
        self, connector: BackendConnector, oplog: OperationLog, client: MagicMock
    ) -> None:
        """The DELETE is sent in a later batch than its ADD."""
        add = oplog.append(OperationType.ADD, "a1", "https://cdn/1")
        delete = oplog.append(OperationType.DELETE, "a1", "https://cdn/1")

        report = connector.drain()

        sent = [[e.id for e in call.args[0]] for call in client.reconcile.call_args_list]
        assert sent == [[add.id], [delete.id]]
        assert [o.entry_id for o in report.applied] == [add.id, delete.id]

    def test_pending_add_blocks_delete(
        self, connector: BackendConnector, oplog: OperationLog, client: MagicMock
    ) -> None:
        """While the ADD keeps failing the DELETE is never sent."""
        client.reconcile.side_effect = TransientNetworkError("offline")
        add = oplog.append(OperationType.ADD, "a1", "https://cdn/1")
        delete = oplog.append(OperationType.DELETE, "a1", "https://cdn/1")

        report = connector.drain()

        assert [o.entry_id for o in report.outcomes] == [add.id]
        assert oplog.get(delete.id).attempts == 0


class TestDrain:
    """Tests for drain()."""

    def test_drains_multiple_batches(self, oplog: OperationLog, client: MagicMock) -> None:
        """Batches continue until the log is empty."""
        connector = BackendConnector(oplog, client, config=SyncConfig(connector_batch_size=2))
        for i in range(5):
            oplog.append(OperationType.ADD, f"a{i}", f"https://cdn/{i}")

        report = connector.drain()

        assert len(report.applied) == 5
        assert client.reconcile.call_count == 3
        assert oplog.undelivered_count() == 0

    def test_max_batches(self, oplog: OperationLog, client: MagicMock) -> None:
        """max_batches bounds the number of requests."""
        connector = BackendConnector(oplog, client, config=SyncConfig(connector_batch_size=2))
        for i in range(5):
            oplog.append(OperationType.ADD, f"a{i}", f"https://cdn/{i}")

        report = connector.drain(max_batches=1)
        assert len(report) == 2
        assert oplog.undelivered_count() == 3

    def test_callback_errors_do_not_stop_delivery(
        self, connector: BackendConnector, oplog: OperationLog
    ) -> None:
        """A failing on_delivered callback is logged, not raised."""
        connector.set_on_delivered(MagicMock(side_effect=RuntimeError("boom")))
        entry = oplog.append(OperationType.ADD, "a1", "https://cdn/1")
        report = connector.drain()
        assert report.ok
        assert oplog.get(entry.id).is_delivered


def synced_attachment(
    connector: BackendConnector, queue: AttachmentQueue, make_file
) -> tuple[str, Path]:
    """Upload an attachment to https://cdn/x.jpg and deliver its ADD entry."""
    path = make_file()
    attachment_id = queue.enqueue(path, "image/jpeg")
    queue.claim_next_batch(1, "w")
    queue.report_success(attachment_id, "https://cdn/x.jpg", "w")
    connector.drain()
    return attachment_id, path


class TestRemoteDelete:
    """Remote objects of deleted attachments are removed on their own schedule."""

    @pytest.fixture
    def adapter(self) -> MagicMock:
        return MagicMock()

    @pytest.fixture
    def deleting_connector(
        self, oplog: OperationLog, client: MagicMock, adapter: MagicMock
    ) -> BackendConnector:
        return BackendConnector(
            oplog,
            client,
            adapter,
            backoff=BackoffPolicy(initial=5.0, jitter=0.0),
        )

    @pytest.fixture
    def confirming_connector(
        self, deleting_connector: BackendConnector, queue: AttachmentQueue
    ) -> BackendConnector:
        """Connector removing QUEUED_DELETE rows once their entry is applied."""
        deleting_connector.set_on_delivered(
            lambda entry: entry.operation_type == OperationType.DELETE
            and queue.confirm_deleted(entry.attachment_id)
        )
        return deleting_connector

    def test_purged_attachment_delete_flow(
        self,
        deleting_connector: BackendConnector,
        queue: AttachmentQueue,
        oplog: OperationLog,
        adapter: MagicMock,
        make_file,
    ) -> None:
        """Synced, purged and then deleted: object removed and row gone."""
        deleting_connector.set_on_delivered(
            lambda entry: entry.operation_type == OperationType.DELETE
            and queue.confirm_deleted(entry.attachment_id)
        )
        attachment_id = queue.enqueue(make_file(), "image/jpeg")
        queue.claim_next_batch(1, "w")
        queue.report_success(attachment_id, "https://cdn/x.jpg", "w")
        deleting_connector.drain()
        queue.purge_delivered_files()
        assert queue.require(attachment_id).local_path is None

        entry = queue.delete(attachment_id)
        assert queue.require(attachment_id).state == AttachmentState.QUEUED_DELETE
        report = deleting_connector.drain()

        adapter.delete.assert_called_once_with("https://cdn/x.jpg", attachment_id)
        assert [o.entry_id for o in report.applied] == [entry.id]
        assert queue.get(attachment_id) is None

    def test_remote_delete_transient_failure(
        self,
        confirming_connector: BackendConnector,
        queue: AttachmentQueue,
        oplog: OperationLog,
        adapter: MagicMock,
        make_file,
        clock,
    ) -> None:
        """An unreachable store delays the object removal, not the local cleanup."""
        adapter.delete.side_effect = [TransientNetworkError("timeout"), None]
        attachment_id, path = synced_attachment(confirming_connector, queue, make_file)

        entry = queue.delete(attachment_id)
        report = confirming_connector.drain()

        assert [o.entry_id for o in report.applied] == [entry.id]
        assert queue.get(attachment_id) is None
        assert not path.exists()
        pending = oplog.get_remote_delete("https://cdn/x.jpg")
        assert pending.attempts == 1
        assert pending.completed_at is None
        assert pending.next_attempt_at == clock.now + 5.0
        assert oplog.pending_remote_delete_count() == 1

        confirming_connector.drain()
        assert adapter.delete.call_count == 1

        clock.advance(5)
        confirming_connector.drain()

        assert adapter.delete.call_count == 2
        assert oplog.get_remote_delete("https://cdn/x.jpg").completed_at is not None
        assert oplog.pending_remote_delete_count() == 0

    def test_remote_delete_refused(
        self,
        confirming_connector: BackendConnector,
        queue: AttachmentQueue,
        oplog: OperationLog,
        adapter: MagicMock,
        make_file,
        clock,
    ) -> None:
        """A refused object removal is recorded once and the row still goes away."""
        adapter.delete.side_effect = PermanentValidationError("forbidden path", 400)
        attachment_id, path = synced_attachment(confirming_connector, queue, make_file)

        entry = queue.delete(attachment_id)
        report = confirming_connector.drain()

        assert report.ok
        assert oplog.get(entry.id).is_delivered
        assert queue.get(attachment_id) is None
        assert not path.exists()
        refused = oplog.get_remote_delete("https://cdn/x.jpg")
        assert refused.failed_at is not None
        assert "forbidden path" in refused.last_error
        assert oplog.pending_remote_delete_count() == 0

        clock.advance(3600)
        confirming_connector.drain()
        adapter.delete.assert_called_once()

    def test_remote_delete_retried_while_server_offline(
        self,
        confirming_connector: BackendConnector,
        queue: AttachmentQueue,
        oplog: OperationLog,
        client: MagicMock,
        adapter: MagicMock,
        make_file,
    ) -> None:
        """The object is removed even while the DELETE entry cannot be delivered."""
        attachment_id, _ = synced_attachment(confirming_connector, queue, make_file)
        client.reconcile.side_effect = TransientNetworkError("offline")

        entry = queue.delete(attachment_id)
        report = confirming_connector.drain()

        assert [o.entry_id for o in report.retried] == [entry.id]
        adapter.delete.assert_called_once_with("https://cdn/x.jpg", attachment_id)
        assert oplog.pending_remote_delete_count() == 0
        assert queue.require(attachment_id).state == AttachmentState.QUEUED_DELETE

    def test_remote_delete_recorded_once(self, oplog: OperationLog) -> None:
        """A repeated DELETE append does not schedule a second removal."""
        oplog.append(OperationType.DELETE, "a1", "https://cdn/1")
        oplog.append(OperationType.DELETE, "a1", "https://cdn/1")
        assert oplog.pending_remote_delete_count() == 1

    def test_remote_delete_authorization_error_propagates(
        self,
        deleting_connector: BackendConnector,
        oplog: OperationLog,
        adapter: MagicMock,
    ) -> None:
        """Refused credentials leave the remote delete pending."""
        adapter.delete.side_effect = AuthorizationError("expired", 401)
        oplog.append(OperationType.DELETE, "a1", "https://cdn/1")

        with pytest.raises(AuthorizationError):
            deleting_connector.delete_remote_objects()

        pending = oplog.get_remote_delete("https://cdn/1")
        assert pending.attempts == 0
        assert oplog.pending_remote_delete_count() == 1

    def test_delete_without_remote_url_skips_adapter(
        self,
        deleting_connector: BackendConnector,
        oplog: OperationLog,
        adapter: MagicMock,
    ) -> None:
        """Attachments that never uploaded are only reconciled."""
        oplog.append(OperationType.DELETE, "a1", None)
        report = deleting_connector.deliver_batch()
        adapter.delete.assert_not_called()
        assert report.ok
