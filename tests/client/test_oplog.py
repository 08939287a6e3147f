"""Tests for the append-only operation log."""

import pytest

from attachsync.client.sync.oplog import SECONDS_PER_DAY, OperationLog
from attachsync.client.sync.retry import BackoffPolicy
from attachsync.client.sync.types import OperationType


class TestAppend:
    """Tests for append()."""

    def test_append_assigns_id_and_seq(self, oplog: OperationLog, clock) -> None:
        """A new entry gets an object id, a sequence number and the clock time."""
        entry = oplog.append(OperationType.ADD, "a1", "https://cdn/a1.jpg", {"photoId": "p1"})

        assert len(entry.id) == 24
        assert entry.seq >= 1
        assert entry.created_at == clock.now
        assert not entry.is_delivered
        assert oplog.get(entry.id) == entry

    def test_append_is_idempotent(self, oplog: OperationLog) -> None:
        """The same logical event is logged once."""
        first = oplog.append(OperationType.ADD, "a1", "https://cdn/a1.jpg")
        second = oplog.append(OperationType.ADD, "a1", "https://cdn/other.jpg")

        assert second.id == first.id
        assert second.remote_url == "https://cdn/a1.jpg"
        assert len(oplog.list_entries()) == 1

    def test_add_and_delete_are_distinct_events(self, oplog: OperationLog) -> None:
        """ADD and DELETE of one attachment are two entries in order."""
        add = oplog.append(OperationType.ADD, "a1", "https://cdn/a1.jpg")
        delete = oplog.append(OperationType.DELETE, "a1", "https://cdn/a1.jpg")

        assert delete.seq > add.seq
        assert [e.id for e in oplog.list_entries("a1")] == [add.id, delete.id]
        assert oplog.find("a1", OperationType.DELETE).id == delete.id

    def test_metadata_is_copied(self, oplog: OperationLog) -> None:
        """Later changes to the caller's dict do not alter the entry."""
        metadata = {"photoId": "p1"}
        entry = oplog.append(OperationType.ADD, "a1", None, metadata)
        metadata["photoId"] = "changed"
        assert oplog.get(entry.id).owner_metadata == {"photoId": "p1"}

    def test_payload(self, oplog: OperationLog) -> None:
        """The wire payload carries the fact columns only."""
        entry = oplog.append(OperationType.DELETE, "a1", "https://cdn/a1.jpg", {"k": "v"})
        payload = entry.to_payload()
        assert payload == {
            "id": entry.id,
            "operationType": "DELETE",
            "attachmentId": "a1",
            "remoteUrl": "https://cdn/a1.jpg",
            "ownerMetadata": {"k": "v"},
            "createdAt": entry.created_at,
        }


class TestBookkeeping:
    """Tests for delivery bookkeeping."""

    def test_mark_delivered(self, oplog: OperationLog) -> None:
        """Delivered entries leave the pending set and cannot change again."""
        entry = oplog.append(OperationType.ADD, "a1", "https://cdn/a1.jpg")
        assert oplog.undelivered_count() == 1

        assert oplog.mark_delivered(entry.id)
        assert oplog.undelivered_count() == 0
        assert oplog.get(entry.id).is_delivered
        assert not oplog.mark_delivered(entry.id)
        assert not oplog.mark_failed(entry.id, "late")

    def test_mark_failed(self, oplog: OperationLog) -> None:
        """Rejected entries are listed with their reason."""
        entry = oplog.append(OperationType.ADD, "a1", "https://cdn/a1.jpg")
        assert oplog.mark_failed(entry.id, "unknown photo")

        failed = oplog.list_failed()
        assert [e.id for e in failed] == [entry.id]
        assert failed[0].failure_reason == "unknown photo"
        assert oplog.pending_heads(10) == []

    def test_schedule_retry(self, oplog: OperationLog, clock) -> None:
        """A transient failure pushes the entry back by the backoff delay."""
        backoff = BackoffPolicy(initial=2.0, maximum=100.0, jitter=0.0)
        entry = oplog.append(OperationType.ADD, "a1", "https://cdn/a1.jpg")

        assert oplog.schedule_retry(entry.id, backoff, "timeout") == 2.0
        updated = oplog.get(entry.id)
        assert updated.attempts == 1
        assert updated.next_attempt_at == clock.now + 2.0
        assert updated.failure_reason == "timeout"
        assert oplog.pending_heads(10) == []

        clock.advance(2.0)
        assert [e.id for e in oplog.pending_heads(10)] == [entry.id]
        assert oplog.schedule_retry(entry.id, backoff) == 4.0

    def test_schedule_retry_unknown_entry(self, oplog: OperationLog) -> None:
        """Unknown entries are ignored."""
        assert oplog.schedule_retry("missing", BackoffPolicy(jitter=0.0)) is None

    def test_pending_heads_blocks_later_entries(self, oplog: OperationLog) -> None:
        """A DELETE waits for the ADD of the same attachment."""
        add = oplog.append(OperationType.ADD, "a1", "https://cdn/a1.jpg")
        oplog.append(OperationType.DELETE, "a1", "https://cdn/a1.jpg")
        other = oplog.append(OperationType.ADD, "b1", "https://cdn/b1.jpg")

        assert [e.id for e in oplog.pending_heads(10)] == [add.id, other.id]
        assert len(oplog.pending_heads(1)) == 1


class TestArchive:
    """Tests for archive_delivered()."""

    def test_archives_old_delivered_entries(self, oplog: OperationLog, clock) -> None:
        """Only delivered entries past the window are moved."""
        old = oplog.append(OperationType.ADD, "a1", "https://cdn/a1.jpg")
        oplog.mark_delivered(old.id)
        pending = oplog.append(OperationType.ADD, "b1", "https://cdn/b1.jpg")

        assert oplog.archive_delivered(older_than_days=1) == 0
        clock.advance(SECONDS_PER_DAY + 1)
        assert oplog.archive_delivered(older_than_days=1) == 1

        assert oplog.get(old.id) is None
        assert oplog.get(pending.id) is not None

    def test_archived_key_stays_reserved(self, oplog: OperationLog, clock) -> None:
        """Re-appending an archived event returns the archived entry."""
        entry = oplog.append(OperationType.ADD, "a1", "https://cdn/a1.jpg")
        oplog.mark_delivered(entry.id)
        clock.advance(2 * SECONDS_PER_DAY)
        oplog.archive_delivered(older_than_days=1)

        again = oplog.append(OperationType.ADD, "a1", "https://cdn/a1.jpg")
        assert again.id == entry.id
        assert again.is_delivered
        assert oplog.list_entries() == []
        assert oplog.find("a1", OperationType.ADD) is not None


@pytest.mark.parametrize("op", list(OperationType))
def test_find_missing(oplog: OperationLog, op: OperationType) -> None:
    """find() returns None for events never logged."""
    assert oplog.find("nothing", op) is None
