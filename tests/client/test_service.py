"""Tests for the composed sync service."""

import time
from collections.abc import Callable, Generator
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from PIL import Image

from attachsync.client.storage import LocalFSStorageAdapter
from attachsync.client.store import LocalStore
from attachsync.client.sync import SyncService
from attachsync.client.sync.types import (
    AttachmentState,
    AuthorizationError,
    OperationLogEntry,
    OperationType,
    TransientNetworkError,
)
from attachsync.core.config import SyncConfig


def wait_for(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll until condition() is true or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return condition()


def applied_all(entries: list[OperationLogEntry]) -> list[dict]:
    return [{"id": e.id, "status": "applied"} for e in entries]


@pytest.fixture
def client() -> MagicMock:
    """Server stub: healthy and applying every entry."""
    mock = MagicMock()
    mock.health_check.return_value = True
    mock.reconcile.side_effect = applied_all
    return mock


@pytest.fixture
def adapter(tmp_path: Path) -> LocalFSStorageAdapter:
    return LocalFSStorageAdapter(tmp_path / "remote")


@pytest.fixture
def service(
    store: LocalStore, adapter: LocalFSStorageAdapter, client: MagicMock
) -> Generator[SyncService, None, None]:
    config = SyncConfig(
        worker_count=2,
        poll_interval=0.1,
        initial_backoff=0.05,
        jitter=0.0,
        network_check_interval=0.05,
    )
    s = SyncService(store, adapter, client, config)
    yield s
    s.stop()


@pytest.fixture
def photo(tmp_path: Path) -> Path:
    path = tmp_path / "IMG_0001.png"
    Image.new("RGB", (320, 240), color=(200, 30, 30)).save(path)
    return path


class TestCapture:
    """Tests for capture()."""

    def test_capture_prepares_and_queues(self, service: SyncService, photo: Path, store: LocalStore) -> None:
        """Captures are re-encoded into the media directory and queued."""
        attachment_id = service.capture(photo, role="before", metadata={"scheduleId": "s1"})

        attachment = service.queue.require(attachment_id)
        assert attachment.state == AttachmentState.QUEUED_UPLOAD
        assert attachment.media_type == "image/jpeg"
        assert Path(attachment.local_path).parent == store.path.parent / "media"
        assert attachment.metadata == {"scheduleId": "s1", "role": "before"}

    def test_signature_capture(self, service: SyncService, photo: Path) -> None:
        attachment_id = service.capture(photo, role="signature")
        assert service.queue.require(attachment_id).media_type == "image/png"


class TestSyncOnce:
    """Tests for the synchronous pass."""

    def test_upload_and_deliver(
        self, service: SyncService, photo: Path, adapter: LocalFSStorageAdapter, client: MagicMock
    ) -> None:
        """One pass uploads, delivers the ADD entry and purges the local file."""
        attachment_id = service.capture(photo, metadata={"photoId": "p1"})
        local_path = Path(service.queue.require(attachment_id).local_path)

        uploads, report = service.sync_once()

        assert uploads["synced"] == 1
        assert report.ok
        assert len(report.applied) == 1
        attachment = service.queue.require(attachment_id)
        assert attachment.state == AttachmentState.SYNCED
        assert adapter.exists(attachment.remote_url)
        assert attachment.local_path is None
        assert not local_path.exists()

        sent = client.reconcile.call_args.args[0]
        assert sent[0].operation_type == OperationType.ADD
        assert sent[0].remote_url == attachment.remote_url

    def test_offline_keeps_everything(
        self, service: SyncService, photo: Path, client: MagicMock
    ) -> None:
        """Without a server the upload lands but the entry stays pending."""
        client.reconcile.side_effect = TransientNetworkError("offline")
        attachment_id = service.capture(photo)

        _, report = service.sync_once()

        assert report.retried
        status = service.status()
        assert status.undelivered == 1
        assert service.queue.require(attachment_id).local_path is not None

    def test_delete_flow(
        self, service: SyncService, photo: Path, adapter: LocalFSStorageAdapter, client: MagicMock
    ) -> None:
        """A delete removes the remote object and then the local row."""
        attachment_id = service.capture(photo)
        service.sync_once()
        remote_url = service.queue.require(attachment_id).remote_url

        entry = service.delete(attachment_id)
        assert entry.operation_type == OperationType.DELETE
        _, report = service.sync_once()

        assert [o.entry_id for o in report.applied] == [entry.id]
        assert not adapter.exists(remote_url)
        assert service.queue.get(attachment_id) is None

    def test_auth_error_pauses_delivery(
        self, service: SyncService, photo: Path, client: MagicMock
    ) -> None:
        """Refused credentials pause sync until resume()."""
        on_auth_error = MagicMock()
        service._on_auth_error = on_auth_error
        client.reconcile.side_effect = AuthorizationError("expired", 401)
        service.capture(photo)

        service.sync_once()

        assert service.status().paused
        on_auth_error.assert_called_once()

        client.reconcile.side_effect = applied_all
        service.resume()
        assert not service.status().paused
        assert service.deliver().ok


class TestStatus:
    """Tests for status()."""

    def test_counts(self, service: SyncService, photo: Path) -> None:
        service.capture(photo)
        status = service.status()
        assert status.pending_uploads == 1
        assert status.failed == 0
        assert status.undelivered == 0
        assert not status.running


class TestLifecycle:
    """Tests for the background lifecycle."""

    def test_start_capture_stop(self, service: SyncService, photo: Path, client: MagicMock) -> None:
        """Background threads upload and deliver without explicit passes."""
        service.start()
        assert service.running
        attachment_id = service.capture(photo)

        assert wait_for(
            lambda: service.queue.require(attachment_id).state == AttachmentState.SYNCED
            and service.oplog.undelivered_count() == 0
        )
        assert service.status().online

        service.stop()
        assert not service.running
        assert not service.scheduler.running

    def test_context_manager(self, store: LocalStore, adapter, client: MagicMock) -> None:
        with SyncService(store, adapter, client, SyncConfig(poll_interval=0.1)) as service:
            assert service.running
        assert not service.running
