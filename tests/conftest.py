"""Shared fixtures for attachsync tests."""

from __future__ import annotations

import math
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from attachsync.client.storage import StorageAdapter
from attachsync.client.store import LocalStore
from attachsync.client.sync.attachment_queue import AttachmentQueue
from attachsync.client.sync.oplog import OperationLog
from attachsync.client.sync.retry import BackoffPolicy
from attachsync.client.sync.types import Attachment, SignedTarget
from attachsync.core.config import SyncConfig


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """A clock frozen until advanced."""
    return FakeClock()


@pytest.fixture
def sync_config() -> SyncConfig:
    """Sync policy without jitter so delays are predictable."""
    return SyncConfig(
        max_retries=3,
        initial_backoff=1.0,
        max_backoff=60.0,
        jitter=0.0,
        lease_seconds=60.0,
        claim_batch_size=2,
        poll_interval=0.2,
    )


@pytest.fixture
def store(tmp_path: Path) -> Generator[LocalStore, None, None]:
    """A fresh store in a temporary directory."""
    s = LocalStore(tmp_path / "state.db")
    yield s
    s.close()


@pytest.fixture
def oplog(store: LocalStore, clock: FakeClock) -> OperationLog:
    """Operation log on the fake clock."""
    return OperationLog(store, clock=clock)


@pytest.fixture
def queue(
    store: LocalStore,
    oplog: OperationLog,
    sync_config: SyncConfig,
    clock: FakeClock,
) -> AttachmentQueue:
    """Attachment queue on the fake clock."""
    return AttachmentQueue(
        store,
        oplog,
        sync_config,
        backoff=BackoffPolicy.for_uploads(sync_config),
        clock=clock,
    )


@pytest.fixture
def make_file(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a small capture file."""
    media = tmp_path / "media"
    media.mkdir(exist_ok=True)
    counter = [0]

    def _make(name: str | None = None, data: bytes = b"\xff\xd8\xff\xe0 fake jpeg") -> Path:
        counter[0] += 1
        path = media / (name or f"capture-{counter[0]}.jpg")
        path.write_bytes(data)
        return path

    return _make


class FakeAdapter(StorageAdapter):
    """In-memory storage adapter recording calls.

    ``errors`` maps an attachment id to exceptions raised by successive
    transfers of that attachment; ``on_transfer`` runs before each transfer.
    """

    def __init__(self) -> None:
        self.stored: dict[str, str] = {}
        self.deleted: list[str] = []
        self.errors: dict[str, list[BaseException]] = {}
        self.transfers: list[str] = []
        self.on_transfer: Callable[[str], None] | None = None

    @property
    def location(self) -> str:
        return "memory"

    def request_upload_target(self, attachment: Attachment) -> SignedTarget:
        return SignedTarget(
            upload_url=f"https://bucket/{attachment.id}?sig=1",
            expires_at=math.inf,
        )

    def transfer(self, local_path: Path | str, target: SignedTarget) -> str:
        attachment_id = target.upload_url.rsplit("/", 1)[1].split("?")[0]
        self.transfers.append(attachment_id)
        if self.on_transfer is not None:
            self.on_transfer(attachment_id)
        pending = self.errors.get(attachment_id)
        if pending:
            raise pending.pop(0)
        url = f"https://bucket/{attachment_id}"
        self.stored[url] = str(local_path)
        return url

    def delete(self, remote_url: str, attachment_id: str | None = None) -> None:
        self.deleted.append(remote_url)
        self.stored.pop(remote_url, None)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    """Storage adapter keeping objects in memory."""
    return FakeAdapter()
