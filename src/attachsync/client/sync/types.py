"""Shared types and dataclasses for attachment synchronization.

This module provides:
- SyncError and its subclasses: the error taxonomy used across the engine
- AttachmentState, OperationType, DeliveryStatus: enums
- Attachment, OperationLogEntry, RemoteDelete: persisted records
- SignedTarget: short-lived upload destination from the broker
- DeliveryOutcome, DeliveryReport: per-entry connector results
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class SyncError(Exception):
    """Base exception for sync errors."""


class TransientNetworkError(SyncError):
    """Network failure that is expected to go away (timeout, 5xx, offline).

    Attributes:
        status_code: HTTP status if a response was received.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthorizationError(SyncError):
    """The remote side refused our credentials. Never retried silently."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermanentValidationError(SyncError):
    """The remote side rejected the request structurally. Not retried."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LocalStorageError(SyncError):
    """The local durable store failed. The operation was not applied."""


class AttachmentNotFoundError(SyncError):
    """No attachment with the given id exists."""


class InvalidTransitionError(SyncError):
    """The requested operation is not allowed in the attachment's state."""


class LeaseLostError(SyncError):
    """The worker no longer owns the UPLOADING lease for an attachment.

    Raised when an attachment was deleted, re-queued after lease expiry, or
    claimed by someone else while a transfer was in flight.
    """


class AttachmentState(str, Enum):
    """Lifecycle state of an attachment."""

    QUEUED_UPLOAD = "QUEUED_UPLOAD"
    UPLOADING = "UPLOADING"
    SYNCED = "SYNCED"
    QUEUED_DELETE = "QUEUED_DELETE"
    FAILED = "FAILED"


class OperationType(str, Enum):
    """Kind of change recorded in the operation log."""

    ADD = "ADD"
    DELETE = "DELETE"


class DeliveryStatus(str, Enum):
    """Outcome of delivering one operation log entry."""

    APPLIED = "applied"
    REJECTED = "rejected"
    RETRY = "retry"


def idempotency_key(attachment_id: str, operation_type: OperationType) -> str:
    """Stable key identifying one logical event for an attachment."""
    return f"{attachment_id}:{operation_type.value}"


@dataclass
class Attachment:
    """A locally captured file tracked until it is durable remotely.

    Attributes:
        id: Globally unique id assigned at capture time.
        local_path: On-device file path (None once purged locally).
        remote_url: Final URL, set once by a successful upload.
        media_type: MIME type derived from the encoded bytes.
        size_bytes: Byte length of the local file at enqueue time.
        state: Current lifecycle state.
        retry_count: Failed upload attempts so far.
        next_retry_at: Epoch seconds before which the row is not claimable.
        metadata: Opaque key/value bag from the capture layer.
        lease_owner: Worker currently holding the UPLOADING lease.
        lease_expires_at: Epoch seconds at which the lease lapses.
        last_error: Message of the most recent failure.
        created_at: Epoch seconds when the row was enqueued.
        updated_at: Epoch seconds of the last transition.
    """

    id: str
    local_path: str | None
    remote_url: str | None
    media_type: str
    size_bytes: int
    state: AttachmentState
    retry_count: int = 0
    next_retry_at: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    lease_owner: str | None = None
    lease_expires_at: float | None = None
    last_error: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Attachment:
        """Create Attachment from database row."""
        return cls(
            id=row["id"],
            local_path=row["local_path"],
            remote_url=row["remote_url"],
            media_type=row["media_type"],
            size_bytes=row["size_bytes"],
            state=AttachmentState(row["state"]),
            retry_count=row["retry_count"],
            next_retry_at=row["next_retry_at"],
            metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
            lease_owner=row["lease_owner"],
            lease_expires_at=row["lease_expires_at"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def require_local_file(self) -> Path:
        """Resolve the local file of this attachment.

        Raises:
            FileNotFoundError: If the attachment has no local file any more.
        """
        if self.local_path is None:
            raise FileNotFoundError(f"Attachment {self.id} has no local file")
        path = Path(self.local_path)
        if not path.is_file():
            raise FileNotFoundError(f"Local file missing for {self.id}: {path}")
        return path


@dataclass
class OperationLogEntry:
    """Immutable fact: an attachment was added or deleted.

    The fact columns (everything up to ``created_at``) never change. The
    remaining attributes are delivery bookkeeping owned by the connector.
    """

    id: str
    seq: int
    operation_type: OperationType
    attachment_id: str
    remote_url: str | None
    owner_metadata: dict[str, Any]
    created_at: float
    delivered_at: float | None = None
    attempts: int = 0
    next_attempt_at: float | None = None
    failed_at: float | None = None
    failure_reason: str | None = None

    @property
    def is_delivered(self) -> bool:
        """True once the remote side confirmed the entry."""
        return self.delivered_at is not None

    @property
    def is_failed(self) -> bool:
        """True if the entry was terminally rejected."""
        return self.failed_at is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> OperationLogEntry:
        """Create OperationLogEntry from database row."""
        owner_metadata = {}
        if row["owner_metadata_json"]:
            owner_metadata = json.loads(row["owner_metadata_json"])
        return cls(
            id=row["id"],
            seq=row["seq"],
            operation_type=OperationType(row["operation_type"]),
            attachment_id=row["attachment_id"],
            remote_url=row["remote_url"],
            owner_metadata=owner_metadata,
            created_at=row["created_at"],
            delivered_at=row["delivered_at"],
            attempts=row["attempts"],
            next_attempt_at=row["next_attempt_at"],
            failed_at=row["failed_at"],
            failure_reason=row["failure_reason"],
        )

    def to_payload(self) -> dict[str, Any]:
        """Wire representation sent to the reconciliation endpoint."""
        payload: dict[str, Any] = {
            "id": self.id,
            "operationType": self.operation_type.value,
            "attachmentId": self.attachment_id,
            "ownerMetadata": self.owner_metadata,
            "createdAt": self.created_at,
        }
        if self.remote_url is not None:
            payload["remoteUrl"] = self.remote_url
        return payload


@dataclass
class RemoteDelete:
    """Pending removal of a remote object, retried apart from the log entry.

    Attributes:
        remote_url: Object to remove.
        attachment_id: Attachment the object belonged to.
        created_at: Epoch seconds when the delete was recorded.
        attempts: Delete attempts so far.
        next_attempt_at: Epoch seconds before which no attempt is made.
        completed_at: When the object was confirmed gone.
        failed_at: When the storage side refused the delete for good.
        last_error: Message of the most recent failure.
    """

    remote_url: str
    attachment_id: str
    created_at: float
    attempts: int = 0
    next_attempt_at: float | None = None
    completed_at: float | None = None
    failed_at: float | None = None
    last_error: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> RemoteDelete:
        """Create RemoteDelete from database row."""
        return cls(
            remote_url=row["remote_url"],
            attachment_id=row["attachment_id"],
            created_at=row["created_at"],
            attempts=row["attempts"],
            next_attempt_at=row["next_attempt_at"],
            completed_at=row["completed_at"],
            failed_at=row["failed_at"],
            last_error=row["last_error"],
        )


@dataclass
class SignedTarget:
    """Single-use upload destination returned by the broker.

    Attributes:
        upload_url: Where the bytes are sent.
        expires_at: Epoch seconds after which the URL is no longer valid.
        public_url: Stable URL of the object once uploaded, if the broker
            knows it in advance.
        headers: Extra headers required by the upload destination.
    """

    upload_url: str
    expires_at: float
    public_url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        """Check whether the target can no longer be used."""
        return now >= self.expires_at


@dataclass
class DeliveryOutcome:
    """Delivery result for one operation log entry."""

    entry_id: str
    attachment_id: str
    operation_type: OperationType
    status: DeliveryStatus
    reason: str | None = None


@dataclass
class DeliveryReport:
    """Aggregated per-entry outcomes of one or more delivery batches.

    A report is never collapsed into a single success flag: callers inspect
    ``rejected`` and ``retried`` to see exactly which entries did not land.
    """

    outcomes: list[DeliveryOutcome] = field(default_factory=list)

    def add(self, outcome: DeliveryOutcome) -> None:
        """Record one outcome."""
        self.outcomes.append(outcome)

    def extend(self, other: DeliveryReport) -> None:
        """Merge another report into this one."""
        self.outcomes.extend(other.outcomes)

    def _with_status(self, status: DeliveryStatus) -> list[DeliveryOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def applied(self) -> list[DeliveryOutcome]:
        """Entries confirmed by the remote side."""
        return self._with_status(DeliveryStatus.APPLIED)

    @property
    def rejected(self) -> list[DeliveryOutcome]:
        """Entries terminally rejected; surfaced, not retried."""
        return self._with_status(DeliveryStatus.REJECTED)

    @property
    def retried(self) -> list[DeliveryOutcome]:
        """Entries rescheduled after a transient failure."""
        return self._with_status(DeliveryStatus.RETRY)

    @property
    def ok(self) -> bool:
        """True if every entry was applied."""
        return all(o.status == DeliveryStatus.APPLIED for o in self.outcomes)

    def __len__(self) -> int:
        return len(self.outcomes)
