"""Offline attachment synchronization.

Architecture:
    capture -> AttachmentQueue -> UploadWorkerPool -> StorageAdapter
                     |
                     v
               OperationLog -> BackendConnector -> reconciliation API

Components:
- **AttachmentQueue**: Attachment state machine, transactional claims (leases)
- **UploadWorkerPool**: Fixed set of threads uploading claimed attachments
- **OperationLog**: Append-only ADD/DELETE ledger with idempotency keys
- **BackendConnector**: Per-attachment ordered delivery with per-entry outcomes
- **NetworkMonitor** / **SyncScheduler**: Triggers and maintenance jobs
- **SyncService**: Composition root with start/stop lifecycle
"""

from attachsync.client.sync.attachment_queue import AttachmentQueue
from attachsync.client.sync.connector import BackendConnector
from attachsync.client.sync.network import NetworkMonitor
from attachsync.client.sync.oplog import OperationLog
from attachsync.client.sync.retry import BackoffPolicy
from attachsync.client.sync.scheduler import SyncScheduler
from attachsync.client.sync.service import SyncService, SyncStatus
from attachsync.client.sync.types import (
    Attachment,
    AttachmentNotFoundError,
    AttachmentState,
    AuthorizationError,
    DeliveryOutcome,
    DeliveryReport,
    DeliveryStatus,
    InvalidTransitionError,
    LeaseLostError,
    LocalStorageError,
    OperationLogEntry,
    OperationType,
    PermanentValidationError,
    SignedTarget,
    SyncError,
    TransientNetworkError,
)
from attachsync.client.sync.workers import UploadOutcome, UploadWorker, UploadWorkerPool

__all__ = [
    # Engine
    "AttachmentQueue",
    "BackendConnector",
    "BackoffPolicy",
    "NetworkMonitor",
    "OperationLog",
    "SyncScheduler",
    "SyncService",
    "SyncStatus",
    "UploadOutcome",
    "UploadWorker",
    "UploadWorkerPool",
    # Records
    "Attachment",
    "AttachmentState",
    "DeliveryOutcome",
    "DeliveryReport",
    "DeliveryStatus",
    "OperationLogEntry",
    "OperationType",
    "SignedTarget",
    # Errors
    "AttachmentNotFoundError",
    "AuthorizationError",
    "InvalidTransitionError",
    "LeaseLostError",
    "LocalStorageError",
    "PermanentValidationError",
    "SyncError",
    "TransientNetworkError",
]
