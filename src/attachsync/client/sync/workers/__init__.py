"""Upload workers with cancellation support.

This package provides:
- BaseWorker: Abstract base class for interruptible workers
- UploadWorker: Uploads one leased attachment and reports the outcome
- UploadWorkerPool: Fixed set of threads draining the attachment queue
"""

from attachsync.client.sync.workers.base import (
    BaseWorker,
    CancelledException,
    WorkerContext,
    WorkerResult,
    WorkerState,
)
from attachsync.client.sync.workers.pool import PoolState, UploadWorkerPool
from attachsync.client.sync.workers.upload_worker import UploadOutcome, UploadWorker

__all__ = [
    "BaseWorker",
    "CancelledException",
    "PoolState",
    "UploadOutcome",
    "UploadWorker",
    "UploadWorkerPool",
    "WorkerContext",
    "WorkerResult",
    "WorkerState",
]
