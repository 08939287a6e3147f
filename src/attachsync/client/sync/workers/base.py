"""Base worker class with cancellation support.

This module provides:
- WorkerState: Enum for worker lifecycle states
- WorkerResult: Result of a worker execution
- WorkerContext: What a worker sees while running
- BaseWorker: Abstract base class for interruptible workers
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

    from attachsync.client.sync.types import Attachment

logger = logging.getLogger(__name__)


class CancelledException(Exception):
    """Raised when a worker operation is cancelled."""


class WorkerState(Enum):
    """State of a worker."""

    IDLE = auto()
    RUNNING = auto()
    COMPLETED = auto()
    CANCELLED = auto()
    FAILED = auto()


@dataclass
class WorkerResult:
    """Result of a worker execution.

    Attributes:
        success: Whether the operation succeeded.
        result: The value produced by the work. Kept on cancellation too,
            so side effects that already happened can be undone.
        error: The exception if the work failed.
        cancelled: Whether the operation was cancelled.
        elapsed_time: Time taken in seconds.
    """

    success: bool
    result: Any = None
    error: BaseException | None = None
    cancelled: bool = False
    elapsed_time: float = 0.0


@dataclass
class WorkerContext:
    """Context passed to worker execution.

    Attributes:
        attachment: The attachment being processed.
        cancel_check: Function to check if cancellation was requested.
    """

    attachment: Attachment
    cancel_check: Callable[[], bool] = field(default=lambda: False)


class BaseWorker(ABC):
    """Abstract base class for interruptible workers.

    Subclasses must implement:
    - _do_work(): The actual work logic
    - worker_type: Property returning the worker type name

    Usage:
        class MyWorker(BaseWorker):
            @property
            def worker_type(self) -> str:
                return "my_worker"

            def _do_work(self, ctx: WorkerContext) -> str:
                if ctx.cancel_check():
                    raise CancelledException()
                return ...

        result = MyWorker().execute(attachment, cancel_check=stop_event.is_set)
    """

    def __init__(self) -> None:
        """Initialize the worker."""
        self._worker_state = WorkerState.IDLE
        self._cancel_requested = False
        self._lock = threading.Lock()

    @property
    @abstractmethod
    def worker_type(self) -> str:
        """Return the worker type name (e.g., 'upload')."""
        ...

    @property
    def state(self) -> WorkerState:
        """Get current worker state."""
        return self._worker_state

    def execute(
        self,
        attachment: Attachment,
        cancel_check: Callable[[], bool] | None = None,
    ) -> WorkerResult:
        """Execute the worker operation.

        Args:
            attachment: The attachment to process.
            cancel_check: Optional external cancellation check function.

        Returns:
            WorkerResult describing the outcome. Exceptions raised by the
            work are captured in ``error``, never propagated.
        """
        with self._lock:
            if self._worker_state == WorkerState.RUNNING:
                raise RuntimeError(f"{self.worker_type} worker already running")
            self._worker_state = WorkerState.RUNNING
            self._cancel_requested = False

        start_time = time.monotonic()

        def combined_cancel_check() -> bool:
            if self._cancel_requested:
                return True
            if cancel_check and cancel_check():
                self._cancel_requested = True
                return True
            return False

        ctx = WorkerContext(attachment=attachment, cancel_check=combined_cancel_check)
        result_value: Any = None

        try:
            result_value = self._do_work(ctx)
            elapsed = time.monotonic() - start_time

            # Work finished, but cancellation arrived meanwhile
            if combined_cancel_check():
                self._worker_state = WorkerState.CANCELLED
                return WorkerResult(
                    success=False,
                    result=result_value,
                    cancelled=True,
                    elapsed_time=elapsed,
                )

            self._worker_state = WorkerState.COMPLETED
            return WorkerResult(success=True, result=result_value, elapsed_time=elapsed)

        except CancelledException:
            elapsed = time.monotonic() - start_time
            self._worker_state = WorkerState.CANCELLED
            logger.info("%s worker: cancelled after %.2fs", self.worker_type, elapsed)
            return WorkerResult(success=False, cancelled=True, elapsed_time=elapsed)

        except Exception as e:
            elapsed = time.monotonic() - start_time
            self._worker_state = WorkerState.FAILED
            logger.debug("%s worker failed: %s", self.worker_type, e)
            return WorkerResult(success=False, error=e, elapsed_time=elapsed)

    @abstractmethod
    def _do_work(self, ctx: WorkerContext) -> Any:
        """Perform the actual work.

        The implementation should check ``ctx.cancel_check()`` between
        steps and raise CancelledException if it returns True.

        Args:
            ctx: Worker context with attachment and cancel check.

        Returns:
            The result of the operation.
        """
        ...
