"""Retry timing with exponential backoff and jitter.

This module provides:
- BackoffPolicy: exponential backoff capped at a maximum, with jitter

Retries themselves are not performed here. A failed attachment or log entry
is rescheduled in the store with ``next_retry_at = now + delay`` and picked up
again by a later claim, so a retry never holds a worker thread.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from attachsync.core.config import SyncConfig

# Default retry configuration
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 300.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER = 0.5


@dataclass
class BackoffPolicy:
    """Exponential backoff with symmetric jitter.

    The nominal delay for attempt ``n`` (1-based) is
    ``initial * multiplier ** (n - 1)`` capped at ``maximum``. Jitter then
    scales it by a random factor in ``[1 - jitter, 1 + jitter]`` and the
    result is capped again, so no delay ever exceeds ``maximum``.
    """

    initial: float = DEFAULT_INITIAL_BACKOFF
    maximum: float = DEFAULT_MAX_BACKOFF
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: float = DEFAULT_JITTER
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def for_uploads(cls, config: SyncConfig) -> BackoffPolicy:
        """Policy for upload retries."""
        return cls(
            initial=config.initial_backoff,
            maximum=config.max_backoff,
            multiplier=config.backoff_multiplier,
            jitter=config.jitter,
        )

    @classmethod
    def for_delivery(cls, config: SyncConfig) -> BackoffPolicy:
        """Policy for operation log delivery retries."""
        return cls(
            initial=config.initial_backoff,
            maximum=config.connector_max_backoff,
            multiplier=config.backoff_multiplier,
            jitter=config.jitter,
        )

    def nominal(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` without jitter."""
        if attempt < 1:
            attempt = 1
        # Cap the exponent so huge attempt counts don't overflow
        exponent = min(attempt - 1, 64)
        return float(min(self.initial * self.multiplier**exponent, self.maximum))

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` with jitter applied."""
        base = self.nominal(attempt)
        if self.jitter:
            base *= self.rng.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return max(0.0, min(base, self.maximum))
