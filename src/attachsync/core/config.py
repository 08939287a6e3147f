"""Shared configuration classes for attachsync.

This module defines:
- ServerConfig: connection settings for the remote API
- SyncConfig: retry, concurrency and scheduling policy
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any


@dataclass
class ServerConfig:
    """Configuration for connecting to the reconciliation server.

    Attributes:
        server_url: Base URL of the server (e.g., "https://api.example.com").
        token: Bearer token sent with every request.
        timeout: Request timeout in seconds. Every network call is bounded by it.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    token: str
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS."""
        return self.server_url.startswith("https://")


@dataclass
class SyncConfig:
    """Policy knobs for the upload engine and the operation log connector.

    Attributes:
        max_retries: Upload attempts before an attachment becomes FAILED.
        initial_backoff: First retry delay in seconds.
        max_backoff: Upper bound for upload retry delays.
        backoff_multiplier: Growth factor between consecutive delays.
        jitter: Random fraction of the delay added or removed (0 disables).
        worker_count: Number of upload worker threads.
        claim_batch_size: Attachments claimed per worker iteration.
        lease_seconds: How long a claim stays valid without a report.
        poll_interval: Seconds between periodic triggers.
        connector_batch_size: Operation log entries sent per request.
        connector_max_backoff: Upper bound for delivery retry delays.
        network_check_interval: Seconds between connectivity probes.
        local_retention_seconds: Delay after ADD delivery before the local
            file is purged.
        archive_after_days: Age after which delivered log entries are archived.
    """

    max_retries: int = 3
    initial_backoff: float = 1.0
    max_backoff: float = 300.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.5
    worker_count: int = 3
    claim_batch_size: int = 2
    lease_seconds: float = 300.0
    poll_interval: float = 30.0
    connector_batch_size: int = 25
    connector_max_backoff: float = 600.0
    network_check_interval: float = 5.0
    local_retention_seconds: float = 0.0
    archive_after_days: int = 90

    def __post_init__(self) -> None:
        """Validate bounds."""
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        if self.claim_batch_size < 1 or self.connector_batch_size < 1:
            raise ValueError("batch sizes must be at least 1")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1")
        for name in (
            "initial_backoff",
            "max_backoff",
            "lease_seconds",
            "poll_interval",
            "connector_max_backoff",
            "network_check_interval",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.local_retention_seconds < 0 or self.archive_after_days < 1:
            raise ValueError("retention settings out of range")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Build a config from a dictionary, ignoring unknown keys.

        Values are coerced to the declared field types so that settings
        read from JSON or the command line behave the same.
        """
        known = {f.name: f for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            field_def = known.get(key)
            if field_def is None:
                continue
            kwargs[key] = int(value) if field_def.type == "int" else float(value)
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Return the config as a plain dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}
