"""Network availability monitoring.

This module provides:
- NetworkMonitor: polls the server health endpoint and reports transitions
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from attachsync.client.api import HTTPClient

logger = logging.getLogger(__name__)

# Default connectivity probe interval
NETWORK_CHECK_INTERVAL = 5.0  # seconds


class NetworkMonitor:
    """Watches connectivity and fires ``on_available`` when it comes back.

    The first successful probe also counts as a transition, so a client
    started while online syncs right away.

    Usage:
        monitor = NetworkMonitor(client, on_available=service.trigger)
        monitor.start()
        ...
        monitor.stop()
    """

    def __init__(
        self,
        client: HTTPClient,
        on_available: Callable[[], None] | None = None,
        on_unavailable: Callable[[], None] | None = None,
        check_interval: float = NETWORK_CHECK_INTERVAL,
    ) -> None:
        """Initialize the monitor.

        Args:
            client: HTTP client used for health checks.
            on_available: Called on every offline -> online transition.
            on_unavailable: Called on every online -> offline transition.
            check_interval: Seconds between probes.
        """
        self._client = client
        self._on_available = on_available
        self._on_unavailable = on_unavailable
        self._check_interval = check_interval
        self._online: bool | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_online(self) -> bool:
        """Last known connectivity (False until the first probe succeeds)."""
        return bool(self._online)

    def check(self) -> bool:
        """Probe the server once and fire callbacks on a transition.

        Returns:
            True if the server is reachable.
        """
        online = self._client.health_check()
        previous = self._online
        self._online = online

        if online and previous is not True:
            logger.info("Network available")
            if self._on_available:
                self._on_available()
        elif not online and previous is not False:
            logger.info("Network unavailable")
            if self._on_unavailable:
                self._on_unavailable()
        return online

    def start(self) -> None:
        """Start polling in a daemon thread."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="NetworkMonitor",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Network monitor started (every %.1fs)", self._check_interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop polling."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.debug("Network monitor stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.check()
            except Exception:
                logger.exception("Network check failed")
            self._stop_event.wait(self._check_interval)
