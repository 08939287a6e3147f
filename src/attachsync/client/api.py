"""HTTP client for the attachment sync server API.

This module provides:
- HTTPClient: httpx client for the broker, delete and reconciliation endpoints
- map_status: HTTP status -> sync error classification

Every failure leaves this module as one of the sync error types, so callers
only ever branch on TransientNetworkError, AuthorizationError and
PermanentValidationError.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

from attachsync.client.sync.types import (
    AuthorizationError,
    OperationLogEntry,
    PermanentValidationError,
    SignedTarget,
    SyncError,
    TransientNetworkError,
)
from attachsync.core.config import ServerConfig

logger = logging.getLogger(__name__)

SIGN_PATH = "/api/uploads/sign"
DELETE_PATH = "/api/uploads/delete"
RECONCILE_PATH = "/api/operations"
HEALTH_PATH = "/health"


def map_status(status_code: int, detail: str) -> SyncError:
    """Classify an error response.

    Args:
        status_code: HTTP status (>= 400).
        detail: Message taken from the response body.

    Returns:
        The exception to raise for this response.
    """
    if status_code in (401, 403):
        return AuthorizationError(detail, status_code)
    if status_code == 429 or status_code >= 500:
        return TransientNetworkError(detail, status_code)
    return PermanentValidationError(detail, status_code)


def _parse_expiry(value: Any) -> float:
    """Accept epoch seconds or an ISO 8601 timestamp."""
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    raise PermanentValidationError(f"Invalid expiresAt in broker response: {value!r}")


class HTTPClient:
    """HTTP client for the sync server.

    Usage:
        with HTTPClient(ServerConfig("https://sync.example.com", token)) as client:
            target = client.request_upload_target(attachment_id, "image/jpeg")
            response = client.upload_bytes(target.upload_url, path, "image/jpeg")
    """

    def __init__(self, config: ServerConfig) -> None:
        """Initialize the client.

        Args:
            config: Server URL, token and transport settings.
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers={"Authorization": f"Bearer {config.token}"},
        )
        # Signed upload URLs carry their own credentials
        self._transfer_client = httpx.Client(
            timeout=config.timeout,
            verify=config.verify_ssl,
        )

    @property
    def server_url(self) -> str:
        """Base URL of the server."""
        return self._config.server_url

    def close(self) -> None:
        """Close the HTTP clients."""
        self._client.close()
        self._transfer_client.close()

    def __enter__(self) -> HTTPClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _send(self, client: httpx.Client, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, translating transport failures."""
        try:
            response = client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} {url} failed: {e}") from e
        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Raise the matching sync error for error responses."""
        if response.status_code < 400:
            return response
        try:
            detail = response.json().get("detail", response.reason_phrase)
        except (ValueError, AttributeError):
            detail = response.text or response.reason_phrase
        raise map_status(response.status_code, f"HTTP {response.status_code}: {detail}")

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is reachable and healthy.

        Returns:
            True if server is healthy.
        """
        try:
            response = self._client.get(HEALTH_PATH)
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Signed-upload broker ===

    def request_upload_target(self, attachment_id: str, media_type: str) -> SignedTarget:
        """Ask the broker for a single-use upload destination.

        Raises:
            AuthorizationError: If the broker refuses our credentials.
            TransientNetworkError: If the broker is unreachable.
            PermanentValidationError: If the request or response is invalid.
        """
        response = self._send(
            self._client,
            "POST",
            SIGN_PATH,
            json={"attachmentId": attachment_id, "mediaType": media_type},
        )
        try:
            data = response.json()
            return SignedTarget(
                upload_url=data["uploadUrl"],
                expires_at=_parse_expiry(data["expiresAt"]),
                public_url=data.get("publicUrl"),
                headers=dict(data.get("headers") or {}),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise PermanentValidationError(f"Malformed broker response: {e}") from e

    def upload_bytes(
        self,
        upload_url: str,
        path: Path | str,
        media_type: str,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """PUT a file to a signed upload URL.

        Returns:
            The storage provider's response (for its Location header).
        """
        request_headers = {"Content-Type": media_type, **(headers or {})}
        data = Path(path).read_bytes()
        logger.debug("Uploading %d bytes to %s", len(data), upload_url.split("?", 1)[0])
        return self._send(
            self._transfer_client,
            "PUT",
            upload_url,
            content=data,
            headers=request_headers,
        )

    def delete_remote(self, remote_url: str, attachment_id: str | None = None) -> bool:
        """Remove a remote object.

        Deleting an object that no longer exists is not an error.

        Returns:
            True if the server deleted it, False if it was already gone.
        """
        payload: dict[str, Any] = {"remoteUrl": remote_url}
        if attachment_id is not None:
            payload["attachmentId"] = attachment_id
        try:
            self._send(self._client, "POST", DELETE_PATH, json=payload)
        except PermanentValidationError as e:
            if e.status_code in (404, 410):
                logger.debug("Remote object already deleted: %s", remote_url)
                return False
            raise
        return True

    # === Reconciliation ===

    def reconcile(self, entries: list[OperationLogEntry]) -> list[dict[str, Any]]:
        """Send operation log entries to the reconciliation endpoint.

        Returns:
            Per-entry results ``{"id", "status", "reason"?}`` as returned by
            the server.
        """
        response = self._send(
            self._client,
            "POST",
            RECONCILE_PATH,
            json={"entries": [entry.to_payload() for entry in entries]},
        )
        try:
            data = response.json()
        except ValueError as e:
            raise TransientNetworkError(f"Unreadable reconciliation response: {e}") from e
        results = data.get("results", []) if isinstance(data, dict) else data
        if not isinstance(results, list):
            raise TransientNetworkError("Reconciliation response has no results list")
        return [r for r in results if isinstance(r, dict)]
