"""Storage adapters turning local files into remote URLs.

This module provides:
- StorageAdapter: abstract upload/delete contract used by the worker pool
- SignedUrlStorageAdapter: broker-signed PUT uploads through the HTTP client
- LocalFSStorageAdapter: directory-backed adapter for development and testing

A transfer is treated as atomic: either the object exists at a stable URL
afterwards or the call raises. Adapters raise the sync error types
(TransientNetworkError, AuthorizationError, PermanentValidationError) so the
queue can classify failures without knowing the backend.
"""

from __future__ import annotations

import logging
import math
import mimetypes
import shutil
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urljoin, urlparse, urlunparse
from urllib.request import url2pathname

from attachsync.client.sync.types import (
    Attachment,
    PermanentValidationError,
    SignedTarget,
    TransientNetworkError,
)

if TYPE_CHECKING:
    from attachsync.client.api import HTTPClient

logger = logging.getLogger(__name__)


class StorageAdapter(ABC):
    """Abstract interface for remote attachment storage."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of where objects are stored."""

    @abstractmethod
    def request_upload_target(self, attachment: Attachment) -> SignedTarget:
        """Obtain a short-lived upload destination for an attachment.

        Raises:
            AuthorizationError: If the broker refuses the request.
            TransientNetworkError: If the broker is unreachable.
        """

    @abstractmethod
    def transfer(self, local_path: Path | str, target: SignedTarget) -> str:
        """Send the file bytes to ``target``.

        Returns:
            The stable remote URL of the stored object.
        """

    @abstractmethod
    def delete(self, remote_url: str, attachment_id: str | None = None) -> None:
        """Remove a remote object. Deleting a missing object is not an error."""

    def upload(self, attachment: Attachment) -> str:
        """Upload an attachment in one call (target + transfer).

        Returns:
            The stable remote URL.

        Raises:
            FileNotFoundError: If the local file is gone.
        """
        path = attachment.require_local_file()
        target = self.request_upload_target(attachment)
        return self.transfer(path, target)


class SignedUrlStorageAdapter(StorageAdapter):
    """Uploads through single-use URLs issued by the server's broker.

    The broker answers ``{uploadUrl, expiresAt, publicUrl?}``. The final URL
    is ``publicUrl`` when given, else the storage provider's ``Location``
    header, else the upload URL without its query string (signature).
    """

    def __init__(
        self,
        client: HTTPClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the adapter.

        Args:
            client: HTTP client for the broker and the transfers.
            clock: Source of epoch seconds for expiry checks.
        """
        self._client = client
        self._clock = clock

    @property
    def location(self) -> str:
        """Return the broker location."""
        return f"Signed uploads via {self._client.server_url}"

    def request_upload_target(self, attachment: Attachment) -> SignedTarget:
        """Ask the broker for a signed upload URL."""
        target = self._client.request_upload_target(attachment.id, attachment.media_type)
        target.headers.setdefault("Content-Type", attachment.media_type)
        return target

    def transfer(self, local_path: Path | str, target: SignedTarget) -> str:
        """PUT the file to the signed URL.

        Raises:
            TransientNetworkError: If the target expired before transfer.
        """
        if target.is_expired(self._clock()):
            raise TransientNetworkError("Signed upload URL expired before transfer")

        media_type = target.headers.get("Content-Type", "application/octet-stream")
        response = self._client.upload_bytes(
            target.upload_url,
            local_path,
            media_type,
            headers=target.headers,
        )

        if target.public_url:
            return target.public_url
        location = response.headers.get("Location")
        if location:
            return urljoin(target.upload_url, location)
        return strip_query(target.upload_url)

    def delete(self, remote_url: str, attachment_id: str | None = None) -> None:
        """Ask the server to delete the remote object."""
        self._client.delete_remote(remote_url, attachment_id)


def strip_query(url: str) -> str:
    """Drop query string and fragment from a URL."""
    return urlunparse(urlparse(url)._replace(query="", fragment=""))


class LocalFSStorageAdapter(StorageAdapter):
    """Local filesystem storage for development and testing.

    Objects are copied to ``<base_path>/<attachment_id><ext>`` and addressed
    with ``file://`` URLs. Targets never expire.
    """

    def __init__(self, base_path: Path | str) -> None:
        """Initialize local storage.

        Args:
            base_path: Directory receiving uploaded objects.
        """
        self._base_path = Path(base_path).resolve()
        self._base_path.mkdir(parents=True, exist_ok=True)

    @property
    def location(self) -> str:
        """Return the local storage path."""
        return f"Local filesystem: {self._base_path}"

    def _object_path(self, remote_url: str) -> Path:
        parsed = urlparse(remote_url)
        if parsed.scheme != "file":
            raise PermanentValidationError(f"Not a local storage URL: {remote_url}")
        path = Path(url2pathname(parsed.path)).resolve()
        if path.parent != self._base_path:
            raise PermanentValidationError(f"URL outside storage directory: {remote_url}")
        return path

    def request_upload_target(self, attachment: Attachment) -> SignedTarget:
        """Reserve the destination path for an attachment."""
        extension = mimetypes.guess_extension(attachment.media_type) or ""
        url = (self._base_path / f"{attachment.id}{extension}").as_uri()
        return SignedTarget(upload_url=url, expires_at=math.inf, public_url=url)

    def transfer(self, local_path: Path | str, target: SignedTarget) -> str:
        """Copy the file into the storage directory."""
        destination = self._object_path(target.upload_url)
        tmp = destination.with_suffix(destination.suffix + ".tmp")
        shutil.copyfile(local_path, tmp)
        tmp.replace(destination)
        logger.debug("Stored %s at %s", local_path, destination)
        return target.public_url or target.upload_url

    def delete(self, remote_url: str, attachment_id: str | None = None) -> None:
        """Delete a stored object if it exists."""
        self._object_path(remote_url).unlink(missing_ok=True)

    def exists(self, remote_url: str) -> bool:
        """Check whether an object is stored at ``remote_url``."""
        return self._object_path(remote_url).is_file()
