"""Identifier generation.

Attachment and operation log ids are 24 hex characters: 8 characters of
seconds since the epoch followed by 16 random characters. They sort roughly
by creation time and are compatible with document-store object ids.
"""

from __future__ import annotations

import secrets
import time


def generate_object_id(timestamp: float | None = None) -> str:
    """Generate a new 24-character hex identifier.

    Args:
        timestamp: Optional epoch seconds to embed (defaults to now).

    Returns:
        A lowercase hex string of length 24.
    """
    seconds = int(time.time() if timestamp is None else timestamp)
    return f"{seconds:08x}{secrets.token_hex(8)}"


def object_id_timestamp(object_id: str) -> int:
    """Return the epoch seconds embedded in an object id."""
    return int(object_id[:8], 16)
