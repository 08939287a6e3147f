"""Core module - shared configuration and identifiers."""

from attachsync.core.config import ServerConfig, SyncConfig
from attachsync.core.ids import generate_object_id, object_id_timestamp

__all__ = [
    # Config
    "ServerConfig",
    "SyncConfig",
    # Ids
    "generate_object_id",
    "object_id_timestamp",
]
