"""Durable local store for attachments and the operation log.

This module provides:
- LocalStore: SQLite-backed data access with single-writer transactions

The store holds no policy. The attachment queue and the operation log decide
what to write; the store only knows how to read and write rows. Every
mutating sequence runs inside ``transaction()``, which takes SQLite's write
lock up front (``BEGIN IMMEDIATE``) so that concurrent writers, in this
process or another one, are serialized rather than interleaved.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from attachsync.client.sync.types import (
    Attachment,
    AttachmentState,
    LocalStorageError,
    OperationLogEntry,
    OperationType,
    RemoteDelete,
)

logger = logging.getLogger(__name__)

# Columns callers may change through the update_* methods
_ATTACHMENT_MUTABLE = frozenset({
    "local_path",
    "remote_url",
    "state",
    "retry_count",
    "next_retry_at",
    "lease_owner",
    "lease_expires_at",
    "last_error",
    "updated_at",
})
_ENTRY_MUTABLE = frozenset({
    "delivered_at",
    "attempts",
    "next_attempt_at",
    "failed_at",
    "failure_reason",
})
_REMOTE_DELETE_MUTABLE = frozenset({
    "attempts",
    "next_attempt_at",
    "completed_at",
    "failed_at",
    "last_error",
})

_LOG_COLUMNS = (
    "seq, id, idempotency_key, operation_type, attachment_id, remote_url, "
    "owner_metadata_json, created_at, delivered_at, attempts, next_attempt_at, "
    "failed_at, failure_reason"
)


class LocalStore:
    """SQLite store shared by the queue, the worker pool and the connector.

    A single connection is shared between threads and guarded by a
    re-entrant lock. Nested ``transaction()`` blocks on the same thread join
    the outer transaction.
    """

    def __init__(self, db_path: Path | str, busy_timeout: float = 30.0) -> None:
        """Open (and create if needed) the store.

        Args:
            db_path: Path to SQLite database file.
            busy_timeout: Seconds to wait for another process's write lock.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._depth = 0

        try:
            self._conn = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                isolation_level=None,  # Transactions are explicit
                timeout=busy_timeout,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._create_tables()
        except sqlite3.Error as e:
            raise LocalStorageError(f"Cannot open store at {self._db_path}: {e}") from e

    @property
    def path(self) -> Path:
        """Location of the database file."""
        return self._db_path

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS attachments (
                id TEXT PRIMARY KEY,
                local_path TEXT,
                remote_url TEXT,
                media_type TEXT NOT NULL,
                size_bytes INTEGER NOT NULL,
                state TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                next_retry_at REAL,
                metadata_json TEXT,
                lease_owner TEXT,
                lease_expires_at REAL,
                last_error TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                CHECK (local_path IS NOT NULL OR remote_url IS NOT NULL)
            );

            CREATE INDEX IF NOT EXISTS idx_attachments_claim
                ON attachments (state, next_retry_at, created_at);

            -- Append-only ledger; seq gives creation order
            CREATE TABLE IF NOT EXISTS operation_log (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                idempotency_key TEXT NOT NULL UNIQUE,
                operation_type TEXT NOT NULL,
                attachment_id TEXT NOT NULL,
                remote_url TEXT,
                owner_metadata_json TEXT,
                created_at REAL NOT NULL,
                delivered_at REAL,
                attempts INTEGER NOT NULL DEFAULT 0,
                next_attempt_at REAL,
                failed_at REAL,
                failure_reason TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_operation_log_attachment
                ON operation_log (attachment_id, seq);

            -- Delivered entries past the retention window
            CREATE TABLE IF NOT EXISTS operation_log_archive (
                seq INTEGER PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                idempotency_key TEXT NOT NULL UNIQUE,
                operation_type TEXT NOT NULL,
                attachment_id TEXT NOT NULL,
                remote_url TEXT,
                owner_metadata_json TEXT,
                created_at REAL NOT NULL,
                delivered_at REAL,
                attempts INTEGER NOT NULL DEFAULT 0,
                next_attempt_at REAL,
                failed_at REAL,
                failure_reason TEXT
            );

            -- Remote objects to remove, retried apart from the log entries
            CREATE TABLE IF NOT EXISTS remote_deletes (
                remote_url TEXT PRIMARY KEY,
                attachment_id TEXT NOT NULL,
                created_at REAL NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                next_attempt_at REAL,
                completed_at REAL,
                failed_at REAL,
                last_error TEXT
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # === Transactions ===

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed statements as one atomic write.

        Raises:
            LocalStorageError: If SQLite fails; nothing is applied.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise LocalStorageError(f"Cannot begin transaction: {e}") from e

            self._depth = 1
            try:
                yield
            except BaseException as e:
                self._depth = 0
                self._rollback()
                if isinstance(e, sqlite3.Error):
                    raise LocalStorageError(str(e)) from e
                raise
            else:
                self._depth = 0
                try:
                    self._conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self._rollback()
                    raise LocalStorageError(f"Commit failed: {e}") from e

    def _rollback(self) -> None:
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.warning("Rollback failed on %s", self._db_path)

    def _execute(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> sqlite3.Cursor:
        """Execute a statement, translating SQLite errors."""
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.Error as e:
                raise LocalStorageError(str(e)) from e

    def _fetchall(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            row: sqlite3.Row | None = self._execute(sql, params).fetchone()
            return row

    # === Attachment rows ===

    def insert_attachment(self, attachment: Attachment) -> None:
        """Insert a new attachment row."""
        self._execute(
            """
            INSERT INTO attachments (
                id, local_path, remote_url, media_type, size_bytes, state,
                retry_count, next_retry_at, metadata_json, lease_owner,
                lease_expires_at, last_error, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                attachment.id,
                attachment.local_path,
                attachment.remote_url,
                attachment.media_type,
                attachment.size_bytes,
                attachment.state.value,
                attachment.retry_count,
                attachment.next_retry_at,
                json.dumps(attachment.metadata),
                attachment.lease_owner,
                attachment.lease_expires_at,
                attachment.last_error,
                attachment.created_at,
                attachment.updated_at,
            ),
        )

    def get_attachment(self, attachment_id: str) -> Attachment | None:
        """Get an attachment by id."""
        row = self._fetchone("SELECT * FROM attachments WHERE id = ?", (attachment_id,))
        return Attachment.from_row(row) if row else None

    def list_attachments(self, state: AttachmentState | None = None) -> list[Attachment]:
        """List attachments in creation order, optionally filtered by state."""
        if state is None:
            rows = self._fetchall("SELECT * FROM attachments ORDER BY created_at, rowid")
        else:
            rows = self._fetchall(
                "SELECT * FROM attachments WHERE state = ? ORDER BY created_at, rowid",
                (state.value,),
            )
        return [Attachment.from_row(row) for row in rows]

    def count_by_state(self) -> dict[AttachmentState, int]:
        """Count attachments per state (every state is present)."""
        counts = {state: 0 for state in AttachmentState}
        for row in self._fetchall("SELECT state, COUNT(*) AS n FROM attachments GROUP BY state"):
            counts[AttachmentState(row["state"])] = row["n"]
        return counts

    def select_claimable_ids(self, now: float, limit: int) -> list[str]:
        """Ids of QUEUED_UPLOAD rows whose retry time has passed, oldest first."""
        rows = self._fetchall(
            """
            SELECT id FROM attachments
            WHERE state = ? AND (next_retry_at IS NULL OR next_retry_at <= ?)
            ORDER BY created_at, rowid
            LIMIT ?
            """,
            (AttachmentState.QUEUED_UPLOAD.value, now, limit),
        )
        return [row["id"] for row in rows]

    def select_expired_lease_ids(self, now: float) -> list[str]:
        """Ids of UPLOADING rows whose lease has lapsed."""
        rows = self._fetchall(
            "SELECT id FROM attachments WHERE state = ? AND lease_expires_at <= ?",
            (AttachmentState.UPLOADING.value, now),
        )
        return [row["id"] for row in rows]

    def next_retry_time(self) -> float | None:
        """Earliest scheduled retry among queued rows, if any."""
        row = self._fetchone(
            "SELECT MIN(next_retry_at) AS t FROM attachments WHERE state = ?",
            (AttachmentState.QUEUED_UPLOAD.value,),
        )
        return row["t"] if row else None

    def update_attachment(
        self,
        attachment_id: str,
        values: dict[str, Any],
        *,
        expected_state: AttachmentState | None = None,
        expected_owner: str | None = None,
    ) -> bool:
        """Conditionally update an attachment row.

        Args:
            attachment_id: Row to update.
            values: Column -> new value (enums are stored by value).
            expected_state: Only update if the row is in this state.
            expected_owner: Only update if the row's lease owner matches.

        Returns:
            True if exactly one row was updated.
        """
        unknown = set(values) - _ATTACHMENT_MUTABLE
        if unknown:
            raise ValueError(f"Cannot update attachment columns: {sorted(unknown)}")

        assignments = ", ".join(f"{column} = ?" for column in values)
        params: list[Any] = [
            v.value if isinstance(v, AttachmentState) else v for v in values.values()
        ]
        sql = f"UPDATE attachments SET {assignments} WHERE id = ?"
        params.append(attachment_id)
        if expected_state is not None:
            sql += " AND state = ?"
            params.append(expected_state.value)
        if expected_owner is not None:
            sql += " AND lease_owner = ?"
            params.append(expected_owner)

        cursor = self._execute(sql, params)
        return cursor.rowcount == 1

    def delete_attachment(self, attachment_id: str) -> bool:
        """Remove an attachment row. Returns True if a row was removed."""
        cursor = self._execute("DELETE FROM attachments WHERE id = ?", (attachment_id,))
        return cursor.rowcount == 1

    def select_purgeable(self, delivered_before: float) -> list[Attachment]:
        """SYNCED rows with a local file whose ADD entry was delivered in time."""
        rows = self._fetchall(
            """
            SELECT a.* FROM attachments a
            JOIN operation_log o
              ON o.attachment_id = a.id AND o.operation_type = ?
            WHERE a.state = ?
              AND a.local_path IS NOT NULL
              AND o.delivered_at IS NOT NULL
              AND o.delivered_at <= ?
            ORDER BY a.created_at, a.rowid
            """,
            (OperationType.ADD.value, AttachmentState.SYNCED.value, delivered_before),
        )
        return [Attachment.from_row(row) for row in rows]

    # === Operation log rows ===

    def key_exists(self, key: str) -> bool:
        """Check the live log and the archive for an idempotency key."""
        row = self._fetchone(
            """
            SELECT 1 FROM operation_log WHERE idempotency_key = ?
            UNION ALL
            SELECT 1 FROM operation_log_archive WHERE idempotency_key = ?
            LIMIT 1
            """,
            (key, key),
        )
        return row is not None

    def insert_entry(self, entry: OperationLogEntry, key: str) -> int | None:
        """Insert a log row unless its idempotency key is already used.

        Returns:
            The assigned sequence number, or None if the key already existed.
        """
        if self.key_exists(key):
            return None
        cursor = self._execute(
            """
            INSERT INTO operation_log (
                id, idempotency_key, operation_type, attachment_id, remote_url,
                owner_metadata_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                key,
                entry.operation_type.value,
                entry.attachment_id,
                entry.remote_url,
                json.dumps(entry.owner_metadata),
                entry.created_at,
            ),
        )
        return cursor.lastrowid

    def get_entry(self, entry_id: str) -> OperationLogEntry | None:
        """Get a live log entry by id."""
        row = self._fetchone(
            f"SELECT {_LOG_COLUMNS} FROM operation_log WHERE id = ?", (entry_id,)
        )
        return OperationLogEntry.from_row(row) if row else None

    def get_entry_by_key(self, key: str) -> OperationLogEntry | None:
        """Get a log entry (live or archived) by idempotency key."""
        row = self._fetchone(
            f"""
            SELECT {_LOG_COLUMNS} FROM operation_log WHERE idempotency_key = ?
            UNION ALL
            SELECT {_LOG_COLUMNS} FROM operation_log_archive WHERE idempotency_key = ?
            LIMIT 1
            """,
            (key, key),
        )
        return OperationLogEntry.from_row(row) if row else None

    def list_entries(
        self,
        attachment_id: str | None = None,
        *,
        failed_only: bool = False,
    ) -> list[OperationLogEntry]:
        """List live log entries in creation order."""
        clauses: list[str] = []
        params: list[Any] = []
        if attachment_id is not None:
            clauses.append("attachment_id = ?")
            params.append(attachment_id)
        if failed_only:
            clauses.append("failed_at IS NOT NULL")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(
            f"SELECT {_LOG_COLUMNS} FROM operation_log{where} ORDER BY seq", params
        )
        return [OperationLogEntry.from_row(row) for row in rows]

    def select_pending_heads(self, now: float, limit: int) -> list[OperationLogEntry]:
        """Oldest undelivered, non-failed entry per attachment that is due.

        An entry behind an older pending entry of the same attachment is never
        returned, which keeps per-attachment order during delivery.
        """
        rows = self._fetchall(
            f"""
            SELECT {_LOG_COLUMNS} FROM operation_log o
            WHERE o.delivered_at IS NULL
              AND o.failed_at IS NULL
              AND o.seq = (
                  SELECT MIN(p.seq) FROM operation_log p
                  WHERE p.attachment_id = o.attachment_id
                    AND p.delivered_at IS NULL
                    AND p.failed_at IS NULL
              )
              AND (o.next_attempt_at IS NULL OR o.next_attempt_at <= ?)
            ORDER BY o.seq
            LIMIT ?
            """,
            (now, limit),
        )
        return [OperationLogEntry.from_row(row) for row in rows]

    def update_entry(self, entry_id: str, values: dict[str, Any]) -> bool:
        """Update delivery bookkeeping of an entry still awaiting delivery.

        Returns:
            True if the entry was pending and has been updated.
        """
        unknown = set(values) - _ENTRY_MUTABLE
        if unknown:
            raise ValueError(f"Cannot update log columns: {sorted(unknown)}")
        assignments = ", ".join(f"{column} = ?" for column in values)
        cursor = self._execute(
            f"""
            UPDATE operation_log SET {assignments}
            WHERE id = ? AND delivered_at IS NULL AND failed_at IS NULL
            """,
            [*values.values(), entry_id],
        )
        return cursor.rowcount == 1

    def count_undelivered(self) -> int:
        """Number of entries neither delivered nor failed."""
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM operation_log "
            "WHERE delivered_at IS NULL AND failed_at IS NULL"
        )
        return row["n"] if row else 0

    def archive_delivered(self, delivered_before: float) -> int:
        """Move delivered entries older than the cutoff to the archive table.

        Must be called inside ``transaction()`` so copy and delete are atomic.

        Returns:
            Number of archived entries.
        """
        self._execute(
            f"""
            INSERT INTO operation_log_archive ({_LOG_COLUMNS})
            SELECT {_LOG_COLUMNS} FROM operation_log
            WHERE delivered_at IS NOT NULL AND delivered_at <= ?
            """,
            (delivered_before,),
        )
        cursor = self._execute(
            "DELETE FROM operation_log WHERE delivered_at IS NOT NULL AND delivered_at <= ?",
            (delivered_before,),
        )
        return cursor.rowcount

    # === Remote delete rows ===

    def insert_remote_delete(self, remote_delete: RemoteDelete) -> bool:
        """Record a remote object to remove unless it is already recorded.

        Returns:
            True if a new row was inserted.
        """
        cursor = self._execute(
            """
            INSERT OR IGNORE INTO remote_deletes (remote_url, attachment_id, created_at)
            VALUES (?, ?, ?)
            """,
            (remote_delete.remote_url, remote_delete.attachment_id, remote_delete.created_at),
        )
        return cursor.rowcount == 1

    def get_remote_delete(self, remote_url: str) -> RemoteDelete | None:
        """Get a remote delete by URL."""
        row = self._fetchone("SELECT * FROM remote_deletes WHERE remote_url = ?", (remote_url,))
        return RemoteDelete.from_row(row) if row else None

    def select_due_remote_deletes(self, now: float, limit: int) -> list[RemoteDelete]:
        """Pending remote deletes whose retry time has passed, oldest first."""
        rows = self._fetchall(
            """
            SELECT * FROM remote_deletes
            WHERE completed_at IS NULL
              AND failed_at IS NULL
              AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
            ORDER BY created_at, rowid
            LIMIT ?
            """,
            (now, limit),
        )
        return [RemoteDelete.from_row(row) for row in rows]

    def update_remote_delete(self, remote_url: str, values: dict[str, Any]) -> bool:
        """Update bookkeeping of a remote delete that is still pending.

        Returns:
            True if the row was pending and has been updated.
        """
        unknown = set(values) - _REMOTE_DELETE_MUTABLE
        if unknown:
            raise ValueError(f"Cannot update remote delete columns: {sorted(unknown)}")
        assignments = ", ".join(f"{column} = ?" for column in values)
        cursor = self._execute(
            f"""
            UPDATE remote_deletes SET {assignments}
            WHERE remote_url = ? AND completed_at IS NULL AND failed_at IS NULL
            """,
            [*values.values(), remote_url],
        )
        return cursor.rowcount == 1

    def count_pending_remote_deletes(self) -> int:
        """Number of remote deletes neither completed nor refused."""
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM remote_deletes "
            "WHERE completed_at IS NULL AND failed_at IS NULL"
        )
        return row["n"] if row else 0
