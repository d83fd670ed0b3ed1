"""
Synchronous string-keyed storage backends.

The local store serializes a whole tenant into a single string value, so the
backends only need get/set/delete of text under a key. Two backends exist:
- SqliteKeyValueStore: durable single-file store (default)
- MemoryKeyValueStore: process-local dict for tests

Invariants:
    - set() is atomic: a reader sees the old value or the new one, never a mix
    - Backends raise PersistenceError, never a driver exception

How to change safely:
    - Keep the table layout backward compatible; devices keep their files
    - Keep every call synchronous; callers rely on write-before-return

Table schema:
    kv:
        - key TEXT PRIMARY KEY
        - value TEXT
        - updated_at INTEGER (Unix ms)
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..errors import PersistenceError

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    """Protocol for synchronous string-keyed storage."""

    def get(self, key: str) -> str | None:
        """Return the stored value, None if absent."""
        ...

    def set(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value."""
        ...

    def delete(self, key: str) -> None:
        """Remove key. Removing an absent key is not an error."""
        ...


class MemoryKeyValueStore:
    """Dict-backed KeyValueStore.

    Attributes:
        fail_writes: When True set() raises PersistenceError (quota simulation)
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self.fail_writes = False

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise PersistenceError("Storage quota exceeded", key=key)
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class SqliteKeyValueStore:
    """SQLite-backed KeyValueStore.

    A connection is opened per operation; SQLite's WAL journal handles
    concurrent readers from other processes (e.g. a backup tool).

    Example:
        >>> kv = SqliteKeyValueStore("/var/lib/possync/possync.db")
        >>> kv.set("posData_store-1", '{"version": 1}')
        >>> kv.get("posData_store-1")
        '{"version": 1}'
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000, wal_mode: bool = True) -> None:
        """Initialize the store.

        Args:
            db_path: Path of the SQLite file (created on first use)
            busy_timeout_ms: SQLite busy timeout
            wal_mode: Enable SQLite WAL mode
        """
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode
        self._schema_ready = False

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if not self._schema_ready:
                conn.execute(
                    "CREATE TABLE IF NOT EXISTS kv ("
                    " key TEXT PRIMARY KEY,"
                    " value TEXT NOT NULL,"
                    " updated_at INTEGER NOT NULL)"
                )
                self._schema_ready = True
            yield conn
        finally:
            conn.close()

    def get(self, key: str) -> str | None:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Failed to read key: {e}", key=key) from e
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET "
                    "value = excluded.value, updated_at = excluded.updated_at",
                    (key, value, int(time.time() * 1000)),
                )
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Failed to write key: {e}", key=key) from e

    def delete(self, key: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Failed to delete key: {e}", key=key) from e
