"""Durable key-value tier for the cache.

The cache only needs get/put/delete with a per-key TTL. ``SQLiteKVStore``
keeps entries in a single table so they survive a process restart.
"""

import asyncio
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Union
from pathlib import Path


class KeyValueStore(ABC):
    """Absence is ``None``; any raised exception means the store is unavailable."""

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]: ...

    @abstractmethod
    async def put(self, key: str, value: bytes, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...


class SQLiteKVStore(KeyValueStore):
    def __init__(self, db_path: Union[Path, str], clock: Callable[[], float] = time.time):
        self.db_path = Path(db_path)
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def _ensure_connected(self) -> sqlite3.Connection:
        """Open the database and create the schema on first use."""
        if self._conn is not None:
            return self._conn

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Calls arrive from worker threads; access is serialized by self._lock.
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_entries (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL,
                expires_at REAL NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_expires
            ON kv_entries(expires_at)
        """)
        self._conn.commit()
        return self._conn

    async def get(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self.get_sync, key)

    async def put(self, key: str, value: bytes, ttl_seconds: int) -> None:
        await asyncio.to_thread(self.put_sync, key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self.delete_sync, key)

    def get_sync(self, key: str) -> Optional[bytes]:
        with self._lock:
            conn = self._ensure_connected()
            row = conn.execute(
                "SELECT value, expires_at FROM kv_entries WHERE key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            if row[1] <= self._clock():
                conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
                conn.commit()
                return None
            return bytes(row[0])

    def put_sync(self, key: str, value: bytes, ttl_seconds: int) -> None:
        with self._lock:
            conn = self._ensure_connected()
            conn.execute(
                """
                INSERT INTO kv_entries (key, value, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at
                """,
                (key, sqlite3.Binary(value), self._clock() + ttl_seconds),
            )
            conn.commit()

    def delete_sync(self, key: str) -> None:
        with self._lock:
            conn = self._ensure_connected()
            conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
            conn.commit()

    def purge_expired(self) -> int:
        """Delete every expired row and return how many were removed."""
        with self._lock:
            conn = self._ensure_connected()
            cursor = conn.execute(
                "DELETE FROM kv_entries WHERE expires_at <= ?",
                (self._clock(),),
            )
            conn.commit()
            return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
