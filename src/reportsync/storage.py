"""Durable key-value backends for the report queue.

Every backend exposes the same three operations (``read``, ``write``,
``delete``) over opaque bytes, so the queue logic in
:mod:`reportsync.store` is shared between device-local persistence
(files in a workspace directory) and a server-side table (SQLite).
"""

from __future__ import annotations

import os
import re
import sqlite3
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol, runtime_checkable

from filelock import FileLock


@runtime_checkable
class KeyValueStore(Protocol):
    """Persistence medium available without network access."""

    def read(self, key: str) -> Optional[bytes]:
        ...

    def write(self, key: str, data: bytes) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryKeyValueStore:
    """In-process store, lost when the process exits."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def read(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def write(self, key: str, data: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(data)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


_SAFE_KEY = re.compile(r"[^A-Za-z0-9._-]")


class FileKeyValueStore:
    """One file per key inside a directory.

    Writes go to a temporary file that is atomically moved into place,
    and each key is guarded by a ``filelock`` so separate processes
    sharing the directory never interleave their read-modify-write cycles.
    """

    def __init__(self, root: Path, *, lock_timeout: float = 10.0) -> None:
        self._root = Path(root).expanduser()
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock_timeout = lock_timeout
        self._locks: Dict[str, FileLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        return self._root / f"{_SAFE_KEY.sub('_', key)}.json"

    def lock(self, key: str) -> FileLock:
        """Return the advisory lock guarding ``key``.

        The same FileLock instance is returned for a key, which makes it
        re-entrant: callers may hold it around a sequence of
        ``read``/``write`` calls.
        """
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = FileLock(
                    str(self._path(key).with_suffix(".lock")),
                    timeout=self._lock_timeout,
                )
                self._locks[key] = lock
            return lock

    def read(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        with self.lock(key):
            if not path.exists():
                return None
            return path.read_bytes()

    def write(self, key: str, data: bytes) -> None:
        path = self._path(key)
        with self.lock(key):
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)

    def delete(self, key: str) -> None:
        path = self._path(key)
        with self.lock(key):
            if path.exists():
                path.unlink()


KV_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value BLOB NOT NULL,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""


class SQLiteKeyValueStore:
    """SQLite-backed store for server-side deployments."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path).expanduser()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(KV_SCHEMA)
        self._lock = threading.Lock()

    def read(self, key: str) -> Optional[bytes]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT value FROM kv WHERE key = ?", (key,))
            row = cur.fetchone()
        return bytes(row[0]) if row else None

    def write(self, key: str, data: bytes) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO kv(key, value, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, sqlite3.Binary(data)),
                )

    def delete(self, key: str) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def close(self) -> None:
        with self._lock:
            self._conn.close()


__all__ = [
    "FileKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SQLiteKeyValueStore",
]
