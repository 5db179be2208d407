"""Durable key-value storage used by the operation log."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol, runtime_checkable

from .errors import StorageError

_LOGGER = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStorage(Protocol):
    """Minimal synchronous storage contract."""

    def get(self, key: str) -> bytes | None: ...

    def set(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys_with_prefix(self, prefix: str) -> list[str]: ...


class MemoryStorage:
    """Dictionary-backed storage for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys_with_prefix(self, prefix: str) -> list[str]:
        return sorted(key for key in self._data if key.startswith(prefix))

    def __len__(self) -> int:
        return len(self._data)


class SQLiteStorage:
    """SQLite-backed storage. ``:memory:`` keeps one shared connection."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._is_memory = str(path) == ":memory:"
        if not self._is_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._shared_conn: sqlite3.Connection | None = None
        self._ensure_schema()

    # ------------------------------------------------------------------
    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            if self._is_memory:
                if self._shared_conn is None:
                    self._shared_conn = sqlite3.connect(":memory:")
                yield self._shared_conn
            else:
                conn = sqlite3.connect(self.path)
                try:
                    yield conn
                finally:
                    conn.close()
        except sqlite3.Error as err:
            raise StorageError(f"storage failure at {self.path}: {err}", reason="sqlite") from err

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL
                )
                """
            )
            conn.commit()

    # ------------------------------------------------------------------
    def get(self, key: str) -> bytes | None:
        with self._connection() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return bytes(row[0])

    def set(self, key: str, value: bytes) -> None:
        with self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv(key, value) VALUES(?, ?)",
                (key, sqlite3.Binary(bytes(value))),
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with self._connection() as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()

    def keys_with_prefix(self, prefix: str) -> list[str]:
        # LIKE is case-insensitive in SQLite, so compare the prefix exactly.
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [row[0] for row in rows]

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None
            _LOGGER.debug("Closed in-memory storage connection")


__all__ = ["KeyValueStorage", "MemoryStorage", "SQLiteStorage"]
