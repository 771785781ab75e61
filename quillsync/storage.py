"""Durable key-value storage for offline state.

Each component keeps its data in its own bucket (a namespace of keys).
Values are JSON-serializable and every key is persisted independently;
there are no transactions across keys.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

STORAGE_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    bucket TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (bucket, key)
);
"""


class StorageError(Exception):
    """Raised when the underlying storage fails to read or write."""


class KeyValueStore(ABC):
    """Asynchronous key-value storage of one bucket."""

    name: str

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        """Get a value, or default if the key is not stored."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store a value under a key."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove all keys of the bucket."""

    @abstractmethod
    async def keys(self) -> list[str]:
        """List all stored keys of the bucket."""


class MemoryStore(KeyValueStore):
    """Non-durable store, used for tests and ephemeral sessions."""

    def __init__(self, name: str = "memory"):
        self.name = name
        self._data: dict[str, str] = {}

    async def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return json.loads(self._data[key])

    async def set(self, key: str, value: Any) -> None:
        # serialize to get the same copy semantics as the durable store
        self._data[key] = json.dumps(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()

    async def keys(self) -> list[str]:
        return list(self._data)


class SQLiteStorage:
    """SQLite database holding the buckets of all components."""

    def __init__(self, db_path: str | Path):
        """Initialize the storage.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.executescript(STORAGE_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open storage {self.db_path}: {e}") from e

        logger.info(f"Storage connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def bucket(self, name: str) -> "SQLiteBucket":
        """Get the store for one bucket."""
        return SQLiteBucket(self, name)

    def execute(self, sql: str, params: tuple = ()) -> list[tuple]:
        """Run a statement and commit, wrapping database errors."""
        conn = self._ensure_connected()
        try:
            rows = conn.execute(sql, params).fetchall()
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        return rows


class SQLiteBucket(KeyValueStore):
    """One bucket of a SQLiteStorage."""

    def __init__(self, storage: SQLiteStorage, name: str):
        self.storage = storage
        self.name = name

    async def get(self, key: str, default: Any = None) -> Any:
        rows = self.storage.execute(
            "SELECT value FROM kv_store WHERE bucket = ? AND key = ?",
            (self.name, key),
        )
        if not rows:
            return default
        return json.loads(rows[0][0])

    async def set(self, key: str, value: Any) -> None:
        self.storage.execute(
            """
            INSERT INTO kv_store (bucket, key, value) VALUES (?, ?, ?)
            ON CONFLICT(bucket, key) DO UPDATE SET value = excluded.value
            """,
            (self.name, key, json.dumps(value)),
        )

    async def remove(self, key: str) -> None:
        self.storage.execute(
            "DELETE FROM kv_store WHERE bucket = ? AND key = ?",
            (self.name, key),
        )

    async def clear(self) -> None:
        self.storage.execute("DELETE FROM kv_store WHERE bucket = ?", (self.name,))

    async def keys(self) -> list[str]:
        rows = self.storage.execute(
            "SELECT key FROM kv_store WHERE bucket = ? ORDER BY key",
            (self.name,),
        )
        return [row[0] for row in rows]


class MemoryStorage:
    """Non-durable counterpart of SQLiteStorage."""

    def __init__(self):
        self._buckets: dict[str, MemoryStore] = {}

    def connect(self) -> None:
        pass

    def close(self) -> None:
        pass

    def bucket(self, name: str) -> MemoryStore:
        if name not in self._buckets:
            self._buckets[name] = MemoryStore(name)
        return self._buckets[name]
