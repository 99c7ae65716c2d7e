"""Key-value persistence for anchoring state."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any, Dict


class StorageError(RuntimeError):
    """Raised when anchoring state cannot be read or written.

    This is the only error class that must abort a block commit.
    """


class Storage:
    """Interface for storing JSON-compatible values under string keys."""

    def get(self, key: str) -> Any | None:
        raise NotImplementedError

    def put(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryStorage(Storage):
    """In-process storage; values are copied through JSON like the SQLite backend."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def put(self, key: str, value: Any) -> None:
        try:
            self._data[key] = json.dumps(value, sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Value for {key} is not serializable: {exc}") from exc

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class SQLiteStorage(Storage):
    """Persist anchoring state to a local SQLite database."""

    DEFAULT_DB_PATH = Path.home() / ".btc-anchoring" / "state.sqlite"

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path)
            self._init_schema()
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"Cannot open anchoring storage at {self.db_path}: {exc}") from exc

    def _init_schema(self) -> None:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "SQLiteStorage":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - convenience
        self.close()

    def get(self, key: str) -> Any | None:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT value FROM kv WHERE key = ?", (key,))
            row = cursor.fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read {key}: {exc}") from exc
        return None if row is None else json.loads(row[0])

    def put(self, key: str, value: Any) -> None:
        try:
            encoded = json.dumps(value, sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Value for {key} is not serializable: {exc}") from exc
        try:
            cursor = self.conn.cursor()
            cursor.execute("INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", (key, encoded))
            self.conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to write {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM kv WHERE key = ?", (key,))
            self.conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to delete {key}: {exc}") from exc


__all__ = ["Storage", "StorageError", "MemoryStorage", "SQLiteStorage"]
