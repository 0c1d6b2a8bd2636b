"""Small key/value stores used to persist table state and UI settings."""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator


class StorageError(RuntimeError):
    """Raised when a value cannot be read from or written to the store."""


class KeyValueStore:
    """SQLite-backed string store with a ``localStorage`` style interface."""

    def __init__(self, database_path: str | Path) -> None:
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._initialize()

    def _initialize(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_items (
                    item_key TEXT PRIMARY KEY,
                    item_value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.database_path)
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to open {self.database_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    def get_item(self, key: str) -> str | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT item_value FROM kv_items WHERE item_key = ?", (key,)
            ).fetchone()
        return row["item_value"] if row else None

    def set_item(self, key: str, value: str) -> None:
        timestamp = datetime.now(tz=timezone.utc).isoformat()
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO kv_items (item_key, item_value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(item_key) DO UPDATE SET
                    item_value = excluded.item_value,
                    updated_at = excluded.updated_at
                """,
                (key, str(value), timestamp),
            )
            conn.commit()

    def remove_item(self, key: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM kv_items WHERE item_key = ?", (key,))
            conn.commit()

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock, self._connect() as conn:
            rows = conn.execute("SELECT item_key FROM kv_items ORDER BY item_key").fetchall()
        return [row["item_key"] for row in rows if row["item_key"].startswith(prefix)]


class MemoryStore:
    """In-process store with the same interface, used by tests and previews."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._items: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get_item(self, key: str) -> str | None:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = str(value)

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(key for key in self._items if key.startswith(prefix))
