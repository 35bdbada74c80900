"""
Watcher persistence.

`WatcherStore` is the interface the manager depends on; `SQLiteWatcherStore`
keeps each watcher as a JSON document in a single table.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Union

from .exceptions import StoreError
from .models import Watcher

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS watchers (
    id          TEXT PRIMARY KEY,
    payload     TEXT NOT NULL,
    created_at  REAL NOT NULL,
    updated_at  REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_watchers_created ON watchers(created_at);
"""


class WatcherStore(ABC):
    """Storage of watcher definitions."""

    @abstractmethod
    def load_all(self) -> List[Watcher]:
        """Load every watcher, newest first."""

    @abstractmethod
    def load(self, watcher_id: str) -> Optional[Watcher]:
        """Load one watcher, or None if it does not exist."""

    @abstractmethod
    def save(self, watcher: Watcher) -> None:
        """Insert or replace a watcher."""

    @abstractmethod
    def delete(self, watcher_id: str) -> bool:
        """Delete a watcher. Returns True if it existed."""

    def close(self) -> None:
        pass


class SQLiteWatcherStore(WatcherStore):
    """SQLite-backed watcher store."""

    def __init__(self, db_path: Union[str, Path]) -> None:
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def load_all(self) -> List[Watcher]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, payload FROM watchers ORDER BY created_at DESC"
            ).fetchall()

        watchers = []
        for row in rows:
            try:
                watchers.append(Watcher.from_dict(json.loads(row["payload"])))
            except (ValueError, KeyError, TypeError) as e:
                logger.error("Failed to load watcher %s: %s", row["id"], e)
        return watchers

    def load(self, watcher_id: str) -> Optional[Watcher]:
        with self._lock:
            row = self._conn.execute(
                "SELECT payload FROM watchers WHERE id = ?", (watcher_id,)
            ).fetchone()
        if row is None:
            return None
        try:
            return Watcher.from_dict(json.loads(row["payload"]))
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Failed to load watcher %s: %s", watcher_id, e)
            return None

    def save(self, watcher: Watcher) -> None:
        payload = json.dumps(watcher.to_dict(), sort_keys=True)
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT OR REPLACE INTO watchers (id, payload, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    (watcher.id, payload, watcher.created_at, watcher.updated_at),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to save watcher {watcher.id}: {e}") from e

    def delete(self, watcher_id: str) -> bool:
        try:
            with self._lock:
                cursor = self._conn.execute("DELETE FROM watchers WHERE id = ?", (watcher_id,))
                self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete watcher {watcher_id}: {e}") from e
        return cursor.rowcount > 0

    def __len__(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM watchers").fetchone()[0]
