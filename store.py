"""Key-value storage for panel records.

Values are JSON documents stored in a single SQLite table. Every call opens
its own short-lived connection, so the store can be shared between request
handlers and the background worker.
"""

import copy
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock

from errors import StorageError


class SQLiteStore:
    """JSON key-value store backed by SQLite, with atomic batches."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._init_lock = Lock()
        self._ready = False

    def _connect(self) -> sqlite3.Connection:
        self._ensure_table()
        conn = sqlite3.connect(self.path, timeout=5)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_table(self) -> None:
        if self._ready:
            return
        with self._init_lock:
            if self._ready:
                return
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self.path, timeout=5)
                try:
                    conn.execute("PRAGMA journal_mode=WAL")
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS kv (
                            key TEXT PRIMARY KEY,
                            value TEXT NOT NULL,
                            updated_at TEXT NOT NULL
                        )
                    """)
                    conn.commit()
                finally:
                    conn.close()
            except (sqlite3.Error, OSError) as e:
                raise StorageError(f"Cannot initialise store at {self.path}: {e}") from e
            self._ready = True

    def get(self, key: str):
        try:
            conn = self._connect()
            try:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read {key}: {e}") from e
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt value stored under {key}: {e}") from e

    def set(self, key: str, value) -> None:
        self.batch().set(key, value).write()

    def delete(self, key: str) -> None:
        self.batch().delete(key).write()

    def batch(self) -> "Batch":
        return Batch(self)

    def _apply(self, operations: list[tuple[str, str, str | None]]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        try:
            conn = self._connect()
            try:
                with conn:
                    for op, key, payload in operations:
                        if op == "set":
                            conn.execute("""
                                INSERT INTO kv(key, value, updated_at) VALUES(?, ?, ?)
                                ON CONFLICT(key) DO UPDATE SET
                                    value = excluded.value,
                                    updated_at = excluded.updated_at
                            """, (key, payload, now))
                        else:
                            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            finally:
                conn.close()
        except sqlite3.Error as e:
            keys = ", ".join(key for _, key, _ in operations)
            raise StorageError(f"Failed to write {keys}: {e}") from e


class Batch:
    """Collects set/delete operations and commits them in one transaction."""

    def __init__(self, store: SQLiteStore):
        self._store = store
        self._operations: list[tuple[str, str, str | None]] = []

    def set(self, key: str, value) -> "Batch":
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key} is not JSON serialisable: {e}") from e
        self._operations.append(("set", key, payload))
        return self

    def delete(self, key: str) -> "Batch":
        self._operations.append(("delete", key, None))
        return self

    del_ = delete

    def write(self) -> None:
        if not self._operations:
            return
        self._store._apply(self._operations)
        self._operations = []


class MemoryStore:
    """Dictionary-backed store. Has no batch support."""

    def __init__(self, data: dict | None = None):
        self.data = copy.deepcopy(data) if data else {}

    def get(self, key: str):
        value = self.data.get(key)
        return copy.deepcopy(value)

    def set(self, key: str, value) -> None:
        self.data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


def supports_batch(store) -> bool:
    return callable(getattr(store, "batch", None))


def instance_key(container_id: str) -> str:
    return f"{container_id}_instance"


def user_instances_key(user_id: str) -> str:
    return f"{user_id}_instances"


GLOBAL_INSTANCES_KEY = "instances"
PENDING_DELETES_KEY = "pending_deletes"
