# skillhost/runtime/storage.py
from __future__ import annotations
import json
import logging
import os
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_DB = "data/context.db"

# faults the context store treats as transient and retries
TRANSIENT_ERRORS: Tuple[type, ...] = (OSError, sqlite3.Error)


@dataclass(frozen=True)
class StoredEntry:
    """One durable record per (skill_id, key)."""
    key: str
    value: Any
    expires_at: Optional[float]
    updated_at: float


# -------------------------
# Storage Adapter Interface
# -------------------------
class StorageAdapter:
    """
    Durable tier used by ContextStore for persist=True entries only.
    write() must not return before the record is durable.
    """

    def init(self) -> None:
        raise NotImplementedError()

    def load_all(self, skill_id: str) -> List[StoredEntry]:
        raise NotImplementedError()

    def write(self, skill_id: str, key: str, value: Any, expires_at: Optional[float]) -> None:
        raise NotImplementedError()

    def delete(self, skill_id: str, key: str) -> None:
        raise NotImplementedError()

    def delete_all(self, skill_id: str) -> None:
        raise NotImplementedError()

    def close(self) -> None:
        raise NotImplementedError()


# -------------------------
# SQLite StorageAdapter
# -------------------------
class SQLiteStorageAdapter(StorageAdapter):
    def __init__(self, db_path: str = DEFAULT_DB):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)

    def init(self) -> None:
        with self._lock:
            if self.conn is not None:
                return
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.execute("PRAGMA synchronous=FULL;")
            self._ensure_tables()

    def _ensure_tables(self) -> None:
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS context_entries (
                    skill_id TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value_json TEXT NOT NULL,
                    expires_at REAL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (skill_id, key)
                )
                """
            )

    def _conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise sqlite3.ProgrammingError("storage adapter not initialised or already closed")
        return self.conn

    def load_all(self, skill_id: str) -> List[StoredEntry]:
        with self._lock:
            cur = self._conn().execute(
                "SELECT key, value_json, expires_at, updated_at FROM context_entries WHERE skill_id = ?",
                (skill_id,),
            )
            rows = cur.fetchall()
        out = []
        for key, value_json, expires_at, updated_at in rows:
            try:
                value = json.loads(value_json)
            except ValueError:
                logger.error("Dropping unreadable durable entry", extra={"skill_id": skill_id, "key": key})
                continue
            out.append(StoredEntry(key=key, value=value, expires_at=expires_at, updated_at=updated_at))
        return out

    def write(self, skill_id: str, key: str, value: Any, expires_at: Optional[float]) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        with self._lock:
            conn = self._conn()
            with conn:
                conn.execute(
                    """
                    INSERT INTO context_entries (skill_id, key, value_json, expires_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(skill_id, key) DO UPDATE SET
                        value_json=excluded.value_json,
                        expires_at=excluded.expires_at,
                        updated_at=excluded.updated_at
                    """,
                    (skill_id, key, payload, expires_at, time.time()),
                )

    def delete(self, skill_id: str, key: str) -> None:
        with self._lock:
            conn = self._conn()
            with conn:
                conn.execute("DELETE FROM context_entries WHERE skill_id = ? AND key = ?", (skill_id, key))

    def delete_all(self, skill_id: str) -> None:
        with self._lock:
            conn = self._conn()
            with conn:
                conn.execute("DELETE FROM context_entries WHERE skill_id = ?", (skill_id,))

    def count(self) -> int:
        with self._lock:
            return self._conn().execute("SELECT COUNT(*) FROM context_entries").fetchone()[0]

    def close(self) -> None:
        with self._lock:
            if self.conn:
                try:
                    self.conn.close()
                except sqlite3.Error:
                    logger.exception("Failed closing context storage")
                self.conn = None


# -------------------------
# In-process StorageAdapter
# -------------------------
class MemoryStorageAdapter(StorageAdapter):
    """
    Durable only for the lifetime of this object. Sharing one instance between
    two ContextStore instances simulates a process restart.
    """

    def __init__(self) -> None:
        self._rows: Dict[Tuple[str, str], StoredEntry] = {}
        self._lock = threading.Lock()

    def init(self) -> None:
        return None

    def load_all(self, skill_id: str) -> List[StoredEntry]:
        with self._lock:
            return [e for (sid, _), e in self._rows.items() if sid == skill_id]

    def write(self, skill_id: str, key: str, value: Any, expires_at: Optional[float]) -> None:
        # round-trip through json so stored values are detached from the caller's objects
        value = json.loads(json.dumps(value))
        with self._lock:
            self._rows[(skill_id, key)] = StoredEntry(key=key, value=value, expires_at=expires_at, updated_at=time.time())

    def delete(self, skill_id: str, key: str) -> None:
        with self._lock:
            self._rows.pop((skill_id, key), None)

    def delete_all(self, skill_id: str) -> None:
        with self._lock:
            for k in [k for k in self._rows if k[0] == skill_id]:
                del self._rows[k]

    def count(self) -> int:
        with self._lock:
            return len(self._rows)

    def close(self) -> None:
        return None


def make_storage_adapter(backend: str, path: str = DEFAULT_DB) -> StorageAdapter:
    if backend == "sqlite":
        return SQLiteStorageAdapter(path)
    if backend == "memory":
        return MemoryStorageAdapter()
    raise ValueError(f"unknown storage backend '{backend}'")
