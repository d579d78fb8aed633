"""SQLite-backed snapshot persistence for tenant data stores."""
from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, List, Optional

from datasync.core.logging import logger


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


class SQLiteSnapshotStore:
    """Key/value store of JSON snapshots, one row per tenant storage key.

    ``load`` and ``save`` never raise: persistence is best effort and the
    in-memory state of a store stays authoritative whatever happens here.
    """

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS snapshots (
                    storage_key TEXT PRIMARY KEY,
                    saved_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def load(self, key: Optional[str]) -> Optional[Dict[str, Any]]:
        if not key:
            return None
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT data_json FROM snapshots WHERE storage_key = ?",
                    (key,),
                ).fetchone()
            if not row:
                return None
            data = json.loads(row["data_json"])
        except (sqlite3.Error, ValueError, TypeError) as exc:
            logger.warning("Snapshot load failed", storage_key=key, error=str(exc))
            return None
        if not isinstance(data, dict):
            logger.warning("Ignoring non-object snapshot", storage_key=key)
            return None
        return data

    def save(self, key: Optional[str], state: Dict[str, Any]) -> bool:
        if not key:
            return False
        try:
            saved_at = str(state.get("savedAt") or _utc_now_iso())
            payload = _json_dumps(state)
            with self._lock:
                self._conn.execute(
                    """
                    INSERT INTO snapshots (storage_key, saved_at, data_json)
                    VALUES (?, ?, ?)
                    ON CONFLICT(storage_key)
                    DO UPDATE SET saved_at = excluded.saved_at, data_json = excluded.data_json
                    """,
                    (key, saved_at, payload),
                )
                self._conn.commit()
        except (sqlite3.Error, ValueError, TypeError) as exc:
            logger.warning("Snapshot save failed", storage_key=key, error=str(exc))
            return False
        return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM snapshots WHERE storage_key = ?", (key,))
            self._conn.commit()

    def keys(self) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT storage_key FROM snapshots ORDER BY saved_at DESC"
            ).fetchall()
        return [row["storage_key"] for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
