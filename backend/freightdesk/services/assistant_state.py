"""Persistent state store for assistant sessions and conversations."""
from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, List, Optional

from freightdesk.core.config import get_settings


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


class AssistantStateStore:
    """SQLite-backed persistence for budget sessions and conversation turns.

    Budget rows carry an ``expires_at`` stamp refreshed on every save; rows
    past it read as missing. Conversation turns are append-only.
    """

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | None = None, ttl_seconds: int | None = None) -> None:
        settings = get_settings()
        self._db_path = Path(db_path or settings.assistant_state_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ttl = timedelta(seconds=int(ttl_seconds or settings.budget_session_ttl_seconds))
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=30.0)
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

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS budget_sessions (
                    session_key TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS conversation_turns (
                    turn_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    UNIQUE (session_id, seq)
                );
                CREATE INDEX IF NOT EXISTS idx_conversation_turns_session_seq
                    ON conversation_turns (session_id, seq ASC);
                """
            )
            self._conn.commit()

    def load_budget(self, session_key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT expires_at, data_json FROM budget_sessions WHERE session_key = ?",
                (session_key,),
            ).fetchone()
            if not row:
                return None
            if datetime.fromisoformat(row["expires_at"]) <= _utc_now():
                self._conn.execute("DELETE FROM budget_sessions WHERE session_key = ?", (session_key,))
                self._conn.commit()
                return None
        return json.loads(row["data_json"])

    def save_budget(self, session_key: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = _utc_now()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO budget_sessions (session_key, session_id, expires_at, updated_at, data_json)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(session_key)
                DO UPDATE SET session_id = excluded.session_id, expires_at = excluded.expires_at,
                              updated_at = excluded.updated_at, data_json = excluded.data_json
                """,
                (
                    session_key,
                    str(payload.get("session_id") or ""),
                    (now + self._ttl).isoformat(),
                    now.isoformat(),
                    _json_dumps(payload),
                ),
            )
            self._conn.commit()
        return payload

    def delete_budget(self, session_key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM budget_sessions WHERE session_key = ?", (session_key,))
            self._conn.commit()

    def append_turn(self, session_id: str, payload: Dict[str, Any]) -> int:
        """Append one turn to a session's conversation and return its position."""
        with self._lock:
            row = self._conn.execute(
                "SELECT COALESCE(MAX(seq), -1) AS last_seq FROM conversation_turns WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            seq = int(row["last_seq"]) + 1
            self._conn.execute(
                """
                INSERT INTO conversation_turns (turn_id, session_id, seq, role, created_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(payload["turn_id"]),
                    session_id,
                    seq,
                    str(payload.get("role") or ""),
                    _utc_now().isoformat(),
                    _json_dumps(payload),
                ),
            )
            self._conn.commit()
        return seq

    def list_turns(self, session_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            if limit is None:
                rows = self._conn.execute(
                    """
                    SELECT data_json FROM conversation_turns
                    WHERE session_id = ?
                    ORDER BY seq ASC
                    """,
                    (session_id,),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    """
                    SELECT data_json FROM (
                        SELECT seq, data_json FROM conversation_turns
                        WHERE session_id = ?
                        ORDER BY seq DESC
                        LIMIT ?
                    ) ORDER BY seq ASC
                    """,
                    (session_id, max(0, int(limit))),
                ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def count_turns(self, session_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS total FROM conversation_turns WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return int(row["total"])
