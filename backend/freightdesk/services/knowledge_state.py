"""Persistent state store for knowledge entries, the learning queue and its audit log."""
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, Iterator, List, Optional

from freightdesk.core.config import get_settings


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def normalize_term(term: str | None) -> str:
    return " ".join(str(term or "").split()).lower()


def customer_key(customer_id: str | None) -> str:
    return str(customer_id or "").strip()


class KnowledgeStateStore:
    """SQLite-backed persistence for knowledge and learning queue rows.

    The connection runs in autocommit mode; every write goes through
    ``transaction()`` so a queue status change and the entry it produces
    commit or roll back together.
    """

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | None = None) -> None:
        settings = get_settings()
        self._db_path = Path(db_path or settings.knowledge_db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
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
                CREATE TABLE IF NOT EXISTS sequences (
                    key_name TEXT PRIMARY KEY,
                    next_value INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS knowledge_entries (
                    entry_id TEXT PRIMARY KEY,
                    term_lower TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    customer_key TEXT NOT NULL DEFAULT '',
                    category TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS idx_knowledge_entries_active_term
                    ON knowledge_entries (scope, customer_key, term_lower) WHERE is_active = 1;
                CREATE INDEX IF NOT EXISTS idx_knowledge_entries_term
                    ON knowledge_entries (term_lower);

                CREATE TABLE IF NOT EXISTS knowledge_aliases (
                    entry_id TEXT NOT NULL,
                    alias_lower TEXT NOT NULL,
                    PRIMARY KEY (entry_id, alias_lower)
                );
                CREATE INDEX IF NOT EXISTS idx_knowledge_aliases_alias
                    ON knowledge_aliases (alias_lower);

                CREATE TABLE IF NOT EXISTS learning_queue (
                    item_id TEXT PRIMARY KEY,
                    term_lower TEXT NOT NULL,
                    customer_key TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_learning_queue_status
                    ON learning_queue (status, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_learning_queue_term
                    ON learning_queue (term_lower, customer_key);

                CREATE TABLE IF NOT EXISTS knowledge_audit (
                    audit_id TEXT PRIMARY KEY,
                    action TEXT NOT NULL,
                    target_type TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    reviewer TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_knowledge_audit_created
                    ON knowledge_audit (created_at DESC);
                """
            )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of writes as one unit of work."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def next_id(self, conn: sqlite3.Connection, key: str, prefix: str) -> str:
        row = conn.execute(
            "SELECT next_value FROM sequences WHERE key_name = ?",
            (key,),
        ).fetchone()
        if row is None:
            value = 1
            conn.execute(
                "INSERT INTO sequences (key_name, next_value) VALUES (?, ?)",
                (key, value + 1),
            )
        else:
            value = int(row["next_value"])
            conn.execute(
                "UPDATE sequences SET next_value = ? WHERE key_name = ?",
                (value + 1, key),
            )
        return f"{prefix}-{value:06d}"

    # Knowledge entries

    def insert_entry(self, conn: sqlite3.Connection, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = _utc_now_iso()
        conn.execute(
            """
            INSERT INTO knowledge_entries
                (entry_id, term_lower, scope, customer_key, category, is_active, created_at, updated_at, data_json)
            VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)
            """,
            (
                payload["entry_id"],
                normalize_term(payload["term"]),
                payload["scope"],
                customer_key(payload.get("customer_id")),
                payload.get("category"),
                now,
                now,
                _json_dumps(payload),
            ),
        )
        for alias in payload.get("aliases") or []:
            self.add_alias(conn, payload["entry_id"], alias)
        return payload

    def update_entry(self, conn: sqlite3.Connection, entry_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        conn.execute(
            """
            UPDATE knowledge_entries
            SET data_json = ?, category = ?, updated_at = ?
            WHERE entry_id = ?
            """,
            (_json_dumps(payload), payload.get("category"), _utc_now_iso(), entry_id),
        )
        return payload

    def deactivate_entry(self, conn: sqlite3.Connection, entry_id: str) -> None:
        conn.execute(
            "UPDATE knowledge_entries SET is_active = 0, updated_at = ? WHERE entry_id = ?",
            (_utc_now_iso(), entry_id),
        )

    def add_alias(self, conn: sqlite3.Connection, entry_id: str, alias: str) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO knowledge_aliases (entry_id, alias_lower) VALUES (?, ?)",
            (entry_id, normalize_term(alias)),
        )

    def get_entry(self, entry_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM knowledge_entries WHERE entry_id = ?",
                (entry_id,),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def find_active_entry(self, term: str, scope: str, customer_id: str | None = None) -> Optional[Dict[str, Any]]:
        """Exact (case-insensitive) match on term or alias within one scope."""
        term_lower = normalize_term(term)
        with self._lock:
            row = self._conn.execute(
                """
                SELECT e.data_json FROM knowledge_entries e
                WHERE e.is_active = 1 AND e.scope = ? AND e.customer_key = ?
                  AND (
                    e.term_lower = ?
                    OR e.entry_id IN (SELECT entry_id FROM knowledge_aliases WHERE alias_lower = ?)
                  )
                ORDER BY CASE WHEN e.term_lower = ? THEN 0 ELSE 1 END, e.created_at DESC
                LIMIT 1
                """,
                (scope, customer_key(customer_id), term_lower, term_lower, term_lower),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def list_entries(
        self,
        scope: str | None = None,
        customer_id: str | None = None,
        term: str | None = None,
        include_inactive: bool = False,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if not include_inactive:
            clauses.append("is_active = 1")
        if scope:
            clauses.append("scope = ?")
            params.append(scope)
        if customer_id is not None:
            clauses.append("customer_key = ?")
            params.append(customer_key(customer_id))
        if term is not None:
            clauses.append("term_lower = ?")
            params.append(normalize_term(term))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT data_json FROM knowledge_entries {where} ORDER BY term_lower ASC, created_at ASC",
                params,
            ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def candidate_terms(self, customer_id: str | None) -> List[str]:
        """Active global terms plus the customer's own terms."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT data_json FROM knowledge_entries
                WHERE is_active = 1 AND (scope = 'global' OR (scope = 'customer' AND customer_key = ?))
                """,
                (customer_key(customer_id),),
            ).fetchall()
        return [str(json.loads(row["data_json"])["term"]) for row in rows]

    # Learning queue

    def insert_item(self, conn: sqlite3.Connection, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = _utc_now_iso()
        conn.execute(
            """
            INSERT INTO learning_queue (item_id, term_lower, customer_key, status, created_at, updated_at, data_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                payload["item_id"],
                normalize_term(payload["term"]),
                customer_key(payload.get("customer_id")),
                payload["status"],
                now,
                now,
                _json_dumps(payload),
            ),
        )
        return payload

    def compare_and_set_item(
        self,
        conn: sqlite3.Connection,
        item_id: str,
        expected_status: str,
        payload: Dict[str, Any],
    ) -> bool:
        """Write ``payload`` only if the stored status still equals ``expected_status``."""
        cursor = conn.execute(
            """
            UPDATE learning_queue
            SET status = ?, updated_at = ?, data_json = ?
            WHERE item_id = ? AND status = ?
            """,
            (payload["status"], _utc_now_iso(), _json_dumps(payload), item_id, expected_status),
        )
        return cursor.rowcount == 1

    def get_item(self, item_id: str, conn: sqlite3.Connection | None = None) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = (conn or self._conn).execute(
                "SELECT data_json FROM learning_queue WHERE item_id = ?",
                (item_id,),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def find_pending_item(
        self,
        conn: sqlite3.Connection,
        term: str,
        customer_id: str | None,
    ) -> Optional[Dict[str, Any]]:
        row = conn.execute(
            """
            SELECT data_json FROM learning_queue
            WHERE term_lower = ? AND customer_key = ? AND status = 'pending'
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (normalize_term(term), customer_key(customer_id)),
        ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def list_items(self, status: str | None = None, limit: int = 500) -> List[Dict[str, Any]]:
        with self._lock:
            if status:
                rows = self._conn.execute(
                    """
                    SELECT data_json FROM learning_queue
                    WHERE status = ?
                    ORDER BY created_at DESC, item_id DESC
                    LIMIT ?
                    """,
                    (status, max(1, min(limit, 5000))),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    """
                    SELECT data_json FROM learning_queue
                    ORDER BY created_at DESC, item_id DESC
                    LIMIT ?
                    """,
                    (max(1, min(limit, 5000)),),
                ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def items_for_entries(self, conn: sqlite3.Connection, entry_ids: List[str]) -> List[Dict[str, Any]]:
        """``approved_customer`` items whose approval created one of ``entry_ids``."""
        if not entry_ids:
            return []
        placeholders = ", ".join("?" for _ in entry_ids)
        rows = conn.execute(
            f"""
            SELECT data_json FROM learning_queue
            WHERE status = 'approved_customer'
              AND json_extract(data_json, '$.created_entry_id') IN ({placeholders})
            ORDER BY created_at ASC, item_id ASC
            """,
            tuple(entry_ids),
        ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS total FROM learning_queue GROUP BY status"
            ).fetchall()
        return {str(row["status"]): int(row["total"]) for row in rows}

    # Audit

    def insert_audit(
        self,
        conn: sqlite3.Connection,
        action: str,
        target_type: str,
        target_id: str,
        reviewer: str,
        term: str | None = None,
        details: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        now = _utc_now_iso()
        payload = {
            "audit_id": self.next_id(conn, "audit", "KA"),
            "action": action,
            "target_type": target_type,
            "target_id": target_id,
            "term": term,
            "reviewer": reviewer,
            "details": details or {},
            "created_at": now,
        }
        conn.execute(
            """
            INSERT INTO knowledge_audit (audit_id, action, target_type, target_id, reviewer, created_at, data_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (payload["audit_id"], action, target_type, target_id, reviewer, now, _json_dumps(payload)),
        )
        return payload

    def list_audit(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT data_json FROM knowledge_audit
                ORDER BY created_at DESC, audit_id DESC
                LIMIT ?
                """,
                (max(1, min(limit, 1000)),),
            ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]
