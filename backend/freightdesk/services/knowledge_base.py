"""Tenant-aware knowledge base: term lookup, conflict checks and prompt context."""
from __future__ import annotations

import sqlite3
from collections import defaultdict
from difflib import SequenceMatcher
from typing import Dict, List, Optional

from freightdesk.core.config import get_settings
from freightdesk.core.errors import KnowledgeStorageError
from freightdesk.core.logging import logger
from freightdesk.models.knowledge import ConflictCheck, KnowledgeEntry, KnowledgeScope
from freightdesk.services.knowledge_state import KnowledgeStateStore, normalize_term


class KnowledgeBase:
    """Single place where term definitions are resolved.

    A customer-scoped entry always wins over a global entry of the same term
    for that customer. Callers must go through ``lookup`` rather than reading
    the store directly.
    """

    def __init__(self, store: Optional[KnowledgeStateStore] = None) -> None:
        settings = get_settings()
        self._store = store or KnowledgeStateStore()
        self._similar_limit = max(1, int(settings.learning_similar_terms_limit))
        self._similarity_threshold = float(settings.learning_similarity_threshold)

    @property
    def store(self) -> KnowledgeStateStore:
        return self._store

    def lookup(self, term: str, customer_id: Optional[str] = None) -> Optional[KnowledgeEntry]:
        if not normalize_term(term):
            return None
        if customer_id:
            row = self._store.find_active_entry(term, KnowledgeScope.CUSTOMER.value, customer_id)
            if row:
                return KnowledgeEntry.model_validate(row)
        row = self._store.find_active_entry(term, KnowledgeScope.GLOBAL.value)
        if row:
            return KnowledgeEntry.model_validate(row)
        return None

    def get_entry(self, entry_id: str) -> KnowledgeEntry:
        row = self._store.get_entry(entry_id)
        if not row:
            raise KeyError(entry_id)
        return KnowledgeEntry.model_validate(row)

    def similar_terms(self, term: str, customer_id: Optional[str] = None) -> List[str]:
        """Existing terms a reviewer may want to compare against. Never auto-resolved."""
        target = normalize_term(term)
        if not target:
            return []
        prefix = target[:3]
        scored: Dict[str, float] = {}
        for existing in self._store.candidate_terms(customer_id):
            existing_lower = normalize_term(existing)
            if existing_lower == target:
                continue
            ratio = SequenceMatcher(None, target, existing_lower).ratio()
            if existing_lower.startswith(prefix) or ratio >= self._similarity_threshold:
                scored[existing] = max(scored.get(existing, 0.0), ratio)
        ranked = sorted(scored.items(), key=lambda item: (-item[1], item[0].lower()))
        return [name for name, _ in ranked[: self._similar_limit]]

    def check_conflicts(self, term: str, customer_id: Optional[str] = None) -> ConflictCheck:
        global_match = self._store.find_active_entry(term, KnowledgeScope.GLOBAL.value)
        customer_match = None
        if customer_id:
            customer_match = self._store.find_active_entry(term, KnowledgeScope.CUSTOMER.value, customer_id)
        return ConflictCheck(
            has_global_conflict=global_match is not None,
            global_definition=(global_match or {}).get("definition"),
            has_customer_conflict=customer_match is not None,
            customer_definition=(customer_match or {}).get("definition"),
            similar_terms=self.similar_terms(term, customer_id),
        )

    def write(self, conn: sqlite3.Connection, entry: KnowledgeEntry) -> KnowledgeEntry:
        """Insert an entry inside the caller's transaction."""
        self._store.insert_entry(conn, entry.model_dump(mode="json"))
        return entry

    def build_entry(
        self,
        conn: sqlite3.Connection,
        term: str,
        definition: str,
        scope: KnowledgeScope,
        created_by: str,
        customer_id: Optional[str] = None,
        category: Optional[str] = None,
        aliases: Optional[List[str]] = None,
        source: str = "learned_approved",
    ) -> KnowledgeEntry:
        if scope == KnowledgeScope.CUSTOMER and not customer_id:
            raise ValueError("customer-scoped entries need a customer id")
        return KnowledgeEntry(
            entry_id=self._store.next_id(conn, "entry", "KE"),
            term=" ".join(term.split()),
            definition=definition.strip(),
            category=category,
            scope=scope,
            customer_id=customer_id if scope == KnowledgeScope.CUSTOMER else None,
            aliases=list(aliases or []),
            source=source,
            created_by=created_by,
        )

    def create_entry(
        self,
        term: str,
        definition: str,
        scope: KnowledgeScope,
        created_by: str,
        customer_id: Optional[str] = None,
        category: Optional[str] = None,
        aliases: Optional[List[str]] = None,
    ) -> KnowledgeEntry:
        """Author an entry directly (administrator path, not via the queue)."""
        if not normalize_term(term) or not definition.strip():
            raise ValueError("term and definition are required")
        existing = self._store.find_active_entry(
            term,
            scope.value,
            customer_id if scope == KnowledgeScope.CUSTOMER else None,
        )
        if existing:
            raise ValueError(f"'{existing['term']}' is already defined at this scope")
        try:
            with self._store.transaction() as conn:
                entry = self.build_entry(
                    conn,
                    term,
                    definition,
                    scope,
                    created_by,
                    customer_id=customer_id,
                    category=category,
                    aliases=aliases,
                    source="admin_manual",
                )
                self.write(conn, entry)
                self._store.insert_audit(
                    conn,
                    "create",
                    "knowledge_entry",
                    entry.entry_id,
                    created_by,
                    term=entry.term,
                    details={"scope": entry.scope_label, "definition": entry.definition},
                )
        except sqlite3.Error as exc:
            logger.error("Knowledge entry write failed", term=term, error=str(exc))
            raise KnowledgeStorageError(str(exc)) from exc
        logger.info("Knowledge entry created", entry_id=entry.entry_id, term=entry.term, scope=entry.scope_label)
        return entry

    def list_entries(
        self,
        scope: Optional[KnowledgeScope] = None,
        customer_id: Optional[str] = None,
    ) -> List[KnowledgeEntry]:
        rows = self._store.list_entries(scope=scope.value if scope else None, customer_id=customer_id)
        return [KnowledgeEntry.model_validate(row) for row in rows]

    def format_for_prompt(self, customer_id: Optional[str] = None) -> str:
        """Render the glossary the assistant sees: customer terms first."""
        customer_entries: List[KnowledgeEntry] = []
        if customer_id:
            customer_entries = self.list_entries(KnowledgeScope.CUSTOMER, customer_id)
        customer_terms = {normalize_term(entry.term) for entry in customer_entries}
        global_entries = [
            entry
            for entry in self.list_entries(KnowledgeScope.GLOBAL)
            if normalize_term(entry.term) not in customer_terms
        ]
        if not customer_entries and not global_entries:
            return ""

        lines = ["## BUSINESS GLOSSARY", ""]
        if customer_entries:
            lines.extend(["### Your Company Terms", ""])
            for entry in customer_entries:
                lines.extend(self._format_entry(entry))
        if global_entries:
            lines.extend(["### Industry Terms", ""])
            by_category: Dict[str, List[KnowledgeEntry]] = defaultdict(list)
            for entry in global_entries:
                by_category[entry.category or "General"].append(entry)
            for category in sorted(by_category):
                lines.extend([f"#### {category}", ""])
                for entry in by_category[category]:
                    lines.extend(self._format_entry(entry))
        return "\n".join(lines).rstrip() + "\n"

    @staticmethod
    def _format_entry(entry: KnowledgeEntry) -> List[str]:
        heading = f"**{entry.term}**"
        if entry.aliases:
            heading += f" (also: {', '.join(entry.aliases)})"
        return [heading, entry.definition, ""]


knowledge_base = KnowledgeBase()
