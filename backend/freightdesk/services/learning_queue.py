"""Human-reviewed promotion of assistant-inferred knowledge.

Items enter as ``pending`` and leave through exactly one reviewer decision.
Every decision is a compare-and-set on the stored status inside the same
transaction that writes the resulting knowledge entry, so two reviewers
racing on one item cannot both succeed and a failed write leaves the item
``pending``.
"""
from __future__ import annotations

import re
import sqlite3
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from freightdesk.core.config import get_settings
from freightdesk.core.errors import InvalidStateTransition, KnowledgeStorageError
from freightdesk.core.logging import logger
from freightdesk.models.knowledge import (
    KnowledgeAuditRecord,
    KnowledgeEntry,
    KnowledgeScope,
    LearningCandidate,
    LearningQueueItem,
    LearningStatus,
    PromotionResult,
    QueueTally,
    RejectionSignal,
)
from freightdesk.services.knowledge_base import KnowledgeBase, knowledge_base
from freightdesk.services.knowledge_state import normalize_term


_DEFINITION_NOISE = re.compile(r"[^a-z0-9 ]+")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_definition(text: str) -> str:
    lowered = _DEFINITION_NOISE.sub(" ", str(text or "").lower())
    return " ".join(lowered.split())


class LearningQueue:
    """Triage and promotion pipeline for learning candidates."""

    def __init__(self, knowledge_base: Optional[KnowledgeBase] = None) -> None:
        settings = get_settings()
        self._kb = knowledge_base or KnowledgeBase()
        self._store = self._kb.store
        self._rejection_threshold = max(1, int(settings.learning_rejection_signal_threshold))

    @property
    def knowledge_base(self) -> KnowledgeBase:
        return self._kb

    def submit(self, candidate: LearningCandidate) -> LearningQueueItem:
        term = " ".join(candidate.term.split())
        if not term:
            raise ValueError("candidate term is empty")
        customer_id = (candidate.customer_id or "").strip() or None
        scope = candidate.suggested_scope if customer_id else KnowledgeScope.GLOBAL
        conflicts = self._kb.check_conflicts(term, customer_id)

        try:
            with self._store.transaction() as conn:
                existing = self._store.find_pending_item(conn, term, customer_id)
                if existing:
                    item = LearningQueueItem.model_validate(existing)
                    refreshed = item.model_copy(
                        update={
                            "original_query": candidate.original_query or item.original_query,
                            "user_explanation": candidate.user_explanation or item.user_explanation,
                            "ai_interpretation": candidate.ai_interpretation or item.ai_interpretation,
                            "confidence_score": max(item.confidence_score, candidate.confidence_score),
                        }
                    )
                    self._store.compare_and_set_item(
                        conn,
                        item.item_id,
                        LearningStatus.PENDING.value,
                        refreshed.model_dump(mode="json"),
                    )
                    self._store.insert_audit(conn, "refresh", "learning_item", item.item_id, "assistant", term=term)
                    created = False
                else:
                    refreshed = LearningQueueItem(
                        item_id=self._store.next_id(conn, "queue", "KQ"),
                        term=term,
                        original_query=candidate.original_query,
                        user_explanation=candidate.user_explanation,
                        ai_interpretation=candidate.ai_interpretation,
                        suggested_scope=scope,
                        suggested_category=candidate.suggested_category,
                        confidence_score=candidate.confidence_score,
                        customer_id=customer_id,
                        conflicts_with_global=conflicts.has_global_conflict,
                        conflicts_with_customer=conflicts.has_customer_conflict,
                        global_definition=conflicts.global_definition,
                        customer_definition=conflicts.customer_definition,
                        similar_existing_terms=conflicts.similar_terms,
                    )
                    self._store.insert_item(conn, refreshed.model_dump(mode="json"))
                    self._store.insert_audit(
                        conn,
                        "submit",
                        "learning_item",
                        refreshed.item_id,
                        "assistant",
                        term=term,
                        details={
                            "customer_id": customer_id,
                            "conflicts_with_global": refreshed.conflicts_with_global,
                            "conflicts_with_customer": refreshed.conflicts_with_customer,
                        },
                    )
                    created = True
        except sqlite3.Error as exc:
            logger.error("Learning candidate not queued", term=term, error=str(exc))
            raise KnowledgeStorageError(str(exc)) from exc

        logger.info(
            "Learning candidate queued" if created else "Learning candidate refreshed",
            item_id=refreshed.item_id,
            term=term,
            customer_id=customer_id,
            conflicts_with_global=refreshed.conflicts_with_global,
            conflicts_with_customer=refreshed.conflicts_with_customer,
        )
        return refreshed

    def get(self, item_id: str) -> LearningQueueItem:
        row = self._store.get_item(item_id)
        if not row:
            raise KeyError(item_id)
        return LearningQueueItem.model_validate(row)

    def _load_pending(self, conn: sqlite3.Connection, item_id: str, action: str) -> LearningQueueItem:
        row = self._store.get_item(item_id, conn)
        if not row:
            raise KeyError(item_id)
        item = LearningQueueItem.model_validate(row)
        if item.status != LearningStatus.PENDING:
            raise InvalidStateTransition(f"cannot {action} item {item_id} in status {item.status.value}")
        return item

    def _close(
        self,
        conn: sqlite3.Connection,
        item: LearningQueueItem,
        status: LearningStatus,
        reviewer: str,
        expected: LearningStatus = LearningStatus.PENDING,
        **fields: Any,
    ) -> LearningQueueItem:
        updated = item.model_copy(
            update={"status": status, "reviewed_by": reviewer, "reviewed_at": _utcnow(), **fields}
        )
        if not self._store.compare_and_set_item(conn, item.item_id, expected.value, updated.model_dump(mode="json")):
            raise InvalidStateTransition(f"item {item.item_id} changed while being reviewed")
        return updated

    def _run(self, action: str, item_id: str, reviewer: str, work):
        try:
            with self._store.transaction() as conn:
                return work(conn)
        except InvalidStateTransition as exc:
            logger.warning("Rejected learning queue transition", action=action, item_id=item_id, reviewer=reviewer, error=str(exc))
            raise
        except sqlite3.Error as exc:
            logger.error("Learning queue write failed", action=action, item_id=item_id, reviewer=reviewer, error=str(exc))
            raise KnowledgeStorageError(str(exc)) from exc

    def _approve(
        self,
        conn: sqlite3.Connection,
        item: LearningQueueItem,
        scope: KnowledgeScope,
        definition: str,
        reviewer: str,
        customer_id: Optional[str],
        term: Optional[str],
        category: Optional[str],
        replace_existing: bool,
    ) -> KnowledgeEntry:
        final_term = " ".join((term or item.term).split())
        existing = self._store.find_active_entry(final_term, scope.value, customer_id)
        if existing:
            if not replace_existing:
                raise ValueError(
                    f"'{existing['term']}' is already defined at this scope; "
                    "merge into it or approve with replace_existing"
                )
            self._store.deactivate_entry(conn, existing["entry_id"])
            self._store.insert_audit(
                conn,
                "supersede",
                "knowledge_entry",
                existing["entry_id"],
                reviewer,
                term=existing["term"],
                details={"superseded_by_item": item.item_id, "previous_definition": existing["definition"]},
            )
        entry = self._kb.build_entry(
            conn,
            final_term,
            definition,
            scope,
            reviewer,
            customer_id=customer_id,
            category=category or item.suggested_category,
        )
        self._kb.write(conn, entry)
        status = LearningStatus.APPROVED_GLOBAL if scope == KnowledgeScope.GLOBAL else LearningStatus.APPROVED_CUSTOMER
        self._close(conn, item, status, reviewer, created_entry_id=entry.entry_id)
        self._store.insert_audit(
            conn,
            status.value,
            "learning_item",
            item.item_id,
            reviewer,
            term=entry.term,
            details={"entry_id": entry.entry_id, "scope": entry.scope_label, "definition": entry.definition},
        )
        return entry

    def approve_as_global(
        self,
        item_id: str,
        definition: str,
        reviewer: str,
        term: Optional[str] = None,
        category: Optional[str] = None,
        replace_existing: bool = False,
    ) -> KnowledgeEntry:
        if not definition or not definition.strip():
            raise ValueError("definition is required")
        if not reviewer:
            raise ValueError("reviewer is required")

        def work(conn):
            item = self._load_pending(conn, item_id, "approve")
            return self._approve(conn, item, KnowledgeScope.GLOBAL, definition, reviewer, None, term, category, replace_existing)

        entry = self._run("approve_global", item_id, reviewer, work)
        logger.info("Learning item approved as global", item_id=item_id, entry_id=entry.entry_id, reviewer=reviewer)
        return entry

    def approve_as_customer(
        self,
        item_id: str,
        customer_id: Optional[str],
        definition: str,
        reviewer: str,
        override_customer: bool = False,
        term: Optional[str] = None,
        category: Optional[str] = None,
        replace_existing: bool = False,
    ) -> KnowledgeEntry:
        if not definition or not definition.strip():
            raise ValueError("definition is required")
        if not reviewer:
            raise ValueError("reviewer is required")
        requested = (customer_id or "").strip() or None

        def work(conn):
            item = self._load_pending(conn, item_id, "approve")
            target = requested or item.customer_id
            if not target:
                raise ValueError("a customer id is required to approve a global-only candidate for a customer")
            if target != item.customer_id and not override_customer:
                raise ValueError(
                    f"item belongs to customer {item.customer_id or 'none'}; set override_customer to approve for {target}"
                )
            return self._approve(conn, item, KnowledgeScope.CUSTOMER, definition, reviewer, target, term, category, replace_existing)

        entry = self._run("approve_customer", item_id, reviewer, work)
        logger.info(
            "Learning item approved for customer",
            item_id=item_id,
            entry_id=entry.entry_id,
            customer_id=entry.customer_id,
            reviewer=reviewer,
        )
        return entry

    def reject(self, item_id: str, reviewer: str, reason: str) -> LearningQueueItem:
        if not reason or not reason.strip():
            raise ValueError("a rejection reason is required")
        if not reviewer:
            raise ValueError("reviewer is required")

        def work(conn):
            item = self._load_pending(conn, item_id, "reject")
            updated = self._close(conn, item, LearningStatus.REJECTED, reviewer, review_notes=reason.strip())
            self._store.insert_audit(
                conn,
                "rejected",
                "learning_item",
                item_id,
                reviewer,
                term=item.term,
                details={"reason": reason.strip()},
            )
            return updated

        updated = self._run("reject", item_id, reviewer, work)
        logger.info("Learning item rejected", item_id=item_id, reviewer=reviewer, term=updated.term)
        return updated

    def merge_into_existing(self, item_id: str, entry_id: str, reviewer: str) -> KnowledgeEntry:
        """Record a pending item's term as an alias of an existing entry."""
        if not reviewer:
            raise ValueError("reviewer is required")

        def work(conn):
            item = self._load_pending(conn, item_id, "merge")
            row = self._store.get_entry(entry_id)
            if not row:
                raise KeyError(entry_id)
            entry = KnowledgeEntry.model_validate(row)
            alias = item.term
            if normalize_term(alias) != normalize_term(entry.term) and alias not in entry.aliases:
                entry = entry.model_copy(update={"aliases": [*entry.aliases, alias]})
                self._store.update_entry(conn, entry.entry_id, entry.model_dump(mode="json"))
                self._store.add_alias(conn, entry.entry_id, alias)
            self._close(
                conn,
                item,
                LearningStatus.MERGED,
                reviewer,
                created_entry_id=entry.entry_id,
                review_notes=f"Merged as alias into existing {entry.scope_label} term",
            )
            self._store.insert_audit(
                conn,
                "merged",
                "learning_item",
                item_id,
                reviewer,
                term=item.term,
                details={"entry_id": entry.entry_id},
            )
            return entry

        entry = self._run("merge", item_id, reviewer, work)
        logger.info("Learning item merged", item_id=item_id, entry_id=entry_id, reviewer=reviewer)
        return entry

    def promote_to_global(
        self,
        term: str,
        reviewer: str,
        definition: Optional[str] = None,
        category: Optional[str] = None,
    ) -> PromotionResult:
        """Collapse equivalent customer definitions of ``term`` into one global entry.

        The customer entries are deactivated (audited as ``supersede``) so the
        global definition reaches their customers; the queue items that produced
        them move from ``approved_customer`` to ``merged``.
        """
        if not normalize_term(term):
            raise ValueError("term is required")
        if not reviewer:
            raise ValueError("reviewer is required")

        def work(conn):
            rows = self._store.list_entries(scope=KnowledgeScope.CUSTOMER.value, term=term)
            entries = [KnowledgeEntry.model_validate(row) for row in rows]
            if len(entries) < 2:
                raise ValueError(f"'{term}' needs customer definitions from at least two customers to promote")
            distinct = {normalize_definition(entry.definition) for entry in entries}
            if len(distinct) > 1:
                raise ValueError(f"customer definitions of '{term}' differ; resolve them before promoting")
            if self._store.find_active_entry(term, KnowledgeScope.GLOBAL.value):
                raise ValueError(f"'{term}' already has a global definition")

            source = entries[0]
            promoted = self._kb.build_entry(
                conn,
                source.term,
                (definition or source.definition),
                KnowledgeScope.GLOBAL,
                reviewer,
                category=category or source.category,
                source="promoted",
            )
            self._kb.write(conn, promoted)
            superseded = [entry.entry_id for entry in entries]
            for entry in entries:
                self._store.deactivate_entry(conn, entry.entry_id)
                self._store.insert_audit(
                    conn,
                    "supersede",
                    "knowledge_entry",
                    entry.entry_id,
                    reviewer,
                    term=entry.term,
                    details={
                        "superseded_by_entry": promoted.entry_id,
                        "customer_id": entry.customer_id,
                        "previous_definition": entry.definition,
                    },
                )
            merged_ids: List[str] = []
            for row in self._store.items_for_entries(conn, superseded):
                item = LearningQueueItem.model_validate(row)
                self._close(
                    conn,
                    item,
                    LearningStatus.MERGED,
                    reviewer,
                    expected=LearningStatus.APPROVED_CUSTOMER,
                    review_notes=f"Promoted to global entry {promoted.entry_id}",
                )
                merged_ids.append(item.item_id)
            self._store.insert_audit(
                conn,
                "promote",
                "knowledge_entry",
                promoted.entry_id,
                reviewer,
                term=promoted.term,
                details={"superseded_entry_ids": superseded, "merged_item_ids": merged_ids},
            )
            return PromotionResult(
                entry=promoted,
                superseded_entry_ids=superseded,
                merged_item_ids=merged_ids,
                customers=sorted({entry.customer_id for entry in entries if entry.customer_id}),
            )

        result = self._run("promote", term, reviewer, work)
        logger.info(
            "Term promoted to global",
            term=result.entry.term,
            entry_id=result.entry.entry_id,
            merged_items=len(result.merged_item_ids),
            reviewer=reviewer,
        )
        return result

    def list_by_status(
        self,
        status: Union[LearningStatus, str, None] = LearningStatus.PENDING,
        limit: int = 500,
    ) -> List[LearningQueueItem]:
        if status is None or status == "all":
            rows = self._store.list_items(limit=limit)
        else:
            rows = self._store.list_items(LearningStatus(status).value, limit=limit)
        return [LearningQueueItem.model_validate(row) for row in rows]

    def tally(self) -> QueueTally:
        counts = self._store.count_by_status()
        tally = QueueTally(total=sum(counts.values()))
        for status in LearningStatus:
            setattr(tally, status.value, counts.get(status.value, 0))
        return tally

    def rejection_signals(self) -> List[RejectionSignal]:
        """Terms rejected repeatedly; a hint that they need a different resolution."""
        grouped: Dict[str, List[LearningQueueItem]] = defaultdict(list)
        for item in self.list_by_status(LearningStatus.REJECTED, limit=5000):
            grouped[normalize_term(item.term)].append(item)

        signals: List[RejectionSignal] = []
        for items in grouped.values():
            if len(items) < self._rejection_threshold:
                continue
            reviewed = [item.reviewed_at for item in items if item.reviewed_at]
            signals.append(
                RejectionSignal(
                    term=items[0].term,
                    rejection_count=len(items),
                    customers=sorted({item.customer_id for item in items if item.customer_id}),
                    reasons=[item.review_notes for item in items if item.review_notes],
                    last_rejected_at=max(reviewed) if reviewed else None,
                )
            )
        signals.sort(key=lambda signal: (-signal.rejection_count, signal.term.lower()))
        return signals

    def audit_log(self, limit: int = 100) -> List[KnowledgeAuditRecord]:
        return [KnowledgeAuditRecord.model_validate(row) for row in self._store.list_audit(limit=limit)]


learning_queue = LearningQueue(knowledge_base)
