"""Models for the knowledge base and its human-reviewed learning queue."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KnowledgeScope(str, Enum):
    """Whether a fact applies to every tenant or to one customer."""

    GLOBAL = "global"
    CUSTOMER = "customer"


class LearningStatus(str, Enum):
    """Lifecycle state for one learning queue item."""

    PENDING = "pending"
    APPROVED_GLOBAL = "approved_global"
    APPROVED_CUSTOMER = "approved_customer"
    REJECTED = "rejected"
    MERGED = "merged"


TERMINAL_STATUSES = frozenset(
    {
        LearningStatus.APPROVED_GLOBAL,
        LearningStatus.APPROVED_CUSTOMER,
        LearningStatus.REJECTED,
        LearningStatus.MERGED,
    }
)


class LearningCandidate(BaseModel):
    """A fact the assistant proposes during a conversation."""

    term: str = Field(min_length=1)
    original_query: str = ""
    user_explanation: str = ""
    ai_interpretation: str = ""
    suggested_scope: KnowledgeScope = KnowledgeScope.CUSTOMER
    suggested_category: Optional[str] = None
    confidence_score: float = Field(default=0.5, ge=0.0, le=1.0)
    customer_id: Optional[str] = None


class KnowledgeEntry(BaseModel):
    """Durable definition produced by an approval."""

    entry_id: str
    term: str
    definition: str
    category: Optional[str] = None
    scope: KnowledgeScope
    customer_id: Optional[str] = None
    aliases: List[str] = Field(default_factory=list)
    source: str = "learned_approved"
    created_by: str
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def scope_label(self) -> str:
        if self.scope == KnowledgeScope.CUSTOMER:
            return f"customer:{self.customer_id}"
        return "global"


class ConflictCheck(BaseModel):
    """Existing definitions a candidate term collides with."""

    has_global_conflict: bool = False
    global_definition: Optional[str] = None
    has_customer_conflict: bool = False
    customer_definition: Optional[str] = None
    similar_terms: List[str] = Field(default_factory=list)


class LearningQueueItem(BaseModel):
    """Candidate fact awaiting reviewer disposition. Never deleted."""

    item_id: str
    term: str
    original_query: str = ""
    user_explanation: str = ""
    ai_interpretation: str = ""
    suggested_scope: KnowledgeScope = KnowledgeScope.CUSTOMER
    suggested_category: Optional[str] = None
    confidence_score: float = Field(default=0.5, ge=0.0, le=1.0)
    customer_id: Optional[str] = None
    conflicts_with_global: bool = False
    conflicts_with_customer: bool = False
    global_definition: Optional[str] = None
    customer_definition: Optional[str] = None
    similar_existing_terms: List[str] = Field(default_factory=list)
    status: LearningStatus = LearningStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: str = ""
    created_entry_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class QueueTally(BaseModel):
    """Count of queue items per status."""

    pending: int = 0
    approved_global: int = 0
    approved_customer: int = 0
    rejected: int = 0
    merged: int = 0
    total: int = 0


class RejectionSignal(BaseModel):
    """A term reviewers keep rejecting; surfaced, never acted on."""

    term: str
    rejection_count: int
    customers: List[str] = Field(default_factory=list)
    reasons: List[str] = Field(default_factory=list)
    last_rejected_at: Optional[datetime] = None


class KnowledgeAuditRecord(BaseModel):
    """One attributable change to the queue or knowledge base."""

    audit_id: str
    action: str
    target_type: str
    target_id: str
    term: Optional[str] = None
    reviewer: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class ApproveGlobalRequest(BaseModel):
    definition: str = Field(min_length=1)
    term: Optional[str] = None
    category: Optional[str] = None
    replace_existing: bool = False


class ApproveCustomerRequest(BaseModel):
    definition: str = Field(min_length=1)
    customer_id: Optional[str] = None
    override_customer: bool = False
    term: Optional[str] = None
    category: Optional[str] = None
    replace_existing: bool = False


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1)


class MergeRequest(BaseModel):
    entry_id: str = Field(min_length=1)


class PromoteRequest(BaseModel):
    term: str = Field(min_length=1)
    definition: Optional[str] = None
    category: Optional[str] = None


class PromotionResult(BaseModel):
    """Outcome of collapsing equivalent customer entries into one global entry."""

    entry: KnowledgeEntry
    superseded_entry_ids: List[str] = Field(default_factory=list)
    merged_item_ids: List[str] = Field(default_factory=list)
    customers: List[str] = Field(default_factory=list)


class CreateEntryRequest(BaseModel):
    term: str = Field(min_length=1, max_length=200)
    definition: str = Field(min_length=1)
    scope: KnowledgeScope = KnowledgeScope.GLOBAL
    customer_id: Optional[str] = None
    category: Optional[str] = None
    aliases: List[str] = Field(default_factory=list)
