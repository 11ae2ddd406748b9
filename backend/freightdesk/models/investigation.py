"""Models for assistant conversations, investigations and reasoning traces."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from freightdesk.models.budget import BudgetStatus, UsageRecord
from freightdesk.models.knowledge import LearningCandidate


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_turn_id() -> str:
    return f"turn_{uuid.uuid4().hex}"


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class InvestigationMode(str, Enum):
    """How deeply the assistant investigates a question."""

    QUICK = "quick"
    DEEP = "deep"


class ReasoningStepType(str, Enum):
    ROUTING = "routing"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"


class InvestigationStatus(str, Enum):
    """Lifecycle state for one investigation request."""

    IDLE = "idle"
    ADMITTED = "admitted"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReasoningStep(BaseModel):
    """One step the assistant took while investigating."""

    model_config = ConfigDict(frozen=True)

    type: ReasoningStepType
    content: str
    tool_name: Optional[str] = None


class ConversationTurn(BaseModel):
    """One appended message in a conversation. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    turn_id: str = Field(default_factory=new_turn_id)
    session_id: str
    role: TurnRole
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)
    mode: Optional[InvestigationMode] = None
    reasoning: List[ReasoningStep] = Field(default_factory=list)
    usage: Optional[UsageRecord] = None
    follow_ups: List[str] = Field(default_factory=list)


class BudgetHint(BaseModel):
    """Remaining headroom passed to the inference service."""

    remaining_tokens: int = Field(ge=0)
    remaining_cost_usd: float = Field(ge=0.0)
    remaining_turns: int = Field(ge=0)


class InferenceResult(BaseModel):
    """What the inference service returns for one investigation."""

    answer: str
    mode: InvestigationMode
    reasoning: List[ReasoningStep] = Field(default_factory=list)
    usage: UsageRecord = Field(default_factory=UsageRecord)
    learning_candidates: List[LearningCandidate] = Field(default_factory=list)
    follow_ups: List[str] = Field(default_factory=list)


class InvestigationRequest(BaseModel):
    """Question submitted from the dashboard."""

    question: str = Field(min_length=1, max_length=4000)
    force_mode: Optional[InvestigationMode] = None
    conversation_id: str = Field(default="default", min_length=1, max_length=120)
    estimated_tokens: Optional[int] = Field(default=None, ge=1)


class InvestigationResponse(BaseModel):
    """Completed investigation returned to the dashboard."""

    turn: ConversationTurn
    budget: BudgetStatus
    learning_items_queued: int = 0


class ConversationView(BaseModel):
    """Read-only conversation snapshot."""

    session_id: str
    status: InvestigationStatus
    turns: List[ConversationTurn] = Field(default_factory=list)
    live_reasoning: List[ReasoningStep] = Field(default_factory=list)
