"""Models for the per-session assistant budget governor."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return f"session_{uuid.uuid4().hex[:16]}"


class BudgetPolicy(BaseModel):
    """Caps applied to one assistant session."""

    max_tokens: int = Field(default=50000, ge=1)
    max_cost_usd: float = Field(default=0.50, gt=0.0)
    max_turns: int = Field(default=10, ge=1)
    warn_threshold_percent: float = Field(default=80.0, ge=0.0, le=100.0)


class PricingBlend(BaseModel):
    """Per-token prices blended by the expected input/output split."""

    input_per_token: float = Field(default=0.000003, ge=0.0)
    output_per_token: float = Field(default=0.000015, ge=0.0)
    input_share: float = Field(default=0.3, ge=0.0, le=1.0)


class SessionBudgetState(BaseModel):
    """Counters for one assistant session. Only the governor mutates these."""

    session_id: str = Field(default_factory=new_session_id)
    tokens_used: int = Field(default=0, ge=0)
    cost_used_usd: float = Field(default=0.0, ge=0.0)
    turn_count: int = Field(default=0, ge=0)
    tokens_by_mode: Dict[str, int] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=_utcnow)
    last_activity_at: datetime = Field(default_factory=_utcnow)


class UsageRecord(BaseModel):
    """Usage reported by the inference service for one completed turn."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0.0)
    latency_ms: float = Field(default=0.0, ge=0.0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class AdmissionDecision(BaseModel):
    """Result of an admission check."""

    allowed: bool
    reason: Optional[str] = None


class BudgetStatus(BaseModel):
    """Read-only view of a session's budget consumption."""

    session_id: str
    tokens_used: int
    max_tokens: int
    cost_used_usd: float
    max_cost_usd: float
    turn_count: int
    max_turns: int
    percent_used: float
    status_message: Optional[str] = None
    is_warning: bool = False
    is_exhausted: bool = False
    tokens_by_mode: Dict[str, int] = Field(default_factory=dict)
