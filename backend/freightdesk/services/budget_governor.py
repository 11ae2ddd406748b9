"""Per-session admission control for assistant turns.

All policy math lives in pure functions over ``SessionBudgetState`` so it can
be exercised without storage. ``SessionGovernor`` wraps those functions with
best-effort persistence: losing stored state only ever means "start fresh and
allow", never "deny".
"""
from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from threading import Lock, RLock
from typing import Dict, Optional

from pydantic import ValidationError

from freightdesk.core.config import get_settings
from freightdesk.core.errors import InvalidStateTransition
from freightdesk.core.logging import logger
from freightdesk.models.budget import (
    AdmissionDecision,
    BudgetPolicy,
    BudgetStatus,
    PricingBlend,
    SessionBudgetState,
    UsageRecord,
)
from freightdesk.models.investigation import BudgetHint
from freightdesk.services.assistant_state import AssistantStateStore


WRAPPING_UP_MESSAGE = (
    "I'm wrapping up my analysis. Let me know if you need more detail on anything specific."
)
GATHERED_ENOUGH_MESSAGE = (
    "I've gathered enough information to give you a solid answer. "
    "Want me to dig deeper into any specific area?"
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def estimate_cost(tokens: int, pricing: PricingBlend) -> float:
    share = pricing.input_share
    return tokens * pricing.input_per_token * share + tokens * pricing.output_per_token * (1.0 - share)


def evaluate_admission(
    state: SessionBudgetState,
    policy: BudgetPolicy,
    estimated_tokens: int,
    pricing: PricingBlend,
) -> AdmissionDecision:
    if state.turn_count >= policy.max_turns:
        return AdmissionDecision(allowed=False, reason=f"Maximum turns reached ({policy.max_turns})")
    if state.tokens_used + estimated_tokens > policy.max_tokens:
        return AdmissionDecision(allowed=False, reason="Token budget exhausted")
    if state.cost_used_usd + estimate_cost(estimated_tokens, pricing) > policy.max_cost_usd:
        return AdmissionDecision(allowed=False, reason="Cost budget exhausted")
    return AdmissionDecision(allowed=True)


def compute_status(state: SessionBudgetState, policy: BudgetPolicy) -> BudgetStatus:
    token_percent = state.tokens_used / policy.max_tokens * 100.0
    cost_percent = state.cost_used_usd / policy.max_cost_usd * 100.0
    turn_percent = state.turn_count / policy.max_turns * 100.0
    percent_used = max(token_percent, cost_percent, turn_percent)

    message: Optional[str] = None
    if percent_used >= 100.0:
        message = GATHERED_ENOUGH_MESSAGE
    elif percent_used >= policy.warn_threshold_percent:
        message = WRAPPING_UP_MESSAGE

    return BudgetStatus(
        session_id=state.session_id,
        tokens_used=state.tokens_used,
        max_tokens=policy.max_tokens,
        cost_used_usd=round(state.cost_used_usd, 6),
        max_cost_usd=policy.max_cost_usd,
        turn_count=state.turn_count,
        max_turns=policy.max_turns,
        percent_used=round(percent_used, 2),
        status_message=message,
        is_warning=percent_used >= policy.warn_threshold_percent,
        is_exhausted=percent_used >= 100.0,
        tokens_by_mode=dict(state.tokens_by_mode),
    )


def apply_usage(
    state: SessionBudgetState,
    usage: UsageRecord,
    mode: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SessionBudgetState:
    by_mode = dict(state.tokens_by_mode)
    if mode:
        by_mode[mode] = by_mode.get(mode, 0) + usage.total_tokens
    return state.model_copy(
        update={
            "tokens_used": state.tokens_used + usage.total_tokens,
            "cost_used_usd": state.cost_used_usd + usage.cost_usd,
            "turn_count": state.turn_count + 1,
            "tokens_by_mode": by_mode,
            "last_activity_at": now or _utc_now(),
        }
    )


def remaining_budget(state: SessionBudgetState, policy: BudgetPolicy) -> BudgetHint:
    return BudgetHint(
        remaining_tokens=max(0, policy.max_tokens - state.tokens_used),
        remaining_cost_usd=max(0.0, policy.max_cost_usd - state.cost_used_usd),
        remaining_turns=max(0, policy.max_turns - state.turn_count),
    )


def is_expired(state: SessionBudgetState, ttl: timedelta, now: Optional[datetime] = None) -> bool:
    return (now or _utc_now()) - state.last_activity_at > ttl


class SessionGovernor:
    """Budget governor for one assistant session key."""

    def __init__(
        self,
        session_key: str,
        store: AssistantStateStore,
        policy: Optional[BudgetPolicy] = None,
        pricing: Optional[PricingBlend] = None,
        default_estimated_tokens: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.session_key = session_key
        self._store = store
        self.policy = policy or settings.budget_policy()
        self.pricing = pricing or settings.pricing_blend()
        self._default_estimate = int(default_estimated_tokens or settings.budget_default_estimated_tokens)
        self._lock = RLock()
        self._state: Optional[SessionBudgetState] = None

    def _load(self) -> SessionBudgetState:
        try:
            payload = self._store.load_budget(self.session_key)
            if payload is not None:
                state = SessionBudgetState.model_validate(payload)
                if not is_expired(state, self._store.ttl):
                    return state
        except (sqlite3.Error, ValueError, ValidationError) as exc:
            logger.warning(
                "Budget session state unreadable, starting fresh",
                session_key=self.session_key,
                error=str(exc),
            )
        fresh = SessionBudgetState()
        self._save(fresh)
        return fresh

    def _save(self, state: SessionBudgetState) -> None:
        try:
            self._store.save_budget(self.session_key, state.model_dump(mode="json"))
        except (sqlite3.Error, OSError) as exc:
            logger.warning("Budget session state not persisted", session_key=self.session_key, error=str(exc))

    def _current(self) -> SessionBudgetState:
        if self._state is None:
            self._state = self._load()
        elif is_expired(self._state, self._store.ttl):
            logger.info("Budget session expired", session_key=self.session_key, session_id=self._state.session_id)
            self._state = SessionBudgetState()
            self._save(self._state)
        return self._state

    @property
    def state(self) -> SessionBudgetState:
        with self._lock:
            return self._current()

    @property
    def session_id(self) -> str:
        return self.state.session_id

    def can_proceed(self, estimated_tokens: Optional[int] = None) -> AdmissionDecision:
        estimate = self._default_estimate if estimated_tokens is None else max(0, int(estimated_tokens))
        with self._lock:
            return evaluate_admission(self._current(), self.policy, estimate, self.pricing)

    def budget_hint(self) -> BudgetHint:
        with self._lock:
            return remaining_budget(self._current(), self.policy)

    def record_usage(
        self,
        usage: UsageRecord,
        mode: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> SessionBudgetState:
        with self._lock:
            current = self._current()
            if session_id is not None and session_id != current.session_id:
                logger.error(
                    "Usage recorded against a stale session",
                    session_key=self.session_key,
                    expected_session_id=session_id,
                    current_session_id=current.session_id,
                )
                raise InvalidStateTransition(
                    f"session {session_id} is no longer active (current {current.session_id})"
                )
            updated = apply_usage(current, usage, mode)
            self._state = updated
            self._save(updated)
        logger.info(
            "Usage recorded",
            session_key=self.session_key,
            session_id=updated.session_id,
            tokens=usage.total_tokens,
            cost_usd=round(usage.cost_usd, 6),
            turn_count=updated.turn_count,
        )
        return updated

    def status(self) -> BudgetStatus:
        with self._lock:
            return compute_status(self._current(), self.policy)

    def reset(self) -> SessionBudgetState:
        with self._lock:
            previous = self._state.session_id if self._state else None
            fresh = SessionBudgetState()
            self._state = fresh
            self._save(fresh)
        logger.info(
            "Budget session reset",
            session_key=self.session_key,
            previous_session_id=previous,
            session_id=fresh.session_id,
        )
        return fresh


class BudgetGovernorRegistry:
    """Hands out one governor per session key."""

    def __init__(
        self,
        store: Optional[AssistantStateStore] = None,
        policy: Optional[BudgetPolicy] = None,
        pricing: Optional[PricingBlend] = None,
    ) -> None:
        self._store = store
        self._policy = policy
        self._pricing = pricing
        self._governors: Dict[str, SessionGovernor] = {}
        self._guard = Lock()

    @property
    def store(self) -> AssistantStateStore:
        if self._store is None:
            self._store = AssistantStateStore()
        return self._store

    def get(self, session_key: str) -> SessionGovernor:
        with self._guard:
            governor = self._governors.get(session_key)
            if governor is None:
                governor = SessionGovernor(
                    session_key,
                    self.store,
                    policy=self._policy,
                    pricing=self._pricing,
                )
                self._governors[session_key] = governor
            return governor
