"""Cancellable investigation lifecycle for assistant conversations.

Each conversation runs at most one investigation. A new question cancels the
one in flight. Every durable write after the inference await first checks the
request's cancellation token, so a late response never lands in history or
in the budget.
"""
from __future__ import annotations

import asyncio
from threading import Lock
from typing import Dict, List, Optional, Sequence

from freightdesk.core.config import get_settings
from freightdesk.core.errors import (
    BudgetExhausted,
    InferenceError,
    InvalidStateTransition,
    InvestigationCancelled,
    KnowledgeStorageError,
    MalformedResponse,
)
from freightdesk.core.logging import logger
from freightdesk.models.budget import BudgetStatus
from freightdesk.models.investigation import (
    ConversationTurn,
    ConversationView,
    InvestigationMode,
    InvestigationResponse,
    InvestigationStatus,
    ReasoningStep,
    ReasoningStepType,
    TurnRole,
)
from freightdesk.models.knowledge import LearningCandidate
from freightdesk.services.assistant_state import AssistantStateStore
from freightdesk.services.budget_governor import BudgetGovernorRegistry, SessionGovernor
from freightdesk.services.inference import InferenceService, OpenAIInferenceService
from freightdesk.services.knowledge_base import knowledge_base
from freightdesk.services.learning_queue import LearningQueue, learning_queue


class ReasoningTrace:
    """Append-only, ordered log of one investigation's reasoning steps."""

    def __init__(self) -> None:
        self._steps: List[ReasoningStep] = []
        self._open_calls: List[Optional[str]] = []

    @classmethod
    def from_steps(cls, steps: Sequence[ReasoningStep]) -> "ReasoningTrace":
        trace = cls()
        for step in steps:
            trace.append(step)
        return trace

    def append(self, step: ReasoningStep) -> None:
        if step.type == ReasoningStepType.ROUTING:
            if any(existing.type != ReasoningStepType.ROUTING for existing in self._steps):
                raise MalformedResponse("routing step after investigation began")
        elif step.type == ReasoningStepType.TOOL_CALL:
            self._open_calls.append(step.tool_name)
        elif step.type == ReasoningStepType.TOOL_RESULT:
            self._close_call(step.tool_name)
        self._steps.append(step)

    def _close_call(self, tool_name: Optional[str]) -> None:
        if not self._open_calls:
            raise MalformedResponse("tool result without a pending tool call")
        if tool_name is None:
            self._open_calls.pop(0)
            return
        for index, pending in enumerate(self._open_calls):
            if pending is None or pending == tool_name:
                self._open_calls.pop(index)
                return
        raise MalformedResponse(f"tool result for '{tool_name}' has no matching tool call")

    @property
    def steps(self) -> List[ReasoningStep]:
        return list(self._steps)

    def __len__(self) -> int:
        return len(self._steps)


class CancellationToken:
    """Cancellation signal bound to a single dispatch.

    The token belongs to the event loop it was created on. ``cancel`` may be
    called from any thread; off-loop calls wake the waiter through
    ``call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._requested = False
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    def cancel(self) -> None:
        self._requested = True
        loop = self._loop
        if loop is None or loop.is_closed():
            self._event.set()
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is loop:
            self._event.set()
        else:
            loop.call_soon_threadsafe(self._event.set)

    @property
    def cancelled(self) -> bool:
        return self._requested

    def raise_if_cancelled(self) -> None:
        if self._requested:
            raise InvestigationCancelled("investigation cancelled before its result was applied")

    async def wait(self) -> None:
        await self._event.wait()


class InvestigationRouter:
    """Drives one conversation's requests through admission, dispatch and completion."""

    def __init__(
        self,
        conversation_key: str,
        governor: SessionGovernor,
        store: AssistantStateStore,
        inference: InferenceService,
        queue: Optional[LearningQueue] = None,
        customer_id: Optional[str] = None,
        history_turns: Optional[int] = None,
    ) -> None:
        self.conversation_key = conversation_key
        self.customer_id = customer_id
        self._governor = governor
        self._store = store
        self._inference = inference
        self._queue = queue
        self._history_turns = int(history_turns or get_settings().conversation_history_turns)
        self._token: Optional[CancellationToken] = None
        self._status = InvestigationStatus.IDLE
        self._live: List[ReasoningStep] = []

    @property
    def status(self) -> InvestigationStatus:
        return self._status

    @property
    def governor(self) -> SessionGovernor:
        return self._governor

    def live_reasoning(self) -> List[ReasoningStep]:
        return list(self._live)

    def _history(self, session_id: str) -> List[ConversationTurn]:
        rows = self._store.list_turns(session_id, limit=self._history_turns)
        return [ConversationTurn.model_validate(row) for row in rows]

    def conversation(self) -> ConversationView:
        session_id = self._governor.session_id
        turns = [ConversationTurn.model_validate(row) for row in self._store.list_turns(session_id)]
        return ConversationView(
            session_id=session_id,
            status=self._status,
            turns=turns,
            live_reasoning=self.live_reasoning(),
        )

    def _settle(self, token: CancellationToken, status: InvestigationStatus) -> None:
        if self._token is token:
            self._status = status
            self._live = []

    def cancel(self) -> bool:
        token = self._token
        if token is None or token.cancelled:
            return False
        if self._status not in (InvestigationStatus.ADMITTED, InvestigationStatus.DISPATCHED):
            return False
        token.cancel()
        self._status = InvestigationStatus.CANCELLED
        self._live = []
        logger.info("Investigation cancelled", conversation_key=self.conversation_key)
        return True

    async def investigate(
        self,
        question: str,
        force_mode: Optional[InvestigationMode] = None,
        estimated_tokens: Optional[int] = None,
    ) -> InvestigationResponse:
        question = str(question or "").strip()
        if not question:
            raise ValueError("question is empty")

        self.cancel()
        token = CancellationToken()
        self._token = token
        self._status = InvestigationStatus.IDLE
        self._live = []

        decision = self._governor.can_proceed(estimated_tokens)
        if not decision.allowed:
            logger.info(
                "Investigation denied by budget",
                conversation_key=self.conversation_key,
                reason=decision.reason,
            )
            raise BudgetExhausted(decision.reason or "Budget exhausted")

        session_id = self._governor.session_id
        history = self._history(session_id)
        user_turn = ConversationTurn(session_id=session_id, role=TurnRole.USER, content=question)
        self._store.append_turn(session_id, user_turn.model_dump(mode="json"))
        self._status = InvestigationStatus.ADMITTED

        def on_step(step: ReasoningStep) -> None:
            if self._token is token and not token.cancelled:
                self._live.append(step)

        budget_hint = self._governor.budget_hint()
        task = asyncio.ensure_future(
            self._inference.invoke(
                question,
                history,
                budget_hint,
                force_mode=force_mode,
                on_step=on_step,
                customer_id=self.customer_id,
            )
        )
        waiter = asyncio.ensure_future(token.wait())
        self._status = InvestigationStatus.DISPATCHED
        logger.info(
            "Investigation dispatched",
            conversation_key=self.conversation_key,
            session_id=session_id,
            history_turns=len(history),
            force_mode=force_mode.value if force_mode else None,
        )

        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            token.cancel()
            task.cancel()
            self._settle(token, InvestigationStatus.CANCELLED)
            raise
        finally:
            waiter.cancel()

        if token.cancelled:
            task.cancel()
            self._settle(token, InvestigationStatus.CANCELLED)
            raise InvestigationCancelled("investigation cancelled while dispatched")

        try:
            result = task.result()
            trace = ReasoningTrace.from_steps(result.reasoning)
        except InferenceError as exc:
            logger.warning(
                "Investigation failed",
                conversation_key=self.conversation_key,
                session_id=session_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._settle(token, InvestigationStatus.FAILED)
            raise
        except Exception as exc:
            logger.error(
                "Investigation crashed",
                conversation_key=self.conversation_key,
                session_id=session_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._settle(token, InvestigationStatus.FAILED)
            raise

        mode = force_mode or result.mode
        assistant_turn = ConversationTurn(
            session_id=session_id,
            role=TurnRole.ASSISTANT,
            content=result.answer,
            mode=mode,
            reasoning=trace.steps,
            usage=result.usage,
            follow_ups=result.follow_ups,
        )

        token.raise_if_cancelled()
        try:
            self._store.append_turn(session_id, assistant_turn.model_dump(mode="json"))
        except Exception:
            self._settle(token, InvestigationStatus.FAILED)
            raise

        try:
            self._governor.record_usage(result.usage, mode.value, session_id=session_id)
        except InvalidStateTransition as exc:
            logger.warning(
                "Usage not recorded for completed turn",
                conversation_key=self.conversation_key,
                turn_id=assistant_turn.turn_id,
                error=str(exc),
            )

        queued = self._submit_learnings(result.learning_candidates)
        self._settle(token, InvestigationStatus.COMPLETED)
        logger.info(
            "Investigation completed",
            conversation_key=self.conversation_key,
            session_id=session_id,
            mode=mode.value,
            tokens=result.usage.total_tokens,
            learning_items_queued=queued,
        )
        return InvestigationResponse(
            turn=assistant_turn,
            budget=self._governor.status(),
            learning_items_queued=queued,
        )

    def _submit_learnings(self, candidates: Sequence[LearningCandidate]) -> int:
        if self._queue is None or not candidates:
            return 0
        queued = 0
        for candidate in candidates:
            if not candidate.customer_id and self.customer_id:
                candidate = candidate.model_copy(update={"customer_id": self.customer_id})
            try:
                self._queue.submit(candidate)
                queued += 1
            except (KnowledgeStorageError, ValueError) as exc:
                logger.warning(
                    "Learning candidate dropped",
                    conversation_key=self.conversation_key,
                    term=candidate.term,
                    error=str(exc),
                )
        return queued

    def budget_status(self) -> BudgetStatus:
        return self._governor.status()

    def clear(self) -> BudgetStatus:
        """Stop any in-flight investigation and start a fresh session."""
        self.cancel()
        self._token = None
        self._status = InvestigationStatus.IDLE
        self._live = []
        self._governor.reset()
        return self._governor.status()


class AssistantService:
    """Owns one router per (tenant, actor, conversation)."""

    def __init__(
        self,
        inference: Optional[InferenceService] = None,
        queue: Optional[LearningQueue] = None,
        registry: Optional[BudgetGovernorRegistry] = None,
    ) -> None:
        self.inference = inference
        self.queue = queue
        self._registry = registry or BudgetGovernorRegistry()
        self._routers: Dict[str, InvestigationRouter] = {}
        self._guard = Lock()

    @staticmethod
    def conversation_key(tenant_id: str, actor: str, conversation_id: str) -> str:
        return f"{tenant_id}:{actor}:{conversation_id}"

    def router_for(self, tenant_id: str, actor: str, conversation_id: str = "default") -> InvestigationRouter:
        key = self.conversation_key(tenant_id, actor, conversation_id)
        with self._guard:
            router = self._routers.get(key)
            if router is None:
                if self.inference is None:
                    raise RuntimeError("no inference service configured")
                router = InvestigationRouter(
                    key,
                    self._registry.get(key),
                    self._registry.store,
                    self.inference,
                    queue=self.queue,
                    customer_id=tenant_id,
                )
                self._routers[key] = router
            return router

    async def investigate(
        self,
        tenant_id: str,
        actor: str,
        question: str,
        conversation_id: str = "default",
        force_mode: Optional[InvestigationMode] = None,
        estimated_tokens: Optional[int] = None,
    ) -> InvestigationResponse:
        router = self.router_for(tenant_id, actor, conversation_id)
        return await router.investigate(question, force_mode=force_mode, estimated_tokens=estimated_tokens)

    def cancel(self, tenant_id: str, actor: str, conversation_id: str = "default") -> bool:
        return self.router_for(tenant_id, actor, conversation_id).cancel()

    def budget_status(self, tenant_id: str, actor: str, conversation_id: str = "default") -> BudgetStatus:
        return self.router_for(tenant_id, actor, conversation_id).budget_status()

    def conversation(self, tenant_id: str, actor: str, conversation_id: str = "default") -> ConversationView:
        return self.router_for(tenant_id, actor, conversation_id).conversation()

    def live_reasoning(self, tenant_id: str, actor: str, conversation_id: str = "default") -> List[ReasoningStep]:
        return self.router_for(tenant_id, actor, conversation_id).live_reasoning()

    def clear(self, tenant_id: str, actor: str, conversation_id: str = "default") -> BudgetStatus:
        return self.router_for(tenant_id, actor, conversation_id).clear()


assistant_service = AssistantService(
    inference=OpenAIInferenceService(knowledge_base),
    queue=learning_queue,
)
