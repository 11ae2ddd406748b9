"""Tests for the cancellable investigation lifecycle and reasoning traces."""
from __future__ import annotations

import asyncio
import os
import sys
import threading
import time
import uuid
from pathlib import Path
from typing import List, Optional

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_router"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["ASSISTANT_STATE_PATH"] = str(TMP / "assistant_state.db")
os.environ["KNOWLEDGE_DB_PATH"] = str(TMP / "knowledge.db")
os.environ["OPENAI_API_KEY"] = ""
os.environ["OPENAI_BASE_URL"] = ""

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from freightdesk.core.errors import (  # noqa: E402
    BudgetExhausted,
    InvestigationCancelled,
    KnowledgeStorageError,
    MalformedResponse,
    TransportFailure,
)
from freightdesk.models.budget import BudgetPolicy, UsageRecord  # noqa: E402
from freightdesk.models.investigation import (  # noqa: E402
    InferenceResult,
    InvestigationMode,
    InvestigationStatus,
    ReasoningStep,
    ReasoningStepType,
    TurnRole,
)
from freightdesk.models.knowledge import LearningCandidate, LearningStatus  # noqa: E402
from freightdesk.services.assistant_state import AssistantStateStore  # noqa: E402
from freightdesk.services.budget_governor import SessionGovernor  # noqa: E402
from freightdesk.services.investigation_router import (  # noqa: E402
    InvestigationRouter,
    ReasoningTrace,
)
from freightdesk.services.knowledge_base import KnowledgeBase  # noqa: E402
from freightdesk.services.knowledge_state import KnowledgeStateStore  # noqa: E402
from freightdesk.services.learning_queue import LearningQueue  # noqa: E402


def _step(step_type: ReasoningStepType, content: str = "", tool_name: Optional[str] = None) -> ReasoningStep:
    return ReasoningStep(type=step_type, content=content or step_type.value, tool_name=tool_name)


class ScriptedInference:
    """Inference double that can block on a gate or fail on demand."""

    def __init__(self, gates=None, error=None, reasoning=None, candidates=None, mode=InvestigationMode.DEEP):
        self.gates: List[Optional[asyncio.Event]] = list(gates or [])
        self.error = error
        self.reasoning = reasoning
        self.candidates = candidates or []
        self.mode = mode
        self.calls = []

    async def invoke(self, question, history, budget_hint, force_mode=None, on_step=None, customer_id=None):
        self.calls.append(
            {
                "question": question,
                "history": list(history),
                "budget_hint": budget_hint,
                "force_mode": force_mode,
                "customer_id": customer_id,
            }
        )
        routing = _step(ReasoningStepType.ROUTING, f"Mode: {self.mode.value} (scripted)")
        if on_step is not None:
            on_step(routing)
        gate = self.gates.pop(0) if self.gates else None
        if gate is not None:
            await gate.wait()
        if self.error is not None:
            raise self.error
        reasoning = self.reasoning if self.reasoning is not None else [
            routing,
            _step(ReasoningStepType.TOOL_CALL, '{"term": "CG"}', "lookup_term"),
            _step(ReasoningStepType.TOOL_RESULT, '{"found": false}', "lookup_term"),
        ]
        return InferenceResult(
            answer=f"Answer to: {question}",
            mode=self.mode,
            reasoning=reasoning,
            usage=UsageRecord(input_tokens=1200, output_tokens=300, cost_usd=0.008, latency_ms=40),
            learning_candidates=self.candidates,
            follow_ups=["What's driving these numbers?"],
        )


def _router(inference, policy: Optional[BudgetPolicy] = None, queue=None, history_turns: Optional[int] = None):
    store = AssistantStateStore(db_path=str(TMP / f"assistant_{uuid.uuid4().hex}.db"))
    governor = SessionGovernor("demo:tester:default", store, policy=policy or BudgetPolicy())
    return InvestigationRouter(
        "demo:tester:default",
        governor,
        store,
        inference,
        queue=queue,
        customer_id="42",
        history_turns=history_turns,
    )


async def _until_dispatched(router: InvestigationRouter, inference: ScriptedInference) -> None:
    for _ in range(50):
        if router.status == InvestigationStatus.DISPATCHED and inference.calls:
            return
        await asyncio.sleep(0)
    raise AssertionError("investigation never dispatched")


def test_trace_rejects_routing_after_investigation_began():
    trace = ReasoningTrace()
    trace.append(_step(ReasoningStepType.ROUTING))
    trace.append(_step(ReasoningStepType.THINKING))
    with pytest.raises(MalformedResponse):
        trace.append(_step(ReasoningStepType.ROUTING))


def test_trace_rejects_tool_result_without_call():
    trace = ReasoningTrace()
    trace.append(_step(ReasoningStepType.ROUTING))
    with pytest.raises(MalformedResponse):
        trace.append(_step(ReasoningStepType.TOOL_RESULT, tool_name="lookup_term"))

    trace.append(_step(ReasoningStepType.TOOL_CALL, tool_name="lookup_term"))
    with pytest.raises(MalformedResponse):
        trace.append(_step(ReasoningStepType.TOOL_RESULT, tool_name="other_tool"))


def test_trace_keeps_order_and_duplicates():
    steps = [
        _step(ReasoningStepType.ROUTING, "Mode: deep (x)"),
        _step(ReasoningStepType.THINKING, "same"),
        _step(ReasoningStepType.THINKING, "same"),
        _step(ReasoningStepType.TOOL_CALL, "a", "lookup_term"),
        _step(ReasoningStepType.TOOL_CALL, "b", "lookup_term"),
        _step(ReasoningStepType.TOOL_RESULT, "a", "lookup_term"),
        _step(ReasoningStepType.TOOL_RESULT, "b", "lookup_term"),
    ]
    trace = ReasoningTrace.from_steps(steps)
    assert trace.steps == steps
    assert len(trace) == 7


def test_completed_investigation_appends_turn_then_records_usage():
    inference = ScriptedInference()
    router = _router(inference)

    response = asyncio.run(router.investigate("Why did margins drop last week?"))

    assert router.status == InvestigationStatus.COMPLETED
    assert response.turn.role == TurnRole.ASSISTANT
    assert response.turn.mode == InvestigationMode.DEEP
    assert [step.type for step in response.turn.reasoning] == [
        ReasoningStepType.ROUTING,
        ReasoningStepType.TOOL_CALL,
        ReasoningStepType.TOOL_RESULT,
    ]
    assert response.budget.tokens_used == 1500
    assert response.budget.turn_count == 1
    assert response.budget.tokens_by_mode == {"deep": 1500}

    view = router.conversation()
    assert [turn.role for turn in view.turns] == [TurnRole.USER, TurnRole.ASSISTANT]
    assert view.live_reasoning == []
    assert inference.calls[0]["customer_id"] == "42"
    assert inference.calls[0]["budget_hint"].remaining_turns == 10


def test_forced_mode_overrides_returned_mode():
    inference = ScriptedInference(mode=InvestigationMode.DEEP)
    router = _router(inference)

    response = asyncio.run(router.investigate("How many loads shipped?", force_mode=InvestigationMode.QUICK))

    assert inference.calls[0]["force_mode"] == InvestigationMode.QUICK
    assert response.turn.mode == InvestigationMode.QUICK
    assert response.budget.tokens_by_mode == {"quick": 1500}


def test_cancelled_investigation_leaves_history_and_budget_untouched():
    async def scenario():
        gate = asyncio.Event()
        inference = ScriptedInference(gates=[gate])
        router = _router(inference)
        pending = asyncio.ensure_future(router.investigate("Why are detention charges rising?"))
        await _until_dispatched(router, inference)
        assert [step.type for step in router.live_reasoning()] == [ReasoningStepType.ROUTING]

        assert router.cancel() is True
        with pytest.raises(InvestigationCancelled):
            await pending
        gate.set()
        await asyncio.sleep(0)
        return router

    router = asyncio.run(scenario())
    view = router.conversation()
    assert router.status == InvestigationStatus.CANCELLED
    assert [turn.role for turn in view.turns] == [TurnRole.USER]
    assert view.live_reasoning == []
    state = router.governor.state
    assert state.tokens_used == 0
    assert state.turn_count == 0


def test_cancel_from_another_thread_wakes_the_dispatch():
    inference = ScriptedInference(gates=[asyncio.Event()])
    router = _router(inference)
    outcome = {}

    def run_loop():
        try:
            asyncio.run(router.investigate("Why did tender acceptance drop?"))
        except InvestigationCancelled as exc:
            outcome["error"] = exc
        else:
            outcome["error"] = None

    worker = threading.Thread(target=run_loop, daemon=True)
    worker.start()
    deadline = time.monotonic() + 5
    while not (router.status == InvestigationStatus.DISPATCHED and inference.calls):
        assert time.monotonic() < deadline, "investigation never dispatched"
        time.sleep(0.01)

    assert router.cancel() is True
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert isinstance(outcome["error"], InvestigationCancelled)
    assert [turn.role for turn in router.conversation().turns] == [TurnRole.USER]
    assert router.governor.state.turn_count == 0


def test_new_question_cancels_the_one_in_flight():
    async def scenario():
        gate = asyncio.Event()
        inference = ScriptedInference(gates=[gate, None])
        router = _router(inference)
        first = asyncio.ensure_future(router.investigate("Explain the lane mix shift"))
        await _until_dispatched(router, inference)

        second = await router.investigate("How many loads went LTL?")
        with pytest.raises(InvestigationCancelled):
            await first
        gate.set()
        return router, second

    router, second = asyncio.run(scenario())
    turns = router.conversation().turns
    assert [turn.role for turn in turns] == [TurnRole.USER, TurnRole.USER, TurnRole.ASSISTANT]
    assert turns[-1].content == "Answer to: How many loads went LTL?"
    assert second.budget.turn_count == 1
    assert router.status == InvestigationStatus.COMPLETED


def test_failed_inference_keeps_user_turn_and_charges_nothing():
    inference = ScriptedInference(error=TransportFailure("connect timeout to upstream 10.0.0.7"))
    router = _router(inference)

    with pytest.raises(TransportFailure) as caught:
        asyncio.run(router.investigate("Why is Carrier X late?"))

    assert "10.0.0.7" not in caught.value.user_message
    assert router.status == InvestigationStatus.FAILED
    turns = router.conversation().turns
    assert [turn.role for turn in turns] == [TurnRole.USER]
    assert turns[0].content == "Why is Carrier X late?"
    assert router.governor.state.tokens_used == 0


def test_malformed_trace_fails_without_assistant_turn():
    reasoning = [
        _step(ReasoningStepType.THINKING, "thinking first"),
        _step(ReasoningStepType.ROUTING, "Mode: deep (late)"),
    ]
    router = _router(ScriptedInference(reasoning=reasoning))

    with pytest.raises(MalformedResponse):
        asyncio.run(router.investigate("What's going on with claims?"))

    assert router.status == InvestigationStatus.FAILED
    assert len(router.conversation().turns) == 1
    assert router.governor.state.turn_count == 0


def test_budget_denial_never_reaches_inference():
    inference = ScriptedInference()
    router = _router(inference, policy=BudgetPolicy(max_tokens=50000, max_cost_usd=0.50, max_turns=1))

    asyncio.run(router.investigate("First question about tonnage"))
    with pytest.raises(BudgetExhausted) as caught:
        asyncio.run(router.investigate("Second question about tonnage"))

    assert caught.value.reason == "Maximum turns reached (1)"
    assert len(inference.calls) == 1
    assert len(router.conversation().turns) == 2


def test_history_is_bounded_and_excludes_current_question():
    inference = ScriptedInference()
    router = _router(inference, history_turns=2)

    for question in ["Q one about freight", "Q two about freight", "Q three about freight"]:
        asyncio.run(router.investigate(question))

    assert inference.calls[0]["history"] == []
    last_history = inference.calls[2]["history"]
    assert [turn.role for turn in last_history] == [TurnRole.USER, TurnRole.ASSISTANT]
    assert last_history[0].content == "Q two about freight"


def test_learning_candidates_are_queued_for_the_conversation_customer():
    knowledge = KnowledgeBase(KnowledgeStateStore(db_path=str(TMP / f"knowledge_{uuid.uuid4().hex}.db")))
    queue = LearningQueue(knowledge)
    candidate = LearningCandidate(term="CG", user_explanation="customer gross", confidence_score=0.9)
    router = _router(ScriptedInference(candidates=[candidate]), queue=queue)

    response = asyncio.run(router.investigate("When I say CG I mean customer gross. What was CG in May?"))

    assert response.learning_items_queued == 1
    items = queue.list_by_status(LearningStatus.PENDING)
    assert len(items) == 1
    assert items[0].customer_id == "42"


def test_queue_failure_does_not_fail_the_turn():
    class BrokenQueue:
        def submit(self, candidate):
            raise KnowledgeStorageError("database is locked")

    candidate = LearningCandidate(term="FSC", user_explanation="fuel surcharge")
    router = _router(ScriptedInference(candidates=[candidate]), queue=BrokenQueue())

    response = asyncio.run(router.investigate("What does FSC add per load?"))

    assert response.learning_items_queued == 0
    assert router.status == InvestigationStatus.COMPLETED
    assert router.governor.state.turn_count == 1


def test_clear_starts_new_session_and_keeps_old_turns_stored():
    router = _router(ScriptedInference())
    asyncio.run(router.investigate("Why did spend jump?"))
    old_session = router.conversation().session_id

    status = router.clear()

    assert status.session_id != old_session
    assert status.tokens_used == 0
    assert router.conversation().turns == []
    assert len(router._store.list_turns(old_session)) == 2
