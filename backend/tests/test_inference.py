"""Tests for question routing, learning extraction and the OpenAI tool loop."""
from __future__ import annotations

import asyncio
import json
import os
import sys
import uuid
from pathlib import Path
from types import SimpleNamespace

import httpx
import openai
import pytest


TMP = Path(__file__).resolve().parent / ".tmp_inference"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["ASSISTANT_STATE_PATH"] = str(TMP / "assistant_state.db")
os.environ["KNOWLEDGE_DB_PATH"] = str(TMP / "knowledge.db")
os.environ["OPENAI_API_KEY"] = ""
os.environ["OPENAI_BASE_URL"] = ""

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from freightdesk.core.errors import AuthFailure, RateLimited, TransportFailure  # noqa: E402
from freightdesk.models.investigation import BudgetHint, InvestigationMode, ReasoningStepType  # noqa: E402
from freightdesk.models.knowledge import KnowledgeScope  # noqa: E402
from freightdesk.services.inference import (  # noqa: E402
    FALLBACK_FOLLOW_UPS,
    OpenAIInferenceService,
    classify_question,
    parse_follow_ups,
)
from freightdesk.services.knowledge_base import KnowledgeBase  # noqa: E402
from freightdesk.services.knowledge_state import KnowledgeStateStore  # noqa: E402
from freightdesk.services.learning_extractor import extract_from_message, parse_learning_flags  # noqa: E402


HINT = BudgetHint(remaining_tokens=40000, remaining_cost_usd=0.4, remaining_turns=8)
REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


class _Message:
    def __init__(self, content=None, tool_calls=None):
        self.content = content
        self.tool_calls = tool_calls

    def model_dump(self, mode="json", exclude_none=True):
        payload = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.function.name, "arguments": call.function.arguments},
                }
                for call in self.tool_calls
            ]
        return {key: value for key, value in payload.items() if value is not None}


def _completion(message, prompt_tokens, completion_tokens):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message)],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


class _FakeClient:
    def __init__(self, responses):
        self._responses = list(responses)
        self.requests = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.requests.append(kwargs)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _knowledge() -> KnowledgeBase:
    return KnowledgeBase(KnowledgeStateStore(db_path=str(TMP / f"knowledge_{uuid.uuid4().hex}.db")))


@pytest.mark.parametrize(
    "question,mode,reason",
    [
        ("How many loads shipped in May?", InvestigationMode.QUICK, "Simple factual question"),
        ("Who are the top carriers by volume?", InvestigationMode.QUICK, "Simple factual question"),
        ("Show me spend by carrier", InvestigationMode.DEEP, "Visualization requested"),
        ("Why did detention increase?", InvestigationMode.DEEP, "Analytical investigation needed"),
        ("Tell me about our lanes", InvestigationMode.DEEP, "Default to thorough analysis"),
    ],
)
def test_classify_question(question, mode, reason):
    decision = classify_question(question)
    assert decision.mode == mode
    assert decision.reason == reason


def test_long_unmatched_question_is_complex():
    question = "Tell me about " + "our regional lanes and accounts " * 5
    decision = classify_question(question)
    assert decision.mode == InvestigationMode.DEEP
    assert decision.reason == "Complex question"


def test_follow_ups_parsed_from_answer_or_fallback():
    answer = (
        "Spend rose 12%.\n\nFollow-up questions:\n"
        "1. Which lanes drove the increase?\n- Did fuel surcharges change?\n* ok\n"
    )
    assert parse_follow_ups(answer) == ["Which lanes drove the increase?", "Did fuel surcharges change?"]
    assert parse_follow_ups("No list here.") == FALLBACK_FOLLOW_UPS


def test_terminology_and_correction_extraction():
    taught = extract_from_message("When I say 'CG', I mean customer gross revenue", customer_id="42")
    assert taught[0].term == "CG"
    assert taught[0].user_explanation == "customer gross revenue"
    assert taught[0].suggested_scope == KnowledgeScope.CUSTOMER
    assert taught[0].confidence_score == 0.9

    acronym = extract_from_message("FSC stands for fuel surcharge.")
    assert acronym[0].term == "FSC"
    assert acronym[0].user_explanation == "fuel surcharge"
    assert acronym[0].suggested_scope == KnowledgeScope.GLOBAL

    corrected = extract_from_message("No, it should be delivered date not ship date", customer_id="42")
    assert corrected[0].suggested_category == "correction"
    assert corrected[0].confidence_score == 0.95

    assert extract_from_message("What's actually happening with claims?") == []


def test_learning_flags_parsed_from_answer():
    answer = (
        "Here is the answer.\n<learning_flag>\nterm: Drop fee\nuser_said: charge for dropped trailers\n"
        "ai_understood: trailer drop accessorial\nconfidence: high\n</learning_flag>"
    )
    flagged = parse_learning_flags(answer, "What is our drop fee total?", customer_id="42")
    assert len(flagged) == 1
    assert flagged[0].term == "Drop fee"
    assert flagged[0].confidence_score == 0.9


def test_tool_loop_emits_ordered_trace_and_prices_usage():
    knowledge = _knowledge()
    knowledge.create_entry("CG", "Customer gross revenue", KnowledgeScope.CUSTOMER, "admin", customer_id="42")
    call = SimpleNamespace(id="call_1", function=SimpleNamespace(name="lookup_term", arguments=json.dumps({"term": "CG"})))
    client = _FakeClient(
        [
            _completion(_Message(content="Checking the glossary.", tool_calls=[call]), 900, 40),
            _completion(
                _Message(
                    content=(
                        "CG was $1.2M in May.\n\nFollow-up questions:\n1. How does CG compare to April?\n\n"
                        "<learning_flag>\nterm: CG\nuser_said: CG\nai_understood: customer gross\n"
                        "confidence: medium\n</learning_flag>"
                    )
                ),
                1100,
                160,
            ),
        ]
    )
    service = OpenAIInferenceService(knowledge_base=knowledge, client=client)

    result = asyncio.run(service.invoke("Why did CG drop in May?", [], HINT, customer_id="42"))

    assert [step.type for step in result.reasoning] == [
        ReasoningStepType.ROUTING,
        ReasoningStepType.THINKING,
        ReasoningStepType.TOOL_CALL,
        ReasoningStepType.TOOL_RESULT,
    ]
    assert result.reasoning[0].content == "Mode: deep (Analytical investigation needed)"
    assert "Customer gross revenue" in result.reasoning[3].content
    assert result.usage.input_tokens == 2000
    assert result.usage.output_tokens == 200
    assert result.usage.cost_usd == pytest.approx(2000 * 0.000003 + 200 * 0.000015)
    assert "<learning_flag>" not in result.answer
    assert result.follow_ups == ["How does CG compare to April?"]
    assert [candidate.term for candidate in result.learning_candidates] == ["CG"]
    assert client.requests[0]["max_tokens"] == 4096
    assert "Customer gross revenue" in client.requests[0]["messages"][0]["content"]


def test_forced_mode_caps_the_loop():
    client = _FakeClient([_completion(_Message(content="42 loads."), 300, 20)])
    service = OpenAIInferenceService(knowledge_base=_knowledge(), client=client)

    result = asyncio.run(
        service.invoke("Why so many loads?", [], HINT, force_mode=InvestigationMode.QUICK)
    )

    assert result.mode == InvestigationMode.QUICK
    assert result.reasoning[0].content == "Mode: quick (Forced by user)"
    assert client.requests[0]["max_tokens"] == 2048


def test_unconfigured_service_raises_auth_failure():
    service = OpenAIInferenceService(knowledge_base=_knowledge())
    assert service.is_configured() is False
    with pytest.raises(AuthFailure):
        asyncio.run(service.invoke("How many loads?", [], HINT))


@pytest.mark.parametrize(
    "error,expected",
    [
        (openai.RateLimitError("slow down", response=httpx.Response(429, request=REQUEST), body=None), RateLimited),
        (openai.AuthenticationError("bad key", response=httpx.Response(401, request=REQUEST), body=None), AuthFailure),
        (openai.APIConnectionError(request=REQUEST), TransportFailure),
        (openai.InternalServerError("upstream", response=httpx.Response(500, request=REQUEST), body=None), TransportFailure),
    ],
)
def test_provider_errors_map_to_taxonomy(error, expected):
    service = OpenAIInferenceService(knowledge_base=_knowledge(), client=_FakeClient([error]))
    with pytest.raises(expected):
        asyncio.run(service.invoke("Why are costs up?", [], HINT))
