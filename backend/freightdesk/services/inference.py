"""Inference collaborator for assistant investigations."""
from __future__ import annotations

import json
import re
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import openai
from openai import AsyncOpenAI

from freightdesk.core.config import get_settings
from freightdesk.core.errors import AuthFailure, MalformedResponse, RateLimited, TransportFailure
from freightdesk.core.logging import logger
from freightdesk.models.budget import UsageRecord
from freightdesk.models.investigation import (
    BudgetHint,
    ConversationTurn,
    InferenceResult,
    InvestigationMode,
    ReasoningStep,
    ReasoningStepType,
)
from freightdesk.services.knowledge_base import KnowledgeBase
from freightdesk.services.learning_extractor import extract_learnings, strip_learning_flags


StepCallback = Callable[[ReasoningStep], None]


class InferenceService(Protocol):
    async def invoke(
        self,
        question: str,
        history: Sequence[ConversationTurn],
        budget_hint: BudgetHint,
        force_mode: Optional[InvestigationMode] = None,
        on_step: Optional[StepCallback] = None,
        customer_id: Optional[str] = None,
    ) -> InferenceResult:
        ...


QUICK_PATTERNS = [
    re.compile(r"^(how many|what('?s| is) the (total|count|number)|count of)", re.IGNORECASE),
    re.compile(r"^(what|who) (is|are) (the )?(top|best|worst|highest|lowest)", re.IGNORECASE),
    re.compile(r"simple|quick|fast|just tell me", re.IGNORECASE),
]

VISUAL_PATTERNS = [
    re.compile(r"show me|visualize|chart|graph|plot|display|breakdown", re.IGNORECASE),
    re.compile(r"over time|trend|by (month|week|day|year)", re.IGNORECASE),
    re.compile(r"compare|vs|versus|distribution", re.IGNORECASE),
    re.compile(r"by (carrier|state|mode|mileage|distance|weight)", re.IGNORECASE),
    re.compile(r"bands|ranges|buckets|tiers", re.IGNORECASE),
]

DEEP_PATTERNS = [
    re.compile(r"why|how come|explain|analyze|investigate|dig into", re.IGNORECASE),
    re.compile(r"root cause|problem|issue|anomal", re.IGNORECASE),
    re.compile(r"understand|figure out|what('?s| is) (happening|going on|wrong)", re.IGNORECASE),
]

FOLLOW_UP_PATTERN = re.compile(r"follow[- ]?up questions?:?\s*\n([\s\S]*?)(?:\n\n|$)", re.IGNORECASE)
FOLLOW_UP_PREFIX = re.compile(r"^[-\d.)*]+\s*")

FALLBACK_FOLLOW_UPS = [
    "How does this compare to previous periods?",
    "What's driving these numbers?",
    "Are there any outliers I should know about?",
]

STEP_LIMIT_ANSWER = "I hit the investigation step limit. Ask me to continue from here."


@dataclass(frozen=True)
class ModeDecision:
    mode: InvestigationMode
    confidence: float
    reason: str


def classify_question(question: str) -> ModeDecision:
    """Heuristic mode choice. Visualization requests investigate deeply."""
    text = str(question or "").strip()
    lowered = text.lower()

    if any(pattern.search(lowered) for pattern in QUICK_PATTERNS):
        return ModeDecision(InvestigationMode.QUICK, 0.8, "Simple factual question")
    if any(pattern.search(lowered) for pattern in VISUAL_PATTERNS):
        return ModeDecision(InvestigationMode.DEEP, 0.85, "Visualization requested")
    if any(pattern.search(lowered) for pattern in DEEP_PATTERNS):
        return ModeDecision(InvestigationMode.DEEP, 0.9, "Analytical investigation needed")
    if len(text) > 100:
        return ModeDecision(InvestigationMode.DEEP, 0.7, "Complex question")
    return ModeDecision(InvestigationMode.DEEP, 0.6, "Default to thorough analysis")


def parse_follow_ups(answer: str) -> List[str]:
    match = FOLLOW_UP_PATTERN.search(str(answer or ""))
    if not match:
        return list(FALLBACK_FOLLOW_UPS)
    questions = []
    for line in match.group(1).splitlines()[:3]:
        cleaned = FOLLOW_UP_PREFIX.sub("", line.strip()).strip()
        if len(cleaned) > 10:
            questions.append(cleaned)
    return questions or list(FALLBACK_FOLLOW_UPS)


class OpenAIInferenceService:
    """OpenAI-compatible investigator with glossary lookups as its only tool."""

    def __init__(self, knowledge_base: Optional[KnowledgeBase] = None, client: Any = None) -> None:
        self.settings = get_settings()
        self._kb = knowledge_base
        self._pricing = self.settings.pricing_blend()
        self._client = client
        if self._client is None:
            key = self.settings.resolved_openai_api_key()
            if key:
                self._client = AsyncOpenAI(
                    api_key=key,
                    base_url=self.settings.openai_base_url or None,
                    timeout=float(self.settings.llm_timeout_seconds),
                )

    def is_configured(self) -> bool:
        return self._client is not None

    def _tool_schemas(self) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": "lookup_term",
                    "description": (
                        "Look up what a business term, abbreviation or code means for this customer. "
                        "Customer-specific definitions take precedence over industry definitions."
                    ),
                    "parameters": {
                        "type": "object",
                        "properties": {"term": {"type": "string"}},
                        "required": ["term"],
                    },
                },
            }
        ]

    def _execute_tool(self, name: str, args: Dict[str, Any], customer_id: Optional[str]) -> Dict[str, Any]:
        if name != "lookup_term":
            return {"ok": False, "error": f"Unknown tool '{name}'"}
        term = str(args.get("term") or "").strip()
        if not term:
            return {"ok": False, "error": "term is required"}
        if self._kb is None:
            return {"ok": True, "found": False, "term": term}
        try:
            entry = self._kb.lookup(term, customer_id)
        except sqlite3.Error as exc:
            logger.warning("Glossary lookup failed during investigation", term=term, error=str(exc))
            return {"ok": False, "error": "glossary unavailable"}
        if entry is None:
            return {"ok": True, "found": False, "term": term}
        return {
            "ok": True,
            "found": True,
            "term": entry.term,
            "definition": entry.definition,
            "scope": entry.scope.value,
            "category": entry.category,
        }

    def _system_prompt(self, mode: InvestigationMode, budget_hint: BudgetHint, customer_id: Optional[str]) -> str:
        parts = [
            "You are FreightDesk's logistics analyst. Answer questions about the customer's shipments "
            "clearly and concisely. Use the lookup_term tool whenever the user uses an abbreviation or "
            "internal term you are not sure about.",
            "End every answer with a 'Follow-up questions:' list of up to three short questions.",
            "When the user teaches you a term or you had to guess what a term means, add a block:\n"
            "<learning_flag>\nterm: <term>\nuser_said: <what the user said>\n"
            "ai_understood: <your interpretation>\nconfidence: high|medium|low\n</learning_flag>",
        ]
        if mode == InvestigationMode.QUICK:
            parts.append("Give a direct, short answer. Do not investigate beyond what was asked.")
        else:
            parts.append("Investigate thoroughly and explain what drives the result.")
        if budget_hint.remaining_turns <= 2 or budget_hint.remaining_tokens < 10000:
            parts.append("This session is close to its analysis budget; prioritize the most important findings.")
        if self._kb is not None:
            try:
                glossary = self._kb.format_for_prompt(customer_id)
            except sqlite3.Error as exc:
                logger.warning("Glossary unavailable for prompt", customer_id=customer_id, error=str(exc))
                glossary = ""
            if glossary:
                parts.append(glossary)
        return "\n\n".join(parts)

    async def invoke(
        self,
        question: str,
        history: Sequence[ConversationTurn],
        budget_hint: BudgetHint,
        force_mode: Optional[InvestigationMode] = None,
        on_step: Optional[StepCallback] = None,
        customer_id: Optional[str] = None,
    ) -> InferenceResult:
        if self._client is None:
            raise AuthFailure("no API key configured for the inference service")

        started = time.perf_counter()
        steps: List[ReasoningStep] = []

        def emit(step_type: ReasoningStepType, content: str, tool_name: Optional[str] = None) -> None:
            step = ReasoningStep(type=step_type, content=content, tool_name=tool_name)
            steps.append(step)
            if on_step is not None:
                on_step(step)

        if force_mode is not None:
            mode, reason = force_mode, "Forced by user"
        else:
            decision = classify_question(question)
            mode, reason = decision.mode, decision.reason
        emit(ReasoningStepType.ROUTING, f"Mode: {mode.value} ({reason})")

        if mode == InvestigationMode.QUICK:
            max_steps = int(self.settings.investigation_quick_max_steps)
            max_tokens = int(self.settings.investigation_quick_max_tokens)
        else:
            max_steps = int(self.settings.investigation_deep_max_steps)
            max_tokens = int(self.settings.investigation_deep_max_tokens)
        max_tokens = max(256, min(max_tokens, budget_hint.remaining_tokens))

        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": self._system_prompt(mode, budget_hint, customer_id)}
        ]
        messages.extend({"role": turn.role.value, "content": turn.content} for turn in history)
        messages.append({"role": "user", "content": question})

        input_tokens = 0
        output_tokens = 0
        answer: Optional[str] = None
        try:
            for _ in range(max(1, max_steps)):
                completion = await self._client.chat.completions.create(
                    model=self.settings.llm_model,
                    messages=messages,
                    tools=self._tool_schemas(),
                    tool_choice="auto",
                    temperature=float(self.settings.llm_temperature),
                    max_tokens=max_tokens,
                )
                if completion.usage is not None:
                    input_tokens += int(completion.usage.prompt_tokens or 0)
                    output_tokens += int(completion.usage.completion_tokens or 0)
                if not completion.choices:
                    raise MalformedResponse("completion returned no choices")
                message = completion.choices[0].message
                tool_calls = message.tool_calls or []

                if tool_calls:
                    if message.content and message.content.strip():
                        emit(ReasoningStepType.THINKING, message.content.strip())
                    messages.append(message.model_dump(mode="json", exclude_none=True))
                    for call in tool_calls:
                        name = str(call.function.name or "")
                        raw_args = str(call.function.arguments or "{}")
                        try:
                            parsed_args = json.loads(raw_args)
                        except json.JSONDecodeError:
                            parsed_args = {}
                        if not isinstance(parsed_args, dict):
                            parsed_args = {}
                        emit(ReasoningStepType.TOOL_CALL, json.dumps(parsed_args, ensure_ascii=True), tool_name=name)
                        result = self._execute_tool(name, parsed_args, customer_id)
                        emit(ReasoningStepType.TOOL_RESULT, json.dumps(result, ensure_ascii=True)[:500], tool_name=name)
                        messages.append(
                            {
                                "role": "tool",
                                "tool_call_id": call.id,
                                "content": json.dumps(result, ensure_ascii=True),
                            }
                        )
                    continue

                answer = str(message.content or "").strip()
                break
        except openai.AuthenticationError as exc:
            raise AuthFailure(str(exc)) from exc
        except openai.RateLimitError as exc:
            raise RateLimited(str(exc)) from exc
        except (openai.APIConnectionError, openai.APIStatusError) as exc:
            raise TransportFailure(f"{type(exc).__name__}: {exc}") from exc

        if answer is None:
            answer = STEP_LIMIT_ANSWER
        if not answer:
            raise MalformedResponse("completion returned an empty answer")

        candidates = extract_learnings(question, answer, customer_id)
        answer = strip_learning_flags(answer)
        prompt_cost = input_tokens * self._pricing.input_per_token
        completion_cost = output_tokens * self._pricing.output_per_token
        usage = UsageRecord(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=prompt_cost + completion_cost,
            latency_ms=int((time.perf_counter() - started) * 1000),
        )
        logger.info(
            "Investigation inference completed",
            mode=mode.value,
            steps=len(steps),
            tokens=usage.total_tokens,
            learning_candidates=len(candidates),
        )
        return InferenceResult(
            answer=answer,
            mode=mode,
            reasoning=steps,
            usage=usage,
            learning_candidates=candidates,
            follow_ups=parse_follow_ups(answer),
        )
