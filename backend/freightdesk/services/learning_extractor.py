"""Pull candidate facts out of a conversation for the learning queue."""
from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Tuple

from freightdesk.models.knowledge import KnowledgeScope, LearningCandidate


TERMINOLOGY_PATTERNS = [
    re.compile(
        r"when i say ['\"]?([^'\"]+?)['\"]?,?\s*(?:i mean|that means|refers to|is)\s+['\"]?([^'\"]+)['\"]?",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:we call|i call|our term for)\s+['\"]?([^'\"]+?)['\"]?\s+(?:is|means?)\s+['\"]?([^'\"]+)['\"]?",
        re.IGNORECASE,
    ),
    re.compile(r"\b([A-Z]{2,6})\s*(?:stands for|means|is)\s+([^.!?]+)"),
    re.compile(r"\b([A-Z]{2,6})\s*=\s*([^.!?]+)"),
]

CORRECTION_PATTERNS = [
    re.compile(r"you said (.+?) but (?:it's|it should be|the correct answer is) (.+)", re.IGNORECASE),
    re.compile(
        r"(?:^|[.!?]\s+)(?:no|wrong|incorrect|that's not right),?\s*(?:it's|it should be|the correct|actually)\s+(.+)",
        re.IGNORECASE,
    ),
    re.compile(r"(?:^|[.!?]\s+)(?:actually|correction|to clarify),?\s+(.+)", re.IGNORECASE),
]

LEARNING_FLAG_PATTERN = re.compile(r"<learning_flag>([\s\S]*?)</learning_flag>", re.IGNORECASE)

TERMINOLOGY_CONFIDENCE = 0.9
CORRECTION_CONFIDENCE = 0.95
FLAG_CONFIDENCE = {"high": 0.9, "medium": 0.7, "low": 0.5}
MAX_TERM_LENGTH = 50


def _clean(value: str) -> str:
    return " ".join(str(value or "").strip().strip("'\"").split()).rstrip(" ,;:")


def _correction_term(text: str) -> str:
    words = _clean(text).split()
    return " ".join(words[:6])[:MAX_TERM_LENGTH]


def extract_from_message(message: str, customer_id: Optional[str] = None) -> List[LearningCandidate]:
    """Candidates taught explicitly by the user in one message."""
    text = str(message or "")
    scope = KnowledgeScope.CUSTOMER if customer_id else KnowledgeScope.GLOBAL
    found: List[LearningCandidate] = []

    for pattern in TERMINOLOGY_PATTERNS:
        for match in pattern.finditer(text):
            term, meaning = _clean(match.group(1)), _clean(match.group(2))
            if not term or not meaning or len(term) > MAX_TERM_LENGTH:
                continue
            found.append(
                LearningCandidate(
                    term=term,
                    original_query=text,
                    user_explanation=meaning,
                    ai_interpretation=f"'{term}' means {meaning}",
                    suggested_scope=scope,
                    suggested_category="terminology",
                    confidence_score=TERMINOLOGY_CONFIDENCE,
                    customer_id=customer_id,
                )
            )

    for pattern in CORRECTION_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        if match.lastindex and match.lastindex >= 2:
            term, corrected = _clean(match.group(1))[:MAX_TERM_LENGTH], _clean(match.group(2))
        else:
            corrected = _clean(match.group(1))
            term = _correction_term(corrected)
        if term and corrected:
            found.append(
                LearningCandidate(
                    term=term,
                    original_query=text,
                    user_explanation=corrected,
                    ai_interpretation="User corrected an earlier answer",
                    suggested_scope=scope,
                    suggested_category="correction",
                    confidence_score=CORRECTION_CONFIDENCE,
                    customer_id=customer_id,
                )
            )
        break

    return dedupe(found)


def parse_learning_flags(answer: str, question: str = "", customer_id: Optional[str] = None) -> List[LearningCandidate]:
    """Candidates the model flagged inline with ``<learning_flag>`` blocks."""
    scope = KnowledgeScope.CUSTOMER if customer_id else KnowledgeScope.GLOBAL
    found: List[LearningCandidate] = []
    for block in LEARNING_FLAG_PATTERN.findall(str(answer or "")):
        fields: Dict[str, str] = {}
        for line in block.strip().splitlines():
            key, sep, value = line.partition(":")
            if sep and key.strip() and value.strip():
                fields[key.strip().lower()] = value.strip()
        term = _clean(fields.get("term", ""))
        if not term or len(term) > MAX_TERM_LENGTH:
            continue
        found.append(
            LearningCandidate(
                term=term,
                original_query=question,
                user_explanation=fields.get("user_said", ""),
                ai_interpretation=fields.get("ai_understood", ""),
                suggested_scope=scope,
                suggested_category=fields.get("category") or "terminology",
                confidence_score=FLAG_CONFIDENCE.get(fields.get("confidence", "").lower(), 0.7),
                customer_id=customer_id,
            )
        )
    return found


def strip_learning_flags(answer: str) -> str:
    return LEARNING_FLAG_PATTERN.sub("", str(answer or "")).strip()


def dedupe(candidates: Iterable[LearningCandidate]) -> List[LearningCandidate]:
    seen: set[Tuple[str, str]] = set()
    unique: List[LearningCandidate] = []
    for candidate in candidates:
        key = (candidate.term.lower(), candidate.suggested_category or "")
        if key in seen:
            continue
        seen.add(key)
        unique.append(candidate)
    return unique


def extract_learnings(
    question: str,
    answer: str = "",
    customer_id: Optional[str] = None,
) -> List[LearningCandidate]:
    return dedupe(
        [
            *extract_from_message(question, customer_id),
            *parse_learning_flags(answer, question, customer_id),
        ]
    )
