"""API tests for the assistant and knowledge review surfaces."""
from __future__ import annotations

import os
import sys
import uuid
from pathlib import Path

from fastapi.testclient import TestClient


TMP = Path(__file__).resolve().parent / ".tmp_api"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["ASSISTANT_STATE_PATH"] = str(TMP / f"assistant_state_{uuid.uuid4().hex}.db")
os.environ["KNOWLEDGE_DB_PATH"] = str(TMP / f"knowledge_{uuid.uuid4().hex}.db")
os.environ["OPENAI_API_KEY"] = ""
os.environ["OPENAI_BASE_URL"] = ""
os.environ["AUTH_ENABLED"] = "false"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from freightdesk.core.errors import TransportFailure  # noqa: E402
from freightdesk.main import app  # noqa: E402
from freightdesk.models.budget import UsageRecord  # noqa: E402
from freightdesk.models.investigation import (  # noqa: E402
    InferenceResult,
    InvestigationMode,
    ReasoningStep,
    ReasoningStepType,
)
from freightdesk.services.investigation_router import assistant_service  # noqa: E402
from freightdesk.services.learning_extractor import extract_learnings  # noqa: E402


class StubInference:
    """Echoes the question; fails when the question mentions an outage."""

    async def invoke(self, question, history, budget_hint, force_mode=None, on_step=None, customer_id=None):
        if "outage" in question:
            raise TransportFailure("upstream reset by peer at 10.1.2.3")
        mode = force_mode or InvestigationMode.DEEP
        return InferenceResult(
            answer=f"Looked into: {question}",
            mode=mode,
            reasoning=[ReasoningStep(type=ReasoningStepType.ROUTING, content=f"Mode: {mode.value} (stub)")],
            usage=UsageRecord(input_tokens=2000, output_tokens=500, cost_usd=0.0135, latency_ms=15),
            learning_candidates=extract_learnings(question, customer_id=customer_id),
            follow_ups=["What's driving these numbers?"],
        )


assistant_service.inference = StubInference()
client = TestClient(app)

ADMIN = {"X-Actor": "ops-lead", "X-Actor-Role": "admin"}


def _conversation() -> str:
    return f"conv-{uuid.uuid4().hex[:8]}"


def _customer(tenant: str) -> dict:
    return {"X-Tenant-ID": tenant, "X-Actor": "analyst", "X-Actor-Role": "customer"}


def test_root_and_health():
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/").json()["endpoints"]["assistant"] == "/assistant"


def test_investigate_returns_turn_and_budget():
    conversation = _conversation()
    response = client.post(
        "/assistant/investigate",
        json={"question": "Why did spend rise?", "conversation_id": conversation},
        headers=_customer("acme"),
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["turn"]["role"] == "assistant"
    assert payload["budget"]["tokens_used"] == 2500
    assert payload["budget"]["turn_count"] == 1

    view = client.get("/assistant/conversation", params={"conversation_id": conversation}, headers=_customer("acme"))
    assert [turn["role"] for turn in view.json()["turns"]] == ["user", "assistant"]
    assert view.json()["status"] == "completed"

    other_tenant = client.get("/assistant/conversation", params={"conversation_id": conversation}, headers=_customer("globex"))
    assert other_tenant.json()["turns"] == []


def test_budget_denial_returns_429_without_touching_history():
    conversation = _conversation()
    response = client.post(
        "/assistant/investigate",
        json={"question": "Why did spend rise?", "conversation_id": conversation, "estimated_tokens": 60000},
        headers=_customer("acme"),
    )
    assert response.status_code == 429
    assert "analysis budget" in response.json()["detail"]

    view = client.get("/assistant/conversation", params={"conversation_id": conversation}, headers=_customer("acme"))
    assert view.json()["turns"] == []


def test_inference_failure_is_reported_plainly_and_keeps_question():
    conversation = _conversation()
    response = client.post(
        "/assistant/investigate",
        json={"question": "Is there an outage on lane 5?", "conversation_id": conversation},
        headers=_customer("acme"),
    )
    assert response.status_code == 502
    assert "10.1.2.3" not in response.json()["detail"]

    view = client.get("/assistant/conversation", params={"conversation_id": conversation}, headers=_customer("acme"))
    assert [turn["content"] for turn in view.json()["turns"]] == ["Is there an outage on lane 5?"]
    assert view.json()["status"] == "failed"

    budget = client.get("/assistant/budget", params={"conversation_id": conversation}, headers=_customer("acme"))
    assert budget.json()["turn_count"] == 0


def test_reset_issues_new_session():
    conversation = _conversation()
    client.post(
        "/assistant/investigate",
        json={"question": "How many loads?", "conversation_id": conversation, "force_mode": "quick"},
        headers=_customer("acme"),
    )
    before = client.get("/assistant/budget", params={"conversation_id": conversation}, headers=_customer("acme")).json()
    assert before["tokens_by_mode"] == {"quick": 2500}

    reset = client.post("/assistant/reset", params={"conversation_id": conversation}, headers=_customer("acme"))
    assert reset.status_code == 200
    assert reset.json()["session_id"] != before["session_id"]
    assert reset.json()["tokens_used"] == 0

    cancel = client.post("/assistant/cancel", params={"conversation_id": conversation}, headers=_customer("acme"))
    assert cancel.json()["cancelled"] is False
    reasoning = client.get("/assistant/reasoning", params={"conversation_id": conversation}, headers=_customer("acme"))
    assert reasoning.json()["items"] == []


def test_review_queue_requires_admin():
    response = client.get("/knowledge/queue", headers=_customer("acme"))
    assert response.status_code == 403


def test_taught_term_flows_through_review_into_lookup():
    tenant = f"tenant-{uuid.uuid4().hex[:6]}"
    term = f"Z{uuid.uuid4().hex[:4].upper()}"
    response = client.post(
        "/assistant/investigate",
        json={"question": f"When I say {term} I mean zone rated freight", "conversation_id": _conversation()},
        headers=_customer(tenant),
    )
    assert response.status_code == 200
    assert response.json()["learning_items_queued"] >= 1

    queue = client.get("/knowledge/queue", params={"status": "pending"}, headers=ADMIN).json()["items"]
    item = next(row for row in queue if row["term"] == term and row["customer_id"] == tenant)

    approved = client.post(
        f"/knowledge/queue/{item['item_id']}/approve-customer",
        json={"definition": "Zone rated freight"},
        headers=ADMIN,
    )
    assert approved.status_code == 200
    assert approved.json()["item"]["status"] == "approved_customer"
    assert approved.json()["item"]["reviewed_by"] == "ops-lead"

    again = client.post(
        f"/knowledge/queue/{item['item_id']}/reject",
        json={"reason": "changed my mind"},
        headers=ADMIN,
    )
    assert again.status_code == 409

    lookup = client.get("/knowledge/lookup", params={"term": term}, headers=_customer(tenant))
    assert lookup.status_code == 200
    assert lookup.json()["definition"] == "Zone rated freight"
    missing = client.get("/knowledge/lookup", params={"term": term}, headers=_customer("someone-else"))
    assert missing.status_code == 404

    audit = client.get("/knowledge/audit", headers=ADMIN).json()["items"]
    assert any(row["target_id"] == item["item_id"] and row["action"] == "approved_customer" for row in audit)


def test_knowledge_admin_endpoints():
    term = f"Q{uuid.uuid4().hex[:4].upper()}"
    created = client.post(
        "/knowledge/entries",
        json={"term": term, "definition": "Quoted rate", "scope": "global", "category": "Pricing"},
        headers=ADMIN,
    )
    assert created.status_code == 200
    duplicate = client.post(
        "/knowledge/entries",
        json={"term": term, "definition": "Something else", "scope": "global"},
        headers=ADMIN,
    )
    assert duplicate.status_code == 400

    entries = client.get("/knowledge/entries", params={"scope": "global"}, headers=ADMIN).json()["items"]
    assert any(row["term"] == term for row in entries)

    assert client.get("/knowledge/queue/KQ-999999", headers=ADMIN).status_code == 404
    assert client.get("/knowledge/queue", params={"status": "archived"}, headers=ADMIN).status_code == 400
    assert "pending" in client.get("/knowledge/queue/tally", headers=ADMIN).json()
    assert client.get("/knowledge/rejection-signals", headers=ADMIN).status_code == 200
    assert client.post("/knowledge/promote", json={"term": term}, headers=ADMIN).status_code == 400
