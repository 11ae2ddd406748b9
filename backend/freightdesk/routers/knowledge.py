"""API routes for the knowledge base and its review queue."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from freightdesk.core.auth import TenantContext, require_roles
from freightdesk.core.errors import GovernanceError, status_code_for
from freightdesk.core.logging import logger
from freightdesk.models.knowledge import (
    ApproveCustomerRequest,
    ApproveGlobalRequest,
    CreateEntryRequest,
    KnowledgeScope,
    MergeRequest,
    PromoteRequest,
    RejectRequest,
)
from freightdesk.services.knowledge_base import knowledge_base
from freightdesk.services.learning_queue import learning_queue


router = APIRouter(prefix="/knowledge", tags=["knowledge"])


def _review_error(exc: Exception, action: str, reviewer: str, target: str) -> HTTPException:
    if isinstance(exc, KeyError):
        return HTTPException(status_code=404, detail=f"Not found: {target}")
    if isinstance(exc, GovernanceError):
        logger.warning(
            "Knowledge review action refused",
            action=action,
            reviewer=reviewer,
            target=target,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return HTTPException(status_code=status_code_for(exc), detail=exc.user_message)
    return HTTPException(status_code=400, detail=str(exc))


@router.get("/queue")
def list_queue(
    status: str = Query(default="pending"),
    limit: int = Query(default=200, ge=1, le=2000),
    context: TenantContext = Depends(require_roles("admin")),
):
    try:
        items = learning_queue.list_by_status(status, limit=limit)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    return {"items": [item.model_dump(mode="json") for item in items], "status": status}


@router.get("/queue/tally")
def queue_tally(context: TenantContext = Depends(require_roles("admin"))):
    return learning_queue.tally().model_dump(mode="json")


@router.get("/queue/{item_id}")
def get_queue_item(item_id: str, context: TenantContext = Depends(require_roles("admin"))):
    try:
        return learning_queue.get(item_id).model_dump(mode="json")
    except KeyError:
        raise HTTPException(status_code=404, detail="Learning item not found")


@router.post("/queue/{item_id}/approve-global")
def approve_global(
    item_id: str,
    request: ApproveGlobalRequest,
    context: TenantContext = Depends(require_roles("admin")),
):
    try:
        entry = learning_queue.approve_as_global(
            item_id,
            request.definition,
            context.actor,
            term=request.term,
            category=request.category,
            replace_existing=request.replace_existing,
        )
    except (KeyError, ValueError, GovernanceError) as exc:
        raise _review_error(exc, "approve_global", context.actor, item_id)
    return {"entry": entry.model_dump(mode="json"), "item": learning_queue.get(item_id).model_dump(mode="json")}


@router.post("/queue/{item_id}/approve-customer")
def approve_customer(
    item_id: str,
    request: ApproveCustomerRequest,
    context: TenantContext = Depends(require_roles("admin")),
):
    try:
        entry = learning_queue.approve_as_customer(
            item_id,
            request.customer_id,
            request.definition,
            context.actor,
            override_customer=request.override_customer,
            term=request.term,
            category=request.category,
            replace_existing=request.replace_existing,
        )
    except (KeyError, ValueError, GovernanceError) as exc:
        raise _review_error(exc, "approve_customer", context.actor, item_id)
    return {"entry": entry.model_dump(mode="json"), "item": learning_queue.get(item_id).model_dump(mode="json")}


@router.post("/queue/{item_id}/reject")
def reject(
    item_id: str,
    request: RejectRequest,
    context: TenantContext = Depends(require_roles("admin")),
):
    try:
        item = learning_queue.reject(item_id, context.actor, request.reason)
    except (KeyError, ValueError, GovernanceError) as exc:
        raise _review_error(exc, "reject", context.actor, item_id)
    return item.model_dump(mode="json")


@router.post("/queue/{item_id}/merge")
def merge(
    item_id: str,
    request: MergeRequest,
    context: TenantContext = Depends(require_roles("admin")),
):
    try:
        entry = learning_queue.merge_into_existing(item_id, request.entry_id, context.actor)
    except (KeyError, ValueError, GovernanceError) as exc:
        raise _review_error(exc, "merge", context.actor, item_id)
    return {"entry": entry.model_dump(mode="json"), "item": learning_queue.get(item_id).model_dump(mode="json")}


@router.post("/promote")
def promote(
    request: PromoteRequest,
    context: TenantContext = Depends(require_roles("admin")),
):
    try:
        result = learning_queue.promote_to_global(
            request.term,
            context.actor,
            definition=request.definition,
            category=request.category,
        )
    except (KeyError, ValueError, GovernanceError) as exc:
        raise _review_error(exc, "promote", context.actor, request.term)
    return result.model_dump(mode="json")


@router.get("/lookup")
def lookup(
    term: str = Query(min_length=1, max_length=200),
    context: TenantContext = Depends(require_roles("customer", "admin")),
):
    entry = knowledge_base.lookup(term, context.customer_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Term not defined")
    return entry.model_dump(mode="json")


@router.get("/entries")
def list_entries(
    scope: KnowledgeScope | None = Query(default=None),
    customer_id: str | None = Query(default=None),
    context: TenantContext = Depends(require_roles("admin")),
):
    entries = knowledge_base.list_entries(scope, customer_id)
    return {"items": [entry.model_dump(mode="json") for entry in entries]}


@router.get("/rejection-signals")
def rejection_signals(context: TenantContext = Depends(require_roles("admin"))):
    return {"items": [signal.model_dump(mode="json") for signal in learning_queue.rejection_signals()]}


@router.get("/audit")
def audit_log(
    limit: int = Query(default=100, ge=1, le=1000),
    context: TenantContext = Depends(require_roles("admin")),
):
    return {"items": [record.model_dump(mode="json") for record in learning_queue.audit_log(limit=limit)]}


@router.post("/entries")
def create_entry(
    request: CreateEntryRequest,
    context: TenantContext = Depends(require_roles("admin")),
):
    try:
        entry = knowledge_base.create_entry(
            request.term,
            request.definition,
            request.scope,
            context.actor,
            customer_id=request.customer_id,
            category=request.category,
            aliases=request.aliases,
        )
    except (ValueError, GovernanceError) as exc:
        raise _review_error(exc, "create_entry", context.actor, request.term)
    return entry.model_dump(mode="json")
