"""API routes for the governed analytics assistant."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from freightdesk.core.auth import TenantContext, require_roles
from freightdesk.core.errors import GovernanceError, status_code_for
from freightdesk.core.logging import logger
from freightdesk.models.investigation import InvestigationRequest
from freightdesk.services.investigation_router import assistant_service


router = APIRouter(prefix="/assistant", tags=["assistant"])

ANY_ROLE = require_roles("customer", "admin")


@router.post("/investigate")
async def investigate(
    request: InvestigationRequest,
    context: TenantContext = Depends(ANY_ROLE),
):
    try:
        response = await assistant_service.investigate(
            context.tenant_id,
            context.actor,
            request.question,
            conversation_id=request.conversation_id,
            force_mode=request.force_mode,
            estimated_tokens=request.estimated_tokens,
        )
    except GovernanceError as exc:
        logger.info(
            "Investigation request not completed",
            tenant_id=context.tenant_id,
            actor=context.actor,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        raise HTTPException(status_code=status_code_for(exc), detail=exc.user_message)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return response.model_dump(mode="json")


@router.post("/cancel")
async def cancel(
    conversation_id: str = Query(default="default", min_length=1, max_length=120),
    context: TenantContext = Depends(ANY_ROLE),
):
    cancelled = assistant_service.cancel(context.tenant_id, context.actor, conversation_id)
    return {"cancelled": cancelled, "conversation_id": conversation_id}


@router.get("/conversation")
def get_conversation(
    conversation_id: str = Query(default="default", min_length=1, max_length=120),
    context: TenantContext = Depends(ANY_ROLE),
):
    view = assistant_service.conversation(context.tenant_id, context.actor, conversation_id)
    return view.model_dump(mode="json")


@router.get("/reasoning")
def get_live_reasoning(
    conversation_id: str = Query(default="default", min_length=1, max_length=120),
    context: TenantContext = Depends(ANY_ROLE),
):
    steps = assistant_service.live_reasoning(context.tenant_id, context.actor, conversation_id)
    return {"items": [step.model_dump(mode="json") for step in steps], "conversation_id": conversation_id}


@router.get("/budget")
def get_budget(
    conversation_id: str = Query(default="default", min_length=1, max_length=120),
    context: TenantContext = Depends(ANY_ROLE),
):
    return assistant_service.budget_status(context.tenant_id, context.actor, conversation_id).model_dump(mode="json")


@router.post("/reset")
async def reset_conversation(
    conversation_id: str = Query(default="default", min_length=1, max_length=120),
    context: TenantContext = Depends(ANY_ROLE),
):
    status = assistant_service.clear(context.tenant_id, context.actor, conversation_id)
    logger.info(
        "Conversation cleared",
        tenant_id=context.tenant_id,
        actor=context.actor,
        conversation_id=conversation_id,
        session_id=status.session_id,
    )
    return status.model_dump(mode="json")
