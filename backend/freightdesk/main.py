"""FreightDesk assistant governance API."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from freightdesk.core.config import get_settings
from freightdesk.core.logging import configure_logging, logger
from freightdesk.routers import assistant, knowledge
from freightdesk.services.investigation_router import assistant_service

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    policy = settings.budget_policy()
    inference = assistant_service.inference
    logger.info(
        "FreightDesk assistant API starting",
        version=VERSION,
        app_mode=settings.normalized_app_mode(),
        auth_required=settings.auth_required(),
        llm_model=settings.llm_model,
        session_max_tokens=policy.max_tokens,
        session_max_cost_usd=policy.max_cost_usd,
        session_max_turns=policy.max_turns,
    )
    if inference is None or not getattr(inference, "is_configured", lambda: True)():
        logger.warning("Inference is not configured; investigations will be refused until an API key is set")
    yield
    logger.info("FreightDesk assistant API stopped")


settings = get_settings()

app = FastAPI(
    title="FreightDesk Assistant API",
    description="Budgeted, cancellable analytics investigations with reviewer-approved learning",
    version=VERSION,
    lifespan=lifespan,
)

origins = settings.allowed_origins()
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials="*" not in origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", "X-Tenant-ID", "X-Actor", "X-Actor-Role"],
)

app.include_router(assistant.router)
app.include_router(knowledge.router)


@app.get("/")
async def root():
    return {
        "name": "FreightDesk Assistant API",
        "version": VERSION,
        "endpoints": {
            "assistant": "/assistant",
            "knowledge": "/knowledge",
            "review_queue": "/knowledge/queue",
            "health": "/health",
        },
    }


@app.get("/health")
async def health_check():
    """Liveness probe."""
    return {"status": "healthy"}
