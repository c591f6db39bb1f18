"""
Wellness Router - FastAPI Server
================================

HTTP surface for the health, nutrition and fitness chat core:
- Chat with cost-aware routing (local cache / health profile / L1 / L2 / free tier)
- Session lifecycle (create, list, pause, resume, archive, delete)
- Confirmed execution of proposed actions
- RAG indexing of user records
- Diet-plan phases and transitions
- Usage ledger and health-profile statistics

Callers identify the user with the ``X-User-ID`` header.
"""
import os
import re
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

# FastAPI
from fastapi import FastAPI, HTTPException, Request, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

# Local imports
from config import settings
from app.core.diet_plan import TransitionChoice
from app.core.engine import ChatEngine, create_chat_engine
from app.core.errors import (
    ActionConfirmationRequired,
    ActionExecutionError,
    DietPlanNotFoundError,
    InvalidSessionTransition,
    MessageNotFoundError,
    SessionNotFoundError,
    SessionPausedError,
    UnknownActionError,
    WellnessRouterError,
)
from app.core.scheduler import WellnessScheduler
from app.core.types import SendMessageRequest, SessionPreferences, SessionType
from app.memory.mongo_store import db_manager, create_mongo_stores
from app.memory.stores import create_memory_stores

# Rate Limiting
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

limiter = Limiter(key_func=get_remote_address)

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

USER_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')

# Global state
engine: Optional[ChatEngine] = None
scheduler: Optional[WellnessScheduler] = None


# =============================================================================
# FASTAPI APP
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global engine, scheduler

    # Startup
    logger.info("Starting Wellness Router server...")

    if settings.mongodb_uri:
        await db_manager.connect(settings.mongodb_uri, settings.mongodb_database)
        stores = create_mongo_stores()
    else:
        logger.warning("⚠️ MONGODB_URI not set - using process-local stores")
        stores = create_memory_stores()

    engine = create_chat_engine(stores=stores)

    if settings.enable_scheduler:
        scheduler = WellnessScheduler(engine)
        await scheduler.start()

    yield

    # Shutdown
    logger.info("Shutting down...")

    if scheduler:
        await scheduler.shutdown()
        scheduler = None

    if settings.mongodb_uri:
        await db_manager.disconnect()


app = FastAPI(
    title="Wellness Router",
    description="Cost-aware routing for health, nutrition and fitness chat",
    version="1.0.0",
    lifespan=lifespan
)

# CORS - Security: Validate configuration
cors_origins = settings.allowed_origins.split(",")
if "*" in cors_origins and not settings.debug:
    logger.warning(
        "⚠️ SECURITY: CORS allows all origins (*) in production mode! "
        "Set ALLOWED_ORIGINS env var to restrict access."
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate Limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# =============================================================================
# ERROR MAPPING
# =============================================================================

ERROR_STATUS_CODES = (
    (SessionNotFoundError, 404),
    (MessageNotFoundError, 404),
    (DietPlanNotFoundError, 404),
    (SessionPausedError, 409),
    (InvalidSessionTransition, 409),
    (ActionConfirmationRequired, 400),
    (UnknownActionError, 400),
    (ActionExecutionError, 422),
)


@app.exception_handler(WellnessRouterError)
async def wellness_error_handler(request: Request, exc: WellnessRouterError):
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return JSONResponse(
                status_code=status_code,
                content={"error": type(exc).__name__, "detail": str(exc)},
            )
    logger.error(f"Unhandled pipeline error: {type(exc).__name__}: {exc}")
    return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Internal error"})


# =============================================================================
# REQUEST MODELS
# =============================================================================

class PreferencesModel(BaseModel):
    language: str = "en"
    response_style: str = "conversational"
    domain_focus: list = []

    def to_preferences(self) -> SessionPreferences:
        return SessionPreferences(
            language=self.language,
            response_style=self.response_style,
            domain_focus=list(self.domain_focus),
        )


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4000)
    session_id: Optional[str] = Field(None, max_length=128)
    session_type: Optional[SessionType] = None
    preferences: Optional[PreferencesModel] = None

    @field_validator('message')
    @classmethod
    def validate_message(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Message cannot be empty or whitespace only')
        return v.strip()


class CreateSessionRequest(BaseModel):
    session_type: SessionType = SessionType.GENERAL_CHAT
    title: Optional[str] = Field(None, max_length=200)
    preferences: Optional[PreferencesModel] = None


class ExecuteActionRequest(BaseModel):
    message_id: str = Field(..., min_length=1, max_length=128)
    action_index: int = Field(..., ge=0)
    confirmed: bool = False


class IndexRequest(BaseModel):
    context_type: str = Field(..., min_length=1, max_length=64)
    payload: Dict[str, Any]

    @field_validator('context_type')
    @classmethod
    def validate_context_type(cls, v: str) -> str:
        if not USER_ID_PATTERN.match(v):
            raise ValueError('Invalid context_type format')
        return v


class TransitionRequest(BaseModel):
    choice: TransitionChoice


# =============================================================================
# DEPENDENCIES
# =============================================================================

async def get_user_id(x_user_id: str = Header(None)) -> str:
    """Caller identity from the X-User-ID header."""
    if not x_user_id or len(x_user_id) > 128 or not USER_ID_PATTERN.match(x_user_id):
        raise HTTPException(status_code=400, detail="Invalid or missing X-User-ID header")
    return x_user_id


def get_engine() -> ChatEngine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


async def verify_admin_token(x_admin_token: str = Header(None)) -> bool:
    """Verify admin token for protected endpoints"""
    if not settings.admin_token:
        raise HTTPException(status_code=403, detail="Admin access not configured")
    if x_admin_token != settings.admin_token:
        raise HTTPException(status_code=403, detail="Invalid admin token")
    return True


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/")
async def root():
    return {
        "service": "Wellness Router",
        "version": "1.0.0",
        "models": {"l1": settings.l1_model, "l2": settings.l2_model, "free": settings.free_tier_model},
        "status": "running"
    }


@app.get("/health")
async def health():
    """Health check endpoint"""
    db_status = await db_manager.ping() if settings.mongodb_uri else True
    return {
        "status": "healthy" if db_status else "degraded",
        "database": "connected" if db_status else ("disconnected" if settings.mongodb_uri else "memory"),
        "scheduler": "running" if scheduler and scheduler.is_running else "stopped",
    }


@app.post("/chat")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def chat(
    request: Request,
    chat_request: ChatRequest,
    user_id: str = Depends(get_user_id),
    chat_engine: ChatEngine = Depends(get_engine),
):
    """
    Main chat endpoint.

    Session errors surface as 404/409; provider failures come back as a
    200 with ``success: false`` and the session stays usable.
    """
    response = await chat_engine.send_message(
        user_id,
        SendMessageRequest(
            message=chat_request.message,
            session_id=chat_request.session_id,
            session_type=chat_request.session_type,
            preferences=chat_request.preferences.to_preferences() if chat_request.preferences else None,
        ),
    )
    return response.to_dict()


# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------

@app.post("/sessions")
async def create_session(
    body: CreateSessionRequest,
    user_id: str = Depends(get_user_id),
    chat_engine: ChatEngine = Depends(get_engine),
):
    session = await chat_engine.sessions.create_session(
        user_id,
        body.session_type,
        body.preferences.to_preferences() if body.preferences else None,
        body.title,
    )
    return session.to_dict()


@app.get("/sessions")
async def list_sessions(
    include_expired: bool = False,
    user_id: str = Depends(get_user_id),
    chat_engine: ChatEngine = Depends(get_engine),
):
    sessions = await chat_engine.sessions.list_sessions(user_id, include_expired=include_expired)
    return {
        "sessions": [s.to_dict() for s in sessions],
        "stats": await chat_engine.sessions.get_session_stats(user_id),
    }


@app.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    limit: Optional[int] = None,
    user_id: str = Depends(get_user_id),
    chat_engine: ChatEngine = Depends(get_engine),
):
    session = await chat_engine.sessions.get_session(user_id, session_id)
    messages = await chat_engine.sessions.get_messages(user_id, session_id, limit=limit)
    return {"session": session.to_dict(), "messages": [m.to_dict() for m in messages]}


@app.post("/sessions/{session_id}/pause")
async def pause_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    chat_engine: ChatEngine = Depends(get_engine),
):
    return (await chat_engine.sessions.pause_session(user_id, session_id)).to_dict()


@app.post("/sessions/{session_id}/resume")
async def resume_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    chat_engine: ChatEngine = Depends(get_engine),
):
    return (await chat_engine.sessions.resume_session(user_id, session_id)).to_dict()


@app.post("/sessions/{session_id}/archive")
async def archive_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    chat_engine: ChatEngine = Depends(get_engine),
):
    return (await chat_engine.sessions.archive_session(user_id, session_id)).to_dict()


@app.delete("/sessions/{session_id}")
async def delete_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    chat_engine: ChatEngine = Depends(get_engine),
):
    deleted_messages = await chat_engine.sessions.delete_session(user_id, session_id)
    return {"success": True, "session_id": session_id, "deleted_messages": deleted_messages}


# -----------------------------------------------------------------------------
# Actions / RAG
# -----------------------------------------------------------------------------

@app.post("/actions/execute")
async def execute_action(
    body: ExecuteActionRequest,
    user_id: str = Depends(get_user_id),
    chat_engine: ChatEngine = Depends(get_engine),
):
    return await chat_engine.execute_action(user_id, body.message_id, body.action_index, body.confirmed)


@app.post("/rag/index")
async def index_user_data(
    body: IndexRequest,
    user_id: str = Depends(get_user_id),
    chat_engine: ChatEngine = Depends(get_engine),
):
    context_id = await chat_engine.index_user_data(user_id, body.context_type, body.payload)
    return {"indexed": context_id is not None, "context_id": context_id}


# -----------------------------------------------------------------------------
# Diet plan / profile / usage
# -----------------------------------------------------------------------------

@app.get("/diet-plan")
async def get_diet_plan(
    user_id: str = Depends(get_user_id),
    chat_engine: ChatEngine = Depends(get_engine),
):
    plan = await chat_engine.diet_plans.update_progress(user_id)
    if plan is None:
        raise DietPlanNotFoundError(user_id)
    recommendation = await chat_engine.diet_plans.check_transition(user_id)
    return {
        "plan": plan.to_dict(),
        "summary": chat_engine.diet_plans.render_plan(plan),
        "transition": recommendation.to_dict() if recommendation else None,
    }


@app.post("/diet-plan/transition")
async def transition_diet_plan(
    body: TransitionRequest,
    user_id: str = Depends(get_user_id),
    chat_engine: ChatEngine = Depends(get_engine),
):
    plan = await chat_engine.diet_plans.transition(user_id, body.choice)
    return {"plan": plan.to_dict(), "summary": chat_engine.diet_plans.render_plan(plan)}


@app.get("/health-profile/stats")
async def health_profile_stats(
    user_id: str = Depends(get_user_id),
    chat_engine: ChatEngine = Depends(get_engine),
):
    return await chat_engine.profiles.get_stats(user_id)


@app.get("/usage")
async def usage(
    user_id: str = Depends(get_user_id),
    chat_engine: ChatEngine = Depends(get_engine),
):
    return {
        "ledger": await chat_engine.routing.ledger.get_stats(user_id),
        "smart_cache": chat_engine.smart_cache.get_analytics(user_id),
    }


@app.get("/admin/routing/metrics")
async def routing_metrics(
    authorized: bool = Depends(verify_admin_token),
    chat_engine: ChatEngine = Depends(get_engine),
):
    """Routing engine / circuit breaker metrics (admin only)."""
    return chat_engine.routing.get_metrics()


# =============================================================================
# RUN
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=int(os.environ.get("PORT", settings.port)),
        reload=settings.debug
    )
