"""FastAPI route definitions for the salon booking assistant API."""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Header, HTTPException, Request

from salon_agent.api.schemas import (
    ChatRequest,
    ChatResponse,
    HealthResponse,
    ResetRequest,
    ResetResponse,
    ServiceItem,
    ServicesResponse,
)
from salon_agent.config import ADMIN_API_TOKEN
from salon_agent.errors import SalonAPIError
from salon_agent.models import Role
from salon_agent.prompts import get_welcome_message

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_orchestrator(request: Request):
    """Retrieve the orchestrator built during the FastAPI lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return orchestrator


def _check_admin(role: Role | None, token: str | None) -> None:
    """Staff sessions need the admin token when one is configured."""
    if role != Role.ADMIN or not ADMIN_API_TOKEN:
        return
    if not token or not hmac.compare_digest(token, ADMIN_API_TOKEN):
        raise HTTPException(status_code=403, detail="Admin access requires a valid token.")


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    http_request: Request,
    x_admin_token: str | None = Header(default=None),
):
    """Send a message to the assistant and get its reply.

    Turns for the same ``session_id`` are processed one at a time; a second
    request for a busy session waits for the first to finish.
    """
    _check_admin(request.role, x_admin_token)
    orchestrator = _get_orchestrator(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        reply = await orchestrator.handle_turn(request.session_id, request.role, request.message)
        return ChatResponse(reply=reply, session_id=request.session_id)
    except Exception as e:
        # Full traceback stays in the server log; the client gets a generic message.
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e


@router.post("/context/reset", response_model=ResetResponse)
async def reset_context(
    request: ResetRequest,
    http_request: Request,
    x_admin_token: str | None = Header(default=None),
):
    """Clear identity, memory and history for a session, keeping its role."""
    _check_admin(request.role, x_admin_token)
    orchestrator = _get_orchestrator(http_request)
    context = await orchestrator.reset_session(request.session_id, request.role)
    return ResetResponse(
        session_id=context.session_id,
        role=context.role,
        message=get_welcome_message(context),
    )


@router.get("/services", response_model=ServicesResponse)
async def list_services(http_request: Request):
    orchestrator = _get_orchestrator(http_request)
    try:
        services = await orchestrator.catalog.list_all()
    except SalonAPIError as e:
        logger.warning("Service list unavailable: %s", e)
        raise HTTPException(
            status_code=503, detail="The service list is unavailable right now.",
        ) from e
    return ServicesResponse(
        services=[
            ServiceItem(
                name=s.name,
                category=s.category,
                duration_minutes=s.duration_minutes,
                price=s.price,
            )
            for s in services
        ]
    )
