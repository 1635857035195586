"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from salon_agent.models import Role


class ChatRequest(BaseModel):
    """Incoming chat message from the frontend."""

    message: str = Field(..., min_length=1, max_length=2000, description="The user's message")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Unique session identifier for conversation continuity",
    )
    role: Role = Field(
        default=Role.CUSTOMER,
        description="Who is talking. Applies when the session is first created.",
    )


class ChatResponse(BaseModel):
    reply: str = Field(..., description="The assistant's response message")
    session_id: str = Field(..., description="The session ID for this conversation")


class ResetRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=100)
    role: Role | None = Field(default=None, description="Role for a session that does not exist yet")


class ResetResponse(BaseModel):
    session_id: str
    role: Role
    message: str = Field(..., description="Greeting for the fresh conversation")


class ServiceItem(BaseModel):
    name: str
    category: str
    duration_minutes: int
    price: float


class ServicesResponse(BaseModel):
    services: list[ServiceItem]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "salon-booking-agent"
