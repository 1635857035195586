"""Building blocks shared by every tool module.

A tool is described by a ``ToolSpec``: its name, the description and pydantic
argument model the language model sees, an async handler, and an optional
*recovery* step that repairs the raw arguments before validation.

Handlers never touch the session context directly.  They read from
``ToolContext`` and describe what should change in a ``ContextUpdate``;
the orchestrator decides whether and when to apply it.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from salon_agent.errors import ToolArgumentError
from salon_agent.models import (
    AppointmentSnapshot,
    CustomerIdentity,
    Role,
    Service,
    SessionContext,
)

ALL_ROLES = frozenset({Role.CUSTOMER, Role.ADMIN})
ADMIN_ONLY = frozenset({Role.ADMIN})


@dataclass
class ToolContext:
    """Everything a tool may read during one turn."""

    client: Any
    catalog: Any
    session: SessionContext
    now: datetime
    user_text: str = ""

    @property
    def role(self) -> Role:
        return self.session.role

    @property
    def is_admin(self) -> bool:
        return self.session.is_admin


@dataclass
class ContextUpdate:
    """A change to session memory requested by a tool result."""

    identity: CustomerIdentity | None = None
    selected_services: list[Service] | None = None
    append_services: bool = False
    removed_service_ids: list[str] | None = None
    preferred_date: str | None = None
    preferred_time: str | None = None
    active_appointment: AppointmentSnapshot | None = None
    clear_active_appointment: bool = False
    known_appointments: list[AppointmentSnapshot] | None = None
    last_booking: AppointmentSnapshot | None = None


@dataclass
class ToolResult:
    payload: dict[str, Any]
    updates: ContextUpdate | None = None


Handler = Callable[..., Awaitable[ToolResult]]
Recovery = Callable[[dict[str, Any], str, ToolContext], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: type[BaseModel]
    handler: Handler
    recover: Recovery | None = None
    roles: frozenset[Role] = ALL_ROLES
    # Booking tools take ``force`` and run through the booking state machine.
    booking: bool = False
    # Changes backend records; a timeout leaves the outcome unknown.
    writes: bool = False


@dataclass
class ToolOutcome:
    """What one invocation produced, success or not."""

    tool_name: str
    arguments: dict[str, Any]
    payload: dict[str, Any]
    updates: ContextUpdate | None = None
    conflict: bool = False
    alternatives: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.payload.get("success"))

    @property
    def content(self) -> str:
        return json.dumps(self.payload, default=str)

    def summary(self, limit: int = 200) -> str:
        text = self.payload.get("message") or self.content
        return text if len(text) <= limit else text[: limit - 1] + "…"


def error_payload(error: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"success": False, "error": error, "message": message, **extra}


def require(value: Any, field_name: str, message: str) -> Any:
    """Return *value* or raise ``ToolArgumentError`` naming *field_name*."""
    if value in (None, "", []):
        raise ToolArgumentError(message, field=field_name)
    return value
