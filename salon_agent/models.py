"""Pydantic models for the per-session context record.

A ``SessionContext`` is the unit of persisted state: the store serialises it
with ``model_dump_json`` and rebuilds it with ``model_validate_json``, so every
field here must stay JSON-friendly.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from salon_agent.booking import BookingAttempt, BookingState


class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class Speaker(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Service(BaseModel):
    """A bookable service as published by the salon catalog."""

    id: str
    name: str
    price: float = 0.0
    duration_minutes: int = 0
    category: str = "Other"


class CustomerIdentity(BaseModel):
    """A customer record resolved through a lookup or a contact creation."""

    external_id: str
    display_name: str
    mobile: str


class AppointmentSnapshot(BaseModel):
    """What the assistant knows about one existing appointment."""

    id: str
    date: str | None = None
    time: str | None = None
    service_ids: list[str] = Field(default_factory=list)
    service_names: list[str] = Field(default_factory=list)
    status: str | None = None


class ToolInvocation(BaseModel):
    tool_name: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    arguments: dict[str, Any] = Field(default_factory=dict)
    result_summary: str = ""
    success: bool = True


class HistoryEntry(BaseModel):
    speaker: Speaker
    text: str


class SessionMemory(BaseModel):
    """Semantically typed working memory for one conversation."""

    selected_services: list[Service] = Field(default_factory=list)
    # Appointment that was active when ``selected_services`` was last set.
    services_appointment_id: str | None = None
    preferred_date: str | None = None
    preferred_time: str | None = None
    active_appointment_id: str | None = None
    active_appointment: AppointmentSnapshot | None = None
    known_appointments: list[AppointmentSnapshot] = Field(default_factory=list)
    last_booking: AppointmentSnapshot | None = None
    pending_booking: BookingAttempt | None = None
    tool_invocation_log: list[ToolInvocation] = Field(default_factory=list)

    def select_services(self, services: list[Service], *, append: bool = False) -> None:
        """Replace (or extend) the selection, keeping it unique by id."""
        merged = list(self.selected_services) if append else []
        seen = {s.id for s in merged}
        for service in services:
            if service.id not in seen:
                merged.append(service)
                seen.add(service.id)
        self.selected_services = merged
        self.services_appointment_id = self.active_appointment_id

    def deselect_services(self, service_ids: list[str]) -> None:
        wanted = set(service_ids)
        self.selected_services = [s for s in self.selected_services if s.id not in wanted]

    def set_active_appointment(self, snapshot: AppointmentSnapshot | None) -> None:
        self.active_appointment = snapshot
        self.active_appointment_id = snapshot.id if snapshot else None

    def clear_appointment_state(self) -> str | None:
        """Drop everything tied to the active appointment.

        Returns the id that was cleared, if any.  Selections made while an
        appointment was active go with it; unrelated selections stay.
        """
        cleared = self.active_appointment_id
        self.active_appointment_id = None
        self.active_appointment = None
        if self.services_appointment_id is not None:
            self.selected_services = []
            self.services_appointment_id = None
        if self.pending_booking and self.pending_booking.appointment_id:
            self.pending_booking = None
        return cleared

    def log_invocation(self, invocation: ToolInvocation, *, window: int = 0) -> None:
        """Record one tool call, keeping only the newest *window* entries."""
        self.tool_invocation_log.append(invocation)
        if window > 0 and len(self.tool_invocation_log) > window:
            del self.tool_invocation_log[: len(self.tool_invocation_log) - window]


class SessionContext(BaseModel):
    """The persisted state record for one session."""

    session_id: str
    role: Role = Role.CUSTOMER
    identity: CustomerIdentity | None = None
    memory: SessionMemory = Field(default_factory=SessionMemory)
    history: list[HistoryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def awaiting_override(self) -> bool:
        pending = self.memory.pending_booking
        return pending is not None and pending.state == BookingState.AWAITING_OVERRIDE_DECISION

    def append_history(self, speaker: Speaker, text: str, *, window: int) -> None:
        """Append one transcript entry and prune the oldest beyond *window*."""
        self.history.append(HistoryEntry(speaker=speaker, text=text))
        if window > 0 and len(self.history) > window:
            del self.history[: len(self.history) - window]

    def is_repeated_user_message(self, text: str) -> bool:
        """True when *text* is already the latest user entry in the transcript."""
        for entry in reversed(self.history):
            if entry.speaker == Speaker.USER:
                return entry.text == text
        return False

    def recent_user_messages(self, limit: int = 3) -> list[str]:
        """Most recent user utterances, newest first."""
        texts = [e.text for e in reversed(self.history) if e.speaker == Speaker.USER]
        return texts[:limit]

    def touch(self) -> None:
        self.updated_at = datetime.now(UTC)
