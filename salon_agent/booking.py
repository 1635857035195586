"""State machine for a single booking attempt.

    Drafting → SlotCheckRequested → Available → Confirmed
                                  → Conflict  → AwaitingOverrideDecision
    AwaitingOverrideDecision → Forced → Confirmed
                             → Abandoned
                             → Drafting   (the user picked another time)

``Confirmed`` and ``Abandoned`` are terminal.  A conflicted attempt stays in
session memory between turns so that an admin's "force" on the next turn
can replay exactly the same call.

Usage:
    attempt = BookingAttempt.draft("create_appointment", args)
    attempt.transition(BookingState.SLOT_CHECK_REQUESTED)
    attempt.transition(BookingState.CONFLICT)
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class BookingState(str, Enum):
    DRAFTING = "drafting"
    SLOT_CHECK_REQUESTED = "slot_check_requested"
    AVAILABLE = "available"
    CONFLICT = "conflict"
    AWAITING_OVERRIDE_DECISION = "awaiting_override_decision"
    FORCED = "forced"
    CONFIRMED = "confirmed"
    ABANDONED = "abandoned"


TERMINAL_STATES = frozenset({BookingState.CONFIRMED, BookingState.ABANDONED})

TRANSITIONS: dict[BookingState, frozenset[BookingState]] = {
    BookingState.DRAFTING: frozenset({BookingState.SLOT_CHECK_REQUESTED}),
    BookingState.SLOT_CHECK_REQUESTED: frozenset({
        BookingState.AVAILABLE,
        BookingState.CONFLICT,
        # backend failure: the draft is kept so the user can retry
        BookingState.DRAFTING,
    }),
    BookingState.AVAILABLE: frozenset({BookingState.CONFIRMED}),
    BookingState.CONFLICT: frozenset({BookingState.AWAITING_OVERRIDE_DECISION}),
    BookingState.AWAITING_OVERRIDE_DECISION: frozenset({
        BookingState.FORCED,
        BookingState.ABANDONED,
        BookingState.DRAFTING,
    }),
    BookingState.FORCED: frozenset({BookingState.CONFIRMED, BookingState.ABANDONED}),
    BookingState.CONFIRMED: frozenset(),
    BookingState.ABANDONED: frozenset(),
}


class InvalidBookingTransition(Exception):
    """Raised when a transition is not allowed from the current state."""

    def __init__(self, from_state: BookingState, to_state: BookingState):
        self.from_state = from_state
        self.to_state = to_state
        allowed = ", ".join(sorted(s.value for s in TRANSITIONS[from_state])) or "none"
        super().__init__(
            f"Cannot move booking from {from_state.value} to {to_state.value} "
            f"(allowed: {allowed})"
        )


# ── Override / abandon vocabulary ────────────────────────────────────

_FORCE_RE = re.compile(
    r"\b(force|forced|override|overrule)\b"
    r"|\b(book|do|go ahead|proceed|confirm)( it)? anyway\b"
    r"|\bdouble[- ]book\b",
    re.IGNORECASE,
)

_ABANDON_RE = re.compile(
    r"\b(never ?mind|forget (it|about it)|leave it|skip it|drop it)\b"
    r"|\b(don't|do not|dont) (book|bother)\b",
    re.IGNORECASE,
)


def is_force_request(text: str) -> bool:
    """True when *text* asks to book despite a conflict."""
    return bool(_FORCE_RE.search(text or ""))


def is_abandon_request(text: str) -> bool:
    """True when *text* gives up on the conflicted booking."""
    return bool(_ABANDON_RE.search(text or ""))


class BookingAttempt(BaseModel):
    """One attempt to commit a create/update against the scheduling backend."""

    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    state: BookingState = BookingState.DRAFTING
    appointment_id: str | None = None
    alternatives: list[str] = Field(default_factory=list)
    transitions: list[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def draft(
        cls,
        tool_name: str,
        arguments: dict[str, Any],
        *,
        appointment_id: str | None = None,
    ) -> BookingAttempt:
        return cls(
            tool_name=tool_name,
            arguments=dict(arguments),
            appointment_id=appointment_id,
            transitions=[BookingState.DRAFTING.value],
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition(self, to_state: BookingState) -> bool:
        return to_state in TRANSITIONS[self.state]

    def transition(self, to_state: BookingState) -> BookingAttempt:
        if not self.can_transition(to_state):
            raise InvalidBookingTransition(self.state, to_state)
        logger.info(
            "Booking %s: %s → %s", self.tool_name, self.state.value, to_state.value,
        )
        self.state = to_state
        self.transitions.append(to_state.value)
        self.updated_at = datetime.now(UTC)
        return self

    def redraft(self, tool_name: str, arguments: dict[str, Any], *, appointment_id: str | None = None) -> None:
        """Replace the drafted call while still in ``Drafting``."""
        if self.state != BookingState.DRAFTING:
            raise InvalidBookingTransition(self.state, BookingState.DRAFTING)
        self.tool_name = tool_name
        self.arguments = dict(arguments)
        self.appointment_id = appointment_id
        self.alternatives = []
