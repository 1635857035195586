"""Tests for the booking attempt state machine and override vocabulary."""

from __future__ import annotations

import pytest

from salon_agent.booking import (
    BookingAttempt,
    BookingState,
    InvalidBookingTransition,
    is_abandon_request,
    is_force_request,
)


class TestTransitions:
    def test_happy_path_reaches_confirmed(self):
        attempt = BookingAttempt.draft("create_appointment", {"date": "2026-02-18"})
        attempt.transition(BookingState.SLOT_CHECK_REQUESTED)
        attempt.transition(BookingState.AVAILABLE)
        attempt.transition(BookingState.CONFIRMED)
        assert attempt.is_terminal
        assert attempt.transitions == ["drafting", "slot_check_requested", "available", "confirmed"]

    def test_conflict_then_force(self):
        attempt = BookingAttempt.draft("create_appointment", {})
        for state in (
            BookingState.SLOT_CHECK_REQUESTED,
            BookingState.CONFLICT,
            BookingState.AWAITING_OVERRIDE_DECISION,
            BookingState.FORCED,
            BookingState.CONFIRMED,
        ):
            attempt.transition(state)
        assert attempt.state is BookingState.CONFIRMED

    def test_awaiting_decision_can_return_to_drafting(self):
        attempt = BookingAttempt.draft("create_appointment", {})
        attempt.transition(BookingState.SLOT_CHECK_REQUESTED)
        attempt.transition(BookingState.CONFLICT)
        attempt.transition(BookingState.AWAITING_OVERRIDE_DECISION)
        attempt.transition(BookingState.DRAFTING)
        assert not attempt.is_terminal

    def test_force_only_reachable_from_awaiting_decision(self):
        attempt = BookingAttempt.draft("create_appointment", {})
        with pytest.raises(InvalidBookingTransition):
            attempt.transition(BookingState.FORCED)
        attempt.transition(BookingState.SLOT_CHECK_REQUESTED)
        with pytest.raises(InvalidBookingTransition):
            attempt.transition(BookingState.FORCED)

    def test_terminal_states_allow_nothing(self):
        attempt = BookingAttempt.draft("create_appointment", {})
        attempt.transition(BookingState.SLOT_CHECK_REQUESTED)
        attempt.transition(BookingState.AVAILABLE)
        attempt.transition(BookingState.CONFIRMED)
        for state in BookingState:
            assert not attempt.can_transition(state)

    def test_redraft_only_while_drafting(self):
        attempt = BookingAttempt.draft("create_appointment", {"time": "11:00"})
        attempt.redraft("create_appointment", {"time": "12:00"})
        assert attempt.arguments == {"time": "12:00"}
        attempt.transition(BookingState.SLOT_CHECK_REQUESTED)
        with pytest.raises(InvalidBookingTransition):
            attempt.redraft("create_appointment", {"time": "13:00"})

    def test_survives_json_round_trip(self):
        attempt = BookingAttempt.draft("update_appointment", {"date": "2026-02-18"}, appointment_id="appt:1")
        attempt.transition(BookingState.SLOT_CHECK_REQUESTED)
        restored = BookingAttempt.model_validate_json(attempt.model_dump_json())
        assert restored.state is BookingState.SLOT_CHECK_REQUESTED
        assert restored.appointment_id == "appt:1"


class TestVocabulary:
    @pytest.mark.parametrize(
        "text",
        ["force", "Force it", "override please", "book it anyway", "go ahead anyway", "double-book her"],
    )
    def test_force_requests(self, text):
        assert is_force_request(text)

    @pytest.mark.parametrize("text", ["what about 3pm?", "yes", "forget it"])
    def test_not_force_requests(self, text):
        assert not is_force_request(text)

    @pytest.mark.parametrize("text", ["never mind", "forget it", "don't book it", "leave it"])
    def test_abandon_requests(self, text):
        assert is_abandon_request(text)

    def test_time_suggestion_is_not_abandon(self):
        assert not is_abandon_request("how about 2pm instead")
