"""Tests for the tool registry and the tool handlers behind it."""

from __future__ import annotations

import asyncio
import json

import pytest

from salon_agent.errors import SalonAPIError
from salon_agent.models import AppointmentSnapshot, Role, Service
from salon_agent.tools.registry import build_registry


@pytest.fixture
def registry_for(make_context, make_tool_context):
    """Factory: ``registry_for(role, identified=False, user_text="", timeout=5)``."""

    def _make(role=Role.CUSTOMER, *, identified=False, user_text="", timeout=5.0, session=None):
        session = session or make_context(role, identified=identified)
        return build_registry(role, make_tool_context(session, user_text), timeout=timeout)

    return _make


BROW_BOOKING = {"date": "2026-02-18", "time": "11:00", "service_ids": ["svc-brow"]}


# ── Registry boundary ────────────────────────────────────────────────


class TestRegistry:
    def test_customer_and_admin_tool_sets(self, registry_for):
        customer = registry_for(Role.CUSTOMER).names
        admin = registry_for(Role.ADMIN).names
        assert "search_customers" not in customer
        assert "search_customers" in admin
        assert set(customer) < set(admin)

    def test_langchain_tools_mirror_specs(self, registry_for):
        registry = registry_for(Role.ADMIN)
        assert [t.name for t in registry.langchain_tools()] == registry.names

    @pytest.mark.asyncio
    async def test_unknown_tool_is_an_error_result(self, registry_for):
        outcome = await registry_for().execute("book_everything", {})
        assert not outcome.success
        assert outcome.payload["error"] == "unknown_tool"
        assert "lookup_customer" in outcome.payload["message"]

    @pytest.mark.asyncio
    async def test_malformed_json_is_an_argument_error(self, registry_for):
        outcome = await registry_for().execute("get_appointment", "{not json")
        assert outcome.payload["error"] == "invalid_arguments"

    @pytest.mark.asyncio
    async def test_backend_failure_is_reported(self, registry_for, fake_client):
        async def broken(*args, **kwargs):
            raise SalonAPIError("upstream 502", status_code=502)

        fake_client.available_slots = broken
        outcome = await registry_for().execute("check_availability", {"date": "2026-02-18"})
        assert outcome.payload["error"] == "backend_error"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, registry_for, fake_client):
        async def broken(*args, **kwargs):
            raise RuntimeError("kaboom")

        fake_client.available_slots = broken
        outcome = await registry_for().execute("check_availability", {"date": "2026-02-18"})
        assert outcome.payload["error"] == "internal_error"
        assert "kaboom" not in outcome.content

    @pytest.mark.asyncio
    async def test_slow_backend_times_out(self, registry_for, fake_client):
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)
            return []

        fake_client.available_slots = slow
        outcome = await registry_for(timeout=0.05).execute("check_availability", {"date": "2026-02-18"})
        assert outcome.payload["error"] == "timeout"
        assert "Nothing was changed" in outcome.payload["message"]
        assert "outcome_unknown" not in outcome.payload

    @pytest.mark.asyncio
    async def test_booking_that_stalls_after_saving_is_outcome_unknown(self, registry_for, fake_client):
        commit = fake_client.create_appointment

        async def commit_then_stall(payload):
            await commit(payload)
            await asyncio.sleep(5)

        fake_client.create_appointment = commit_then_stall
        outcome = await registry_for(identified=True, timeout=0.05).execute("create_appointment", BROW_BOOKING)

        assert len(fake_client.created) == 1
        assert outcome.payload["error"] == "timeout"
        assert outcome.payload["outcome_unknown"] is True
        assert "Nothing was changed" not in outcome.payload["message"]
        assert "get_appointment" in outcome.payload["message"]

    @pytest.mark.asyncio
    async def test_stalled_cancellation_is_outcome_unknown(self, registry_for, fake_client):
        async def stall(appointment_id):
            fake_client.cancelled.append(appointment_id)
            await asyncio.sleep(5)

        fake_client.cancel_appointment = stall
        outcome = await registry_for(identified=True, timeout=0.05).execute(
            "cancel_appointment", {"appointment_id": "appt:abc123"},
        )
        assert outcome.payload["outcome_unknown"] is True


# ── Customers ────────────────────────────────────────────────────────


class TestCustomerTools:
    @pytest.mark.asyncio
    async def test_phone_recovered_from_raw_blob(self, registry_for):
        raw = json.dumps({"phone": None, "note": "she said 9123 4567"})
        outcome = await registry_for().execute("lookup_customer", raw)
        assert outcome.success
        assert outcome.payload["found"] is True
        assert outcome.updates.identity.external_id == "people/c1"
        [known] = outcome.updates.known_appointments
        assert known.service_names == ["Threading - Eyebrow"]

    @pytest.mark.asyncio
    async def test_phone_recovered_from_user_text(self, registry_for):
        registry = registry_for(user_text="my number is 9876 5432")
        outcome = await registry.execute("lookup_customer", {})
        assert outcome.updates.identity.display_name == "Mei Lim"

    @pytest.mark.asyncio
    async def test_missing_phone_is_an_argument_error(self, registry_for):
        outcome = await registry_for().execute("lookup_customer", {})
        assert outcome.payload["error"] == "invalid_arguments"

    @pytest.mark.asyncio
    async def test_unknown_number_is_not_a_failure(self, registry_for):
        outcome = await registry_for().execute("lookup_customer", {"phone": "81112222"})
        assert outcome.success
        assert outcome.payload["found"] is False
        assert outcome.updates is None

    @pytest.mark.asyncio
    async def test_create_contact_splits_full_name(self, registry_for, fake_client):
        outcome = await registry_for().execute("create_contact", {"name": "Ann Lee", "mobile": "8111 2222"})
        assert outcome.payload["created"] is True
        assert fake_client.contacts[-1]["name"] == "Ann Lee"
        assert outcome.updates.identity.mobile == "+6581112222"

    @pytest.mark.asyncio
    async def test_create_contact_reuses_existing_mobile(self, registry_for, fake_client):
        outcome = await registry_for().execute(
            "create_contact", {"first_name": "Jane", "mobile": "91234567"},
        )
        assert outcome.payload["created"] is False
        assert len(fake_client.contacts) == 2

    @pytest.mark.asyncio
    async def test_staff_search(self, registry_for):
        outcome = await registry_for(Role.ADMIN).execute("search_customers", {"name": "mei"})
        assert outcome.payload["customers"] == [{"name": "Mei Lim", "mobile": "+6598765432"}]


# ── Catalog ──────────────────────────────────────────────────────────


class TestCatalogTools:
    @pytest.mark.asyncio
    async def test_ambiguous_name_asks_for_clarification(self, registry_for):
        outcome = await registry_for().execute("select_services", {"services": ["lashes"]})
        assert not outcome.success
        assert outcome.payload["error"] == "ambiguous_service"
        [unclear] = outcome.payload["needs_clarification"]
        assert set(unclear["candidates"]) == {"Lashes - Full Set - Dense", "Lashes - Full Set - Natural"}
        assert outcome.updates is None

    @pytest.mark.asyncio
    async def test_partial_resolution_keeps_resolved(self, registry_for):
        outcome = await registry_for().execute("select_services", {"services": ["eyebrow", "lashes"]})
        assert outcome.success
        assert [s.id for s in outcome.updates.selected_services] == ["svc-brow"]
        assert outcome.payload["needs_clarification"][0]["text"] == "lashes"

    @pytest.fixture
    def two_selected(self, make_context):
        session = make_context()
        session.memory.select_services([
            Service(id="svc-brow", name="Threading - Eyebrow", price=12, duration_minutes=15),
            Service(id="svc-facial", name="Facial - Deep Cleanse", price=98, duration_minutes=60),
        ])
        return session

    @pytest.mark.asyncio
    async def test_remove_takes_a_service_off_the_selection(self, registry_for, two_selected):
        outcome = await registry_for(session=two_selected).execute("select_services", {"remove": ["facial"]})
        assert outcome.success
        assert outcome.payload["removed"] == ["Facial - Deep Cleanse"]
        assert outcome.payload["remaining"] == ["Threading - Eyebrow"]
        assert "15 min" in outcome.payload["message"]
        assert outcome.updates.selected_services is None
        assert outcome.updates.removed_service_ids == ["svc-facial"]

    @pytest.mark.asyncio
    async def test_removing_something_not_selected_changes_nothing(self, registry_for, two_selected):
        outcome = await registry_for(session=two_selected).execute("select_services", {"remove": ["full leg"]})
        assert not outcome.success
        assert outcome.payload["not_selected"] == ["full leg"]
        assert outcome.updates is None

    @pytest.mark.asyncio
    async def test_swap_one_service_for_another(self, registry_for, two_selected):
        outcome = await registry_for(session=two_selected).execute(
            "select_services", {"services": ["dense"], "append": True, "remove": ["eyebrow"]},
        )
        assert outcome.payload["remaining"] == ["Facial - Deep Cleanse", "Lashes - Full Set - Dense"]
        assert [s.id for s in outcome.updates.selected_services] == ["svc-dense"]
        assert outcome.updates.removed_service_ids == ["svc-brow"]

    @pytest.mark.asyncio
    async def test_empty_selection_request_is_rejected(self, registry_for):
        outcome = await registry_for().execute("select_services", {})
        assert outcome.payload["error"] == "invalid_arguments"

    @pytest.mark.asyncio
    async def test_list_services_by_category(self, registry_for):
        outcome = await registry_for().execute("list_services", {"category": "lashes"})
        assert {s["name"] for s in outcome.payload["services"]} == {
            "Lashes - Full Set - Dense",
            "Lashes - Full Set - Natural",
        }


# ── Appointments ─────────────────────────────────────────────────────


class TestAvailability:
    @pytest.mark.asyncio
    async def test_sunday_is_rejected(self, registry_for):
        outcome = await registry_for().execute("check_availability", {"date": "2026-02-22"})
        assert outcome.payload["error"] == "invalid_arguments"
        assert outcome.payload["field"] == "date"
        assert "Sunday" in outcome.payload["message"]

    @pytest.mark.asyncio
    async def test_past_date_is_rejected(self, registry_for):
        outcome = await registry_for().execute("check_availability", {"date": "2026-02-16"})
        assert outcome.payload["error"] == "invalid_arguments"

    @pytest.mark.asyncio
    async def test_today_drops_past_slots(self, registry_for):
        outcome = await registry_for().execute("check_availability", {"date": "2026-02-17"})
        assert outcome.payload["slots"] == ["11:30 AM", "1:00 PM", "3:00 PM"]
        assert outcome.updates.preferred_date == "2026-02-17"

    @pytest.mark.asyncio
    async def test_date_defaults_to_preference_and_time_is_checked(self, registry_for, make_context):
        session = make_context()
        session.memory.preferred_date = "2026-02-18"
        outcome = await registry_for(session=session).execute("check_availability", {"time": "1pm"})
        assert outcome.payload["requested_time_available"] is True
        assert outcome.updates.preferred_time == "13:00"


class TestCreateAppointment:
    @pytest.mark.asyncio
    async def test_books_for_identified_customer(self, registry_for, fake_client):
        outcome = await registry_for(identified=True).execute("create_appointment", BROW_BOOKING)
        assert outcome.success
        [payload] = fake_client.created
        assert payload["start"] == "20260218T1100"
        assert payload["name"] == "Jane Tan"
        assert payload["resourceName"] == "people/c1"
        assert payload["totalAmount"] == 12
        assert payload["force"] is False
        assert outcome.updates.last_booking.service_names == ["Threading - Eyebrow"]

    @pytest.mark.asyncio
    async def test_customer_cannot_book_for_someone_else(self, registry_for, fake_client):
        args = {**BROW_BOOKING, "name": "Mei Lim", "mobile": "98765432"}
        await registry_for(identified=True).execute("create_appointment", args)
        assert fake_client.created[0]["mobile"] == "+6591234567"

    @pytest.mark.asyncio
    async def test_unidentified_customer_cannot_book(self, registry_for, fake_client):
        outcome = await registry_for().execute("create_appointment", BROW_BOOKING)
        assert outcome.payload["error"] == "invalid_arguments"
        assert outcome.payload["field"] == "name"
        assert fake_client.created == []

    @pytest.mark.asyncio
    async def test_ambiguous_service_never_reaches_backend(self, registry_for, fake_client):
        args = {"date": "2026-02-18", "time": "11:00", "services": ["lashes"]}
        outcome = await registry_for(identified=True).execute("create_appointment", args)
        assert outcome.payload["error"] == "ambiguous_service"
        assert len(outcome.payload["candidates"]) == 2
        assert fake_client.created == []

    @pytest.mark.asyncio
    async def test_defaults_from_memory(self, registry_for, make_context, fake_client):
        session = make_context(identified=True)
        session.memory.select_services([Service(id="svc-facial", name="Facial - Deep Cleanse")])
        session.memory.preferred_date = "2026-02-19"
        session.memory.preferred_time = "13:00"
        outcome = await registry_for(session=session).execute("create_appointment", {})
        assert outcome.success
        assert fake_client.created[0]["serviceIds"] == ["svc-facial"]
        assert fake_client.created[0]["start"] == "20260219T1300"

    @pytest.mark.asyncio
    async def test_staff_conflict_offers_alternatives_and_override(self, registry_for, fake_client):
        fake_client.busy = {"20260218T1100"}
        outcome = await registry_for(Role.ADMIN, identified=True).execute("create_appointment", BROW_BOOKING)
        assert outcome.conflict
        assert outcome.payload["error"] == "scheduling_conflict"
        assert outcome.alternatives == ["11:30", "10:00", "13:00"]
        assert outcome.payload["alternatives"] == ["11:30 AM", "10:00 AM", "1:00 PM"]
        assert outcome.payload["override_available"] is True

    @pytest.mark.asyncio
    async def test_customer_conflict_has_no_override(self, registry_for, fake_client):
        fake_client.busy = {"20260218T1100"}
        outcome = await registry_for(identified=True).execute("create_appointment", BROW_BOOKING)
        assert outcome.conflict
        assert outcome.payload["override_available"] is False
        assert "force" not in outcome.payload["message"]

    @pytest.mark.asyncio
    async def test_force_books_over_conflict(self, registry_for, fake_client):
        fake_client.busy = {"20260218T1100"}
        outcome = await registry_for(Role.ADMIN, identified=True).execute(
            "create_appointment", BROW_BOOKING, force=True,
        )
        assert outcome.success
        assert outcome.payload["forced"] is True

    @pytest.mark.asyncio
    async def test_model_cannot_pass_force(self, registry_for, fake_client):
        fake_client.busy = {"20260218T1100"}
        outcome = await registry_for(Role.ADMIN, identified=True).execute(
            "create_appointment", {**BROW_BOOKING, "force": True},
        )
        assert outcome.conflict
        assert fake_client.created[0]["force"] is False


class TestExistingAppointments:
    @pytest.fixture
    def active_session(self, make_context):
        session = make_context(identified=True)
        session.memory.set_active_appointment(AppointmentSnapshot(
            id="appt:abc123", date="2026-02-20", time="14:00",
            service_ids=["svc-brow"], service_names=["Threading - Eyebrow"],
        ))
        return session

    @pytest.mark.asyncio
    async def test_update_fills_from_active_appointment(self, registry_for, active_session, fake_client):
        outcome = await registry_for(session=active_session).execute("update_appointment", {"time": "15:00"})
        assert outcome.success
        [(appointment_id, payload)] = fake_client.updated
        assert appointment_id == "appt:abc123"
        assert payload["start"] == "20260220T1500"
        assert payload["serviceIds"] == ["svc-brow"]
        assert outcome.updates.active_appointment.time == "15:00"

    @pytest.mark.asyncio
    async def test_cancel_clears_active_appointment(self, registry_for, active_session, fake_client):
        outcome = await registry_for(session=active_session).execute("cancel_appointment", {})
        assert outcome.success
        assert fake_client.cancelled == ["appt:abc123"]
        assert outcome.updates.clear_active_appointment is True

    @pytest.mark.asyncio
    async def test_appointment_id_recovered_from_user_text(self, registry_for):
        registry = registry_for(identified=True, user_text="can you pull up appt:abc123?")
        outcome = await registry.execute("get_appointment", {})
        assert outcome.payload["date"] == "Friday, 20 February 2026"
        assert outcome.updates.active_appointment.id == "appt:abc123"

    @pytest.mark.asyncio
    async def test_customer_cannot_see_other_customers_appointment(self, registry_for, fake_client):
        fake_client.appointments["appt:mei1"] = {
            "id": "appt:mei1", "start": "20260221T1000", "serviceIds": ["svc-facial"],
            "status": "confirmed", "name": "Mei Lim", "mobile": "+6598765432", "resourceName": "people/c2",
        }
        customer = await registry_for(identified=True).execute("get_appointment", {"appointment_id": "appt:mei1"})
        assert not customer.success
        staff = await registry_for(Role.ADMIN).execute("get_appointment", {"appointment_id": "appt:mei1"})
        assert staff.success
