"""Shared test fixtures for the salon booking assistant test suite.

Only modules that do not read configuration are imported at the top of
this file; everything else is imported inside fixtures, after
``pytest_configure`` has set the required environment variables.
"""

from __future__ import annotations

import os
from datetime import datetime
from typing import Any
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import pytest
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage
from langchain_core.outputs import ChatGeneration, ChatResult
from pydantic import Field

from salon_agent.errors import SchedulingConflictError
from salon_agent.models import CustomerIdentity, Role, SessionContext


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any test module is imported, so config.py won't fail
    on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("SALON_API_TOKEN", "test-salon-token-456")
    os.environ.setdefault("SESSION_STORE", "memory")


# Tuesday morning in the salon's timezone.
NOW = datetime(2026, 2, 17, 10, 0, tzinfo=ZoneInfo("Asia/Singapore"))

SERVICE_ROWS = [
    {"id": "svc-dense", "service": "Lashes - Full Set - Dense", "duration": 90, "price": 85, "enabled": True},
    {"id": "svc-natural", "service": "Lashes - Full Set - Natural", "duration": 75, "price": 75, "enabled": True},
    {"id": "svc-brow", "service": "Threading - Eyebrow", "duration": 15, "price": 12, "enabled": True},
    {"id": "svc-facial", "service": "Facial - Deep Cleanse", "duration": 60, "price": 98, "enabled": True},
    {"id": "svc-wax", "service": "Waxing - Full Leg", "duration": 45, "price": 60, "enabled": False},
    {"id": "svc-old", "service": "Old Lashes Refill", "duration": 60, "price": 50, "enabled": True},
    {"id": "svc-promo", "service": "(2021) Facial Promo", "duration": 60, "price": 40, "enabled": True},
]


class FakeSalonClient:
    """In-memory stand-in for ``SalonClient`` with the same async surface."""

    def __init__(self) -> None:
        self.service_rows = [dict(r) for r in SERVICE_ROWS]
        self.contacts = [
            {"resourceName": "people/c1", "name": "Jane Tan", "display": "Jane Tan", "mobile": "+6591234567"},
            {"resourceName": "people/c2", "name": "Mei Lim", "display": "Mei Lim", "mobile": "+6598765432"},
        ]
        self.appointments: dict[str, dict[str, Any]] = {
            "appt:abc123": {
                "id": "appt:abc123",
                "start": "20260220T1400",
                "serviceIds": ["svc-brow"],
                "status": "confirmed",
                "name": "Jane Tan",
                "mobile": "+6591234567",
                "resourceName": "people/c1",
            },
        }
        self.slots = ["10:00", "11:30", "13:00", "15:00"]
        self.busy: set[str] = set()
        self.created: list[dict[str, Any]] = []
        self.updated: list[tuple[str, dict[str, Any]]] = []
        self.cancelled: list[str] = []
        self.list_services_calls = 0
        self.fail_services = False

    async def list_services(self):
        from salon_agent.errors import SalonAPIError

        self.list_services_calls += 1
        if self.fail_services:
            raise SalonAPIError("backend down", status_code=503)
        return [dict(r) for r in self.service_rows]

    async def lookup_contact_by_phone(self, phone):
        suffix = "".join(c for c in phone if c.isdigit())[-8:]
        for contact in self.contacts:
            if contact["mobile"].endswith(suffix):
                return contact
        return None

    async def search_contacts(self, name, limit=10):
        return [c for c in self.contacts if name.lower() in c["name"].lower()][:limit]

    async def create_contact(self, first, last, mobile):
        contact = {
            "resourceName": f"people/c{len(self.contacts) + 1}",
            "name": f"{first} {last or ''}".strip(),
            "mobile": mobile,
        }
        self.contacts.append(contact)
        return contact

    async def customer_appointments(self, resource_name):
        return [a for a in self.appointments.values() if a["resourceName"] == resource_name]

    async def get_appointment(self, appointment_id):
        return self.appointments.get(appointment_id)

    async def available_slots(self, date, service_ids, duration):
        return list(self.slots)

    async def create_appointment(self, payload):
        self.created.append(dict(payload))
        if payload["start"] in self.busy and not payload.get("force"):
            raise SchedulingConflictError("Appointment overlaps an existing booking")
        appointment_id = f"appt:new{len(self.created)}"
        self.appointments[appointment_id] = {
            "id": appointment_id,
            "start": payload["start"],
            "serviceIds": payload["serviceIds"],
            "status": "confirmed",
            "name": payload["name"],
            "mobile": payload["mobile"],
            "resourceName": payload.get("resourceName"),
        }
        return {"id": appointment_id, "createdNewContact": False}

    async def update_appointment(self, appointment_id, payload):
        self.updated.append((appointment_id, dict(payload)))
        if payload["start"] in self.busy and not payload.get("force"):
            raise SchedulingConflictError("Appointment overlaps an existing booking")
        self.appointments[appointment_id].update(start=payload["start"], serviceIds=payload["serviceIds"])
        return {"id": appointment_id}

    async def cancel_appointment(self, appointment_id):
        self.cancelled.append(appointment_id)
        self.appointments[appointment_id]["status"] = "cancelled"
        return {"id": appointment_id, "status": "cancelled"}


class ScriptedChatModel(BaseChatModel):
    """Chat model that replays scripted responses and records its inputs.

    A scripted item that is an exception is raised instead of returned.
    """

    responses: list[Any] = Field(default_factory=list)
    received: list[list[Any]] = Field(default_factory=list)
    bound_tools: list[str] = Field(default_factory=list)

    @property
    def _llm_type(self) -> str:
        return "scripted"

    def bind_tools(self, tools, **kwargs):
        self.bound_tools = [t.name for t in tools]
        return self

    def _generate(self, messages, stop=None, run_manager=None, **kwargs) -> ChatResult:
        self.received.append(list(messages))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return ChatResult(generations=[ChatGeneration(message=item)])


def tool_call(name: str, args: dict[str, Any], call_id: str = "toolu_1") -> AIMessage:
    return AIMessage(
        content="",
        tool_calls=[{"name": name, "args": args, "id": call_id, "type": "tool_call"}],
    )


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def fake_client():
    return FakeSalonClient()


@pytest.fixture
def catalog(fake_client):
    from salon_agent.services.catalog import ServiceCatalog

    return ServiceCatalog(fake_client)


@pytest.fixture
def jane():
    return CustomerIdentity(external_id="people/c1", display_name="Jane Tan", mobile="+6591234567")


@pytest.fixture
def make_context(jane):
    """Factory for session contexts: ``make_context(role, identified=False)``."""

    def _make(role: Role = Role.CUSTOMER, *, identified: bool = False, session_id: str = "s1"):
        return SessionContext(
            session_id=session_id,
            role=role,
            identity=jane if identified else None,
        )

    return _make


@pytest.fixture
def make_tool_context(fake_client, catalog, now):
    from salon_agent.tools.base import ToolContext

    def _make(session: SessionContext, user_text: str = ""):
        return ToolContext(
            client=fake_client, catalog=catalog, session=session, now=now, user_text=user_text,
        )

    return _make


@pytest.fixture
def scripted_llm():
    """Factory: ``scripted_llm(AIMessage(...), ...)``."""

    def _make(*responses):
        return ScriptedChatModel(responses=list(responses))

    return _make


@pytest.fixture
def make_tool_call():
    """Factory for AI messages that request one tool call."""
    return tool_call


@pytest.fixture
def store():
    from salon_agent.services.session_store import InMemorySessionStore

    return InMemorySessionStore()


@pytest.fixture
def make_orchestrator(fake_client, catalog, store, now):
    """Factory: an orchestrator around a scripted model and the fake backend."""
    from salon_agent.agent import Orchestrator

    def _make(llm, **kwargs):
        kwargs.setdefault("catalog", catalog)
        return Orchestrator(
            llm=llm,
            store=store,
            client=fake_client,
            clock=lambda: now,
            **kwargs,
        )

    return _make


@pytest.fixture
def mock_http_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data: dict, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make
