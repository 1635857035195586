"""Tests for session context persistence."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from salon_agent.models import AppointmentSnapshot, Role, Service, Speaker
from salon_agent.services.session_store import (
    DynamoDBSessionStore,
    InMemorySessionStore,
    SessionLocks,
    create_session_store,
)


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_unknown_session_gets_fresh_context(self, store):
        context = await store.get("new", Role.ADMIN)
        assert context.session_id == "new"
        assert context.role is Role.ADMIN
        assert context.identity is None
        assert context.history == []
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_save_then_get_returns_equal_record(self, store, make_context):
        context = make_context(identified=True)
        context.memory.select_services([Service(id="svc-brow", name="Threading - Eyebrow")])
        context.memory.set_active_appointment(AppointmentSnapshot(id="appt:1", date="2026-02-20"))
        context.append_history(Speaker.USER, "hi", window=20)
        await store.save("s1", context)

        loaded = await store.get("s1")
        assert loaded == context

    @pytest.mark.asyncio
    async def test_each_get_is_a_private_copy(self, store, make_context):
        await store.save("s1", make_context())
        first = await store.get("s1")
        first.append_history(Speaker.USER, "unsaved", window=20)
        second = await store.get("s1")
        assert second.history == []

    @pytest.mark.asyncio
    async def test_existing_session_keeps_its_role(self, store, make_context):
        await store.save("s1", make_context(Role.ADMIN))
        assert (await store.get("s1", Role.CUSTOMER)).role is Role.ADMIN

    @pytest.mark.asyncio
    async def test_reset_clears_state_and_keeps_role(self, store, make_context):
        context = make_context(Role.ADMIN, identified=True)
        context.append_history(Speaker.USER, "hello", window=20)
        await store.save("s1", context)

        fresh = await store.reset("s1", Role.CUSTOMER)
        assert fresh.role is Role.ADMIN
        assert fresh.identity is None
        assert (await store.get("s1")).history == []

    @pytest.mark.asyncio
    async def test_reset_of_unknown_session_uses_given_role(self, store):
        assert (await store.reset("new", Role.ADMIN)).role is Role.ADMIN
        assert (await store.reset("other")).role is Role.CUSTOMER


class TestDynamoDBStore:
    @pytest.fixture
    def table(self):
        return MagicMock()

    @pytest.mark.asyncio
    async def test_missing_item_gives_fresh_context(self, table):
        table.get_item.return_value = {}
        store = DynamoDBSessionStore("sessions", ttl_seconds=0, table=table)
        context = await store.get("s1")
        assert context.session_id == "s1"
        table.get_item.assert_called_once_with(Key={"session_id": "s1"})

    @pytest.mark.asyncio
    async def test_save_writes_json_and_ttl(self, table, make_context):
        store = DynamoDBSessionStore("sessions", ttl_seconds=3600, table=table)
        await store.save("s1", make_context(Role.ADMIN))

        item = table.put_item.call_args.kwargs["Item"]
        assert item["session_id"] == "s1"
        assert item["role"] == "admin"
        assert json.loads(item["data"])["session_id"] == "s1"
        assert item["expires_at"] > 0

    @pytest.mark.asyncio
    async def test_no_ttl_attribute_when_disabled(self, table, make_context):
        store = DynamoDBSessionStore("sessions", ttl_seconds=0, table=table)
        await store.save("s1", make_context())
        assert "expires_at" not in table.put_item.call_args.kwargs["Item"]

    @pytest.mark.asyncio
    async def test_round_trip_through_item(self, table, make_context):
        store = DynamoDBSessionStore("sessions", ttl_seconds=0, table=table)
        context = make_context(identified=True)
        await store.save("s1", context)
        table.get_item.return_value = {"Item": table.put_item.call_args.kwargs["Item"]}
        assert await store.get("s1") == context


class TestLocksAndFactory:
    @pytest.mark.asyncio
    async def test_same_session_is_serialised(self):
        locks = SessionLocks()
        order = []

        async def turn(tag):
            async with locks("a"):
                order.append(f"{tag} start")
                await asyncio.sleep(0)
                order.append(f"{tag} end")

        await asyncio.gather(turn("first"), turn("second"))
        assert order == ["first start", "first end", "second start", "second end"]

    @pytest.mark.asyncio
    async def test_other_sessions_are_not_blocked(self):
        locks = SessionLocks()
        async with locks("a"):
            async with locks("b"):
                assert len(locks) == 2

    @pytest.mark.asyncio
    async def test_lock_is_dropped_once_released(self):
        locks = SessionLocks()
        async with locks("a"):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_survives_while_a_turn_is_waiting(self):
        locks = SessionLocks()
        entered = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with locks("a"):
                entered.set()
                await release.wait()

        async def waiter():
            async with locks("a"):
                pass

        first = asyncio.create_task(holder())
        await entered.wait()
        second = asyncio.create_task(waiter())
        await asyncio.sleep(0)
        assert len(locks) == 1
        release.set()
        await asyncio.gather(first, second)
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_is_dropped_when_the_body_raises(self):
        locks = SessionLocks()
        with pytest.raises(RuntimeError):
            async with locks("a"):
                raise RuntimeError("turn failed")
        assert len(locks) == 0

    def test_factory_backends(self):
        assert isinstance(create_session_store("memory"), InMemorySessionStore)
        assert isinstance(create_session_store("DynamoDB"), DynamoDBSessionStore)
        with pytest.raises(ValueError):
            create_session_store("redis")
