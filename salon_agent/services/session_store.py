"""Session context persistence.

A store exposes exactly three operations: ``get``, ``save`` and ``reset``.
Records are serialised with pydantic (``model_dump_json``) and rebuilt on
every ``get``, so a turn always works on its own private copy and nothing it
does is visible to later turns until ``save``.

Backends
────────
• ``InMemorySessionStore``  a dict of JSON strings; used for tests and local dev.
• ``DynamoDBSessionStore``  one item per ``session_id`` with an optional
  ``expires_at`` TTL attribute for inactivity eviction.  boto3 is blocking,
  so every call is pushed to a worker thread.

Turn ordering is not the store's job: ``SessionLocks`` hands out one
``asyncio.Lock`` per active session, held by the orchestrator from load to
save and dropped once no turn holds or waits for it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from salon_agent.config import SESSION_STORE, SESSION_TABLE_NAME, SESSION_TTL_SECONDS
from salon_agent.models import Role, SessionContext

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Persistence contract for session context records."""

    @abstractmethod
    async def _load(self, session_id: str) -> SessionContext | None: ...

    @abstractmethod
    async def save(self, session_id: str, context: SessionContext) -> None: ...

    async def get(self, session_id: str, role: Role = Role.CUSTOMER) -> SessionContext:
        """Load the context for *session_id*, or a fresh default one.

        *role* only applies when the session does not exist yet; an existing
        session keeps the role it was created with.
        """
        context = await self._load(session_id)
        if context is None:
            logger.debug("New session %s (role=%s)", session_id, role.value)
            return SessionContext(session_id=session_id, role=role)
        if context.role != role:
            logger.debug(
                "Session %s keeps role %s (caller asked for %s)",
                session_id, context.role.value, role.value,
            )
        return context

    async def reset(self, session_id: str, role: Role | None = None) -> SessionContext:
        """Replace the context with a fresh one, keeping the session's role."""
        existing = await self._load(session_id)
        if existing is not None:
            role = existing.role
        context = SessionContext(session_id=session_id, role=role or Role.CUSTOMER)
        await self.save(session_id, context)
        logger.info("Session %s reset (role=%s)", session_id, context.role.value)
        return context


class InMemorySessionStore(SessionStore):
    """Process-local store.  Keeps serialised records so copies never alias."""

    def __init__(self) -> None:
        self._records: dict[str, str] = {}

    async def _load(self, session_id: str) -> SessionContext | None:
        raw = self._records.get(session_id)
        return SessionContext.model_validate_json(raw) if raw is not None else None

    async def save(self, session_id: str, context: SessionContext) -> None:
        context.touch()
        self._records[session_id] = context.model_dump_json()

    def __len__(self) -> int:
        return len(self._records)


class DynamoDBSessionStore(SessionStore):
    """DynamoDB-backed store: ``session_id`` hash key, JSON ``data`` attribute."""

    def __init__(
        self,
        table_name: str = SESSION_TABLE_NAME,
        *,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        table=None,
    ) -> None:
        self._table_name = table_name
        self._ttl_seconds = ttl_seconds
        self._table = table  # lazy-init

    def _get_table(self):
        if self._table is None:
            import boto3

            self._table = boto3.resource("dynamodb").Table(self._table_name)
            logger.info("Using DynamoDB session table %s", self._table_name)
        return self._table

    async def _load(self, session_id: str) -> SessionContext | None:
        table = self._get_table()
        response = await asyncio.to_thread(table.get_item, Key={"session_id": session_id})
        item = response.get("Item")
        if not item:
            return None
        return SessionContext.model_validate_json(item["data"])

    async def save(self, session_id: str, context: SessionContext) -> None:
        context.touch()
        item = {
            "session_id": session_id,
            "role": context.role.value,
            "data": context.model_dump_json(),
            "updated_at": context.updated_at.isoformat(),
        }
        if self._ttl_seconds > 0:
            item["expires_at"] = int(time.time()) + self._ttl_seconds
        await asyncio.to_thread(self._get_table().put_item, Item=item)


class SessionLocks:
    """One ``asyncio.Lock`` per active session id.

    ``async with locks(session_id):`` serialises turns for that session.  A
    lock only exists while some turn holds or waits for it, so the table
    does not grow with the number of sessions ever seen.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def __call__(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[session_id] -= 1
            if not self._users[session_id]:
                del self._users[session_id]
                del self._locks[session_id]

    def __len__(self) -> int:
        return len(self._locks)


def create_session_store(backend: str | None = None) -> SessionStore:
    backend = (backend or SESSION_STORE).lower()
    if backend == "dynamodb":
        return DynamoDBSessionStore()
    if backend != "memory":
        raise ValueError(f"Unknown session store backend: {backend!r}")
    return InMemorySessionStore()
