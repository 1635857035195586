"""Service catalog: the salon's bookable services, cached and name-resolvable.

The catalog is the only data shared across sessions.  It is refreshed at
most once per TTL; when the backend is unavailable the last good copy keeps
being served, and only a cold start with no copy at all raises.

Free-text resolution never guesses: an exact (case-insensitive) name wins,
otherwise the services whose name *contains* the text are candidates, and
anything other than exactly one candidate comes back unresolved.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from salon_agent.config import SERVICES_CACHE_TTL_SECONDS
from salon_agent.models import Service
from salon_agent.services.cache import TTLCache

logger = logging.getLogger(__name__)

_CK_SERVICES = "services"

CATEGORIES = ("Lashes", "Facial", "Threading", "Waxing", "Skin")
_LEGACY_PREFIXES = ("(2021)", "Old ")


@dataclass
class Resolution:
    """Outcome of resolving one free-text service reference."""

    text: str
    service: Service | None = None
    candidates: list[Service] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.service is not None

    @property
    def ambiguous(self) -> bool:
        return self.service is None and len(self.candidates) > 1


def category_for(name: str) -> str:
    for category in CATEGORIES:
        if name.startswith(category):
            return category
    return "Other"


def parse_services(rows: list[dict[str, Any]]) -> list[Service]:
    """Turn raw backend rows into ``Service`` models, dropping retired ones."""
    services = []
    for row in rows:
        name = (row.get("service") or row.get("name") or "").strip()
        if not name or row.get("enabled") is False:
            continue
        if name.startswith(_LEGACY_PREFIXES):
            continue
        services.append(
            Service(
                id=str(row.get("id") or row.get("resourceName")),
                name=name,
                price=float(row.get("price") or 0),
                duration_minutes=int(row.get("duration") or 0),
                category=category_for(name),
            )
        )
    return services


def match_services(services: list[Service], text: str) -> Resolution:
    """Resolve *text* against *services* without touching the network."""
    needle = " ".join((text or "").split()).lower()
    if not needle:
        return Resolution(text=text)

    exact = [s for s in services if s.name.lower() == needle]
    if len(exact) == 1:
        return Resolution(text=text, service=exact[0], candidates=exact)
    if len(exact) > 1:
        return Resolution(text=text, candidates=exact)

    contained = [s for s in services if needle in s.name.lower()]
    if len(contained) == 1:
        return Resolution(text=text, service=contained[0], candidates=contained)
    return Resolution(text=text, candidates=contained)


class ServiceCatalog:
    """Cached view over the backend's service list."""

    def __init__(self, client, cache: TTLCache | None = None):
        self._client = client
        self._cache = cache or TTLCache(ttl_seconds=SERVICES_CACHE_TTL_SECONDS)
        self._refresh_lock = asyncio.Lock()

    async def list_all(self, force_refresh: bool = False) -> list[Service]:
        """Return all bookable services.

        Served from cache inside the TTL.  On an upstream failure the stale
        copy is returned whatever the failure was; the error propagates only
        when there is no copy to fall back on.
        """
        if not force_refresh:
            cached = self._cache.get(_CK_SERVICES)
            if cached is not None:
                return cached

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited.
            if not force_refresh:
                cached = self._cache.get(_CK_SERVICES)
                if cached is not None:
                    return cached
            try:
                rows = await self._client.list_services()
            except Exception as exc:
                stale = self._cache.get_stale(_CK_SERVICES)
                if stale is None:
                    raise
                logger.warning(
                    "Service catalog refresh failed (%s); serving stale copy (%d services, age %.0fs)",
                    type(exc).__name__,
                    len(stale),
                    self._cache.age(_CK_SERVICES) or 0.0,
                )
                return stale

            services = parse_services(rows)
            self._cache.put(_CK_SERVICES, services)
            logger.info("Service catalog refreshed: %d services", len(services))
            return services

    async def resolve(self, text: str) -> Resolution:
        return match_services(await self.list_all(), text)

    async def by_id(self, service_id: str) -> Service | None:
        for service in await self.list_all():
            if service.id == service_id:
                return service
        return None

    async def summary(self) -> str:
        """Catalog listing for prompts, grouped by category, without IDs."""
        grouped: OrderedDict[str, list[Service]] = OrderedDict(
            (c, []) for c in (*CATEGORIES, "Other")
        )
        for service in await self.list_all():
            grouped[service.category].append(service)

        lines = []
        for category, services in grouped.items():
            if not services:
                continue
            lines.append(f"{category}:")
            for s in services:
                lines.append(f"- {s.name} ({s.duration_minutes} min, ${s.price:.0f})")
        return "\n".join(lines)
