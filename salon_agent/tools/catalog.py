"""Catalog tools: browse services and build the customer's selection."""

from __future__ import annotations

import logging
from typing import Any

from salon_agent.errors import ResolutionAmbiguityError
from salon_agent.models import Service
from salon_agent.services.catalog import match_services
from salon_agent.tools.args import ListServicesArgs, SelectServicesArgs
from salon_agent.tools.base import ContextUpdate, ToolContext, ToolResult, ToolSpec

logger = logging.getLogger(__name__)


def service_view(service: Service) -> dict[str, Any]:
    return {
        "id": service.id,
        "name": service.name,
        "category": service.category,
        "duration_minutes": service.duration_minutes,
        "price": service.price,
    }


async def resolve_service_ids(values: list[str], ctx: ToolContext) -> list[str]:
    """Map ids or free-text names to canonical ids.

    Raises ``ResolutionAmbiguityError`` for the first value that matches no
    service or several; nothing is ever guessed.
    """
    ids: list[str] = []
    for value in values:
        value = str(value).strip()
        service = await ctx.catalog.by_id(value)
        if service is None:
            resolution = await ctx.catalog.resolve(value)
            if not resolution.found:
                raise ResolutionAmbiguityError(value, resolution.candidates)
            service = resolution.service
            logger.debug("Resolved service %r to %s", value, service.id)
        if service.id not in ids:
            ids.append(service.id)
    return ids


# ── list_services ────────────────────────────────────────────────────


async def list_services(args: ListServicesArgs, ctx: ToolContext) -> ToolResult:
    services = await ctx.catalog.list_all()
    if args.category:
        wanted = args.category.strip().lower()
        services = [s for s in services if s.category.lower() == wanted]
    return ToolResult({
        "success": True,
        "services": [service_view(s) for s in services],
        "message": f"{len(services)} service(s) available.",
    })


# ── select_services ──────────────────────────────────────────────────


async def select_services(args: SelectServicesArgs, ctx: ToolContext) -> ToolResult:
    resolved: list[Service] = []
    unresolved: list[dict[str, Any]] = []
    for text in args.services:
        service = await ctx.catalog.by_id(text.strip())
        if service is None:
            resolution = await ctx.catalog.resolve(text)
            service = resolution.service
            if service is None:
                unresolved.append({
                    "text": text,
                    "candidates": [c.name for c in resolution.candidates],
                })
                continue
        resolved.append(service)

    # Removals only ever match what is (or is about to be) selected.
    current = ctx.session.memory.selected_services
    pool = [*current, *resolved] if args.append or not args.services else list(resolved)
    removed, not_selected = _match_selected(pool, args.remove)
    removed_ids = {s.id for s in removed}
    remaining = [s for s in _unique(pool) if s.id not in removed_ids]

    payload: dict[str, Any] = {
        "success": bool(resolved or removed),
        "selected": [service_view(s) for s in resolved],
    }
    if removed:
        payload["removed"] = [s.name for s in removed]
    if not_selected:
        payload["not_selected"] = not_selected
    if unresolved:
        payload["needs_clarification"] = unresolved
        payload["message"] = (
            "Some services could not be identified. Ask the customer which one they "
            "mean, listing the candidates by name."
        )
    elif not_selected:
        payload["message"] = (
            f"Not in the current selection, so nothing was removed for: {', '.join(not_selected)}."
        )
    elif args.remove:
        total = sum(s.price for s in remaining)
        minutes = sum(s.duration_minutes for s in remaining)
        payload["remaining"] = [s.name for s in remaining]
        payload["message"] = (
            f"Removed {len(removed)} service(s); {len(remaining)} left: {minutes} min, ${total:.0f}."
        )
    else:
        total = sum(s.price for s in resolved)
        minutes = sum(s.duration_minutes for s in resolved)
        payload["message"] = f"Selected {len(resolved)} service(s): {minutes} min, ${total:.0f}."
    if not resolved and not removed:
        payload["error"] = "ambiguous_service" if unresolved else "not_selected"
        return ToolResult(payload)

    return ToolResult(
        payload,
        updates=ContextUpdate(
            selected_services=resolved if args.services else None,
            append_services=args.append,
            removed_service_ids=[s.id for s in removed] or None,
        ),
    )


def _match_selected(pool: list[Service], texts: list[str]) -> tuple[list[Service], list[str]]:
    """Match removal requests against *pool* by id, then by name."""
    matched: list[Service] = []
    missing: list[str] = []
    for text in texts:
        service = next((s for s in pool if s.id == text.strip()), None)
        if service is None:
            service = match_services(pool, text).service
        if service is None:
            missing.append(text)
        elif service not in matched:
            matched.append(service)
    return matched, missing


def _unique(services: list[Service]) -> list[Service]:
    seen: set[str] = set()
    out = []
    for service in services:
        if service.id not in seen:
            seen.add(service.id)
            out.append(service)
    return out


SPECS = [
    ToolSpec(
        name="list_services",
        description="List the salon's services with duration and price, optionally by category.",
        args_model=ListServicesArgs,
        handler=list_services,
    ),
    ToolSpec(
        name="select_services",
        description=(
            "Record which services the customer wants, by name as they said it, or take "
            "services they no longer want off the selection with remove. "
            "Reports any name that matches no service or several."
        ),
        args_model=SelectServicesArgs,
        handler=select_services,
    ),
]
