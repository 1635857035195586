"""Appointment tools: availability, booking, rescheduling and cancellation.

Booking payloads only ever carry catalog ids; free-text service names are
resolved during argument recovery and an ambiguous name stops the call
before anything reaches the backend.  ``create_appointment`` and
``update_appointment`` accept a ``force`` keyword that the orchestrator sets
when staff override a scheduling conflict; the model cannot pass it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from salon_agent.errors import ToolArgumentError, ToolExecutionError
from salon_agent.models import AppointmentSnapshot, Service
from salon_agent.tools.args import (
    AppointmentRefArgs,
    CheckAvailabilityArgs,
    CreateAppointmentArgs,
    UpdateAppointmentArgs,
)
from salon_agent.tools.base import ContextUpdate, ToolContext, ToolResult, ToolSpec, require
from salon_agent.tools.catalog import resolve_service_ids
from salon_agent.tools.customers import snapshot_from_row
from salon_agent.utils import (
    backend_start,
    canonical_time,
    extract_appointment_id,
    extract_phone,
    format_display_date,
    format_display_time,
    normalize_phone,
    parse_backend_start,
    phone_suffix,
)

logger = logging.getLogger(__name__)

DEFAULT_SLOT_MINUTES = 30
MAX_ALTERNATIVES = 3

_SERVICE_ALIASES = ("services", "service_names", "service")


# ── Validation helpers ───────────────────────────────────────────────


def check_open(date: str, time: str | None, now: datetime) -> None:
    """Reject Sundays and anything already in the past (business time)."""
    day = datetime.strptime(date, "%Y-%m-%d").date()
    if day.weekday() == 6:
        raise ToolArgumentError(
            f"The salon is closed on Sundays ({format_display_date(date)}). Suggest another day.",
            field="date",
        )
    if day < now.date():
        raise ToolArgumentError(f"{format_display_date(date)} is in the past.", field="date")
    if time is not None:
        start = datetime.strptime(f"{date} {time}", "%Y-%m-%d %H:%M").replace(tzinfo=now.tzinfo)
        if start <= now:
            raise ToolArgumentError(
                f"{format_display_time(time)} on {format_display_date(date)} has already passed.",
                field="time",
            )


async def services_for(ids: list[str], ctx: ToolContext) -> list[Service]:
    services = []
    for service_id in ids:
        service = await ctx.catalog.by_id(service_id)
        if service is None:
            raise ToolArgumentError(f"Unknown service id {service_id}", field="service_ids")
        services.append(service)
    return services


def _slot_time(value: str) -> str:
    value = str(value)
    if "T" in value:
        return parse_backend_start(value)[1]
    return canonical_time(value)


async def free_slots(ctx: ToolContext, date: str, service_ids: list[str], duration: int) -> list[str]:
    """Free start times on *date*, canonical and excluding times already past."""
    raw = await ctx.client.available_slots(date, service_ids, duration)
    slots = sorted({_slot_time(s) for s in raw})
    if date == ctx.now.strftime("%Y-%m-%d"):
        slots = [s for s in slots if s > ctx.now.strftime("%H:%M")]
    return slots


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


async def nearest_alternatives(arguments: dict[str, Any], ctx: ToolContext) -> list[str]:
    """The free slots closest to the one a conflicted booking asked for."""
    date, time = arguments["date"], arguments["time"]
    services = await services_for(arguments["service_ids"], ctx)
    duration = sum(s.duration_minutes for s in services) or DEFAULT_SLOT_MINUTES
    slots = [s for s in await free_slots(ctx, date, arguments["service_ids"], duration) if s != time]
    slots.sort(key=lambda s: abs(_minutes(s) - _minutes(time)))
    return slots[:MAX_ALTERNATIVES]


# ── Argument recovery ────────────────────────────────────────────────


def _pull_service_aliases(args: dict[str, Any]) -> None:
    for alias in _SERVICE_ALIASES:
        if alias in args:
            value = args.pop(alias)
            if not args.get("service_ids"):
                args["service_ids"] = value
    if isinstance(args.get("service_ids"), str):
        args["service_ids"] = [args["service_ids"]]


async def _recover_availability(raw: dict[str, Any], blob: str, ctx: ToolContext) -> dict[str, Any]:
    args = dict(raw)
    memory = ctx.session.memory
    _pull_service_aliases(args)
    if not args.get("service_ids") and memory.selected_services:
        args["service_ids"] = [s.id for s in memory.selected_services]
    if args.get("service_ids"):
        args["service_ids"] = await resolve_service_ids(args["service_ids"], ctx)
    if not args.get("date") and memory.preferred_date:
        args["date"] = memory.preferred_date
    return args


async def _recover_create(raw: dict[str, Any], blob: str, ctx: ToolContext) -> dict[str, Any]:
    args = dict(raw)
    memory = ctx.session.memory
    identity = ctx.session.identity
    _pull_service_aliases(args)

    if not args.get("service_ids") and memory.selected_services:
        args["service_ids"] = [s.id for s in memory.selected_services]
    if args.get("service_ids"):
        args["service_ids"] = await resolve_service_ids(args["service_ids"], ctx)
    args.setdefault("date", memory.preferred_date)
    args.setdefault("time", memory.preferred_time)
    if args.get("date") is None:
        args.pop("date")
    if args.get("time") is None:
        args.pop("time")

    if not ctx.is_admin:
        # Customers can only book for themselves.
        args["name"] = identity.display_name if identity else None
        args["mobile"] = identity.mobile if identity else None
        args["contact_id"] = identity.external_id if identity else None
    else:
        if identity is not None and not args.get("name") and not args.get("mobile"):
            args["name"] = identity.display_name
            args["mobile"] = identity.mobile
            args["contact_id"] = identity.external_id
        if args.get("mobile"):
            args["mobile"] = extract_phone(str(args["mobile"])) or args["mobile"]
        elif args.get("name"):
            args["mobile"] = extract_phone(blob)
    return args


async def _recover_appointment_ref(raw: dict[str, Any], blob: str, ctx: ToolContext) -> dict[str, Any]:
    args = dict(raw)
    if not args.get("appointment_id"):
        args["appointment_id"] = (
            extract_appointment_id(blob)
            or extract_appointment_id(ctx.user_text)
            or ctx.session.memory.active_appointment_id
        )
    return args


async def _recover_update(raw: dict[str, Any], blob: str, ctx: ToolContext) -> dict[str, Any]:
    args = await _recover_appointment_ref(raw, blob, ctx)
    memory = ctx.session.memory
    _pull_service_aliases(args)

    active = memory.active_appointment
    if active is not None and active.id != args.get("appointment_id"):
        active = None

    if not args.get("service_ids"):
        tied = memory.selected_services and memory.services_appointment_id == args.get("appointment_id")
        if tied:
            args["service_ids"] = [s.id for s in memory.selected_services]
        elif active is not None and active.service_ids:
            args["service_ids"] = list(active.service_ids)
        elif memory.selected_services:
            args["service_ids"] = [s.id for s in memory.selected_services]
    if args.get("service_ids"):
        args["service_ids"] = await resolve_service_ids(args["service_ids"], ctx)

    if not args.get("date"):
        args["date"] = (active.date if active else None) or memory.preferred_date
    if not args.get("time"):
        args["time"] = (active.time if active else None) or memory.preferred_time
    return {k: v for k, v in args.items() if v is not None}


async def _load_owned(ctx: ToolContext, appointment_id: str) -> dict[str, Any]:
    """Fetch an appointment; customers only ever see their own."""
    row = await ctx.client.get_appointment(appointment_id)
    if row is None:
        raise ToolExecutionError("That appointment could not be found.")
    if not ctx.is_admin:
        identity = ctx.session.identity
        if identity is None:
            raise ToolArgumentError(
                "Identify the customer by mobile number before looking at an appointment.",
                field="identity",
            )
        same_contact = row.get("resourceName") == identity.external_id
        same_mobile = phone_suffix(row.get("mobile", "")) == phone_suffix(identity.mobile)
        if not (same_contact or same_mobile):
            raise ToolExecutionError("That appointment could not be found.")
    return row


def _booking_payload(
    snapshot: AppointmentSnapshot, total: float, duration: int, *, forced: bool, message: str,
) -> dict[str, Any]:
    return {
        "success": True,
        "appointment_id": snapshot.id,
        "date": format_display_date(snapshot.date),
        "time": format_display_time(snapshot.time),
        "services": snapshot.service_names,
        "duration_minutes": duration,
        "total_price": total,
        "forced": forced,
        "message": message,
    }


# ── check_availability ───────────────────────────────────────────────


async def check_availability(args: CheckAvailabilityArgs, ctx: ToolContext) -> ToolResult:
    check_open(args.date, None, ctx.now)
    services = await services_for(args.service_ids, ctx)
    duration = sum(s.duration_minutes for s in services) or DEFAULT_SLOT_MINUTES
    slots = await free_slots(ctx, args.date, args.service_ids, duration)

    payload: dict[str, Any] = {
        "success": True,
        "date": format_display_date(args.date),
        "duration_minutes": duration,
        "slots": [format_display_time(s) for s in slots],
    }
    if args.time is not None:
        payload["requested_time"] = format_display_time(args.time)
        payload["requested_time_available"] = args.time in slots
    payload["message"] = (
        f"{len(slots)} free slot(s) on {payload['date']}."
        if slots else f"No free slots on {payload['date']}."
    )
    return ToolResult(
        payload,
        updates=ContextUpdate(preferred_date=args.date, preferred_time=args.time),
    )


# ── create_appointment ───────────────────────────────────────────────


async def create_appointment(
    args: CreateAppointmentArgs, ctx: ToolContext, force: bool = False,
) -> ToolResult:
    check_open(args.date, args.time, ctx.now)
    name = require(
        args.name, "name",
        "No customer identified. Ask for their mobile number and call lookup_customer first.",
    )
    mobile = require(args.mobile, "mobile", "The customer's mobile number is needed to book.")
    services = await services_for(args.service_ids, ctx)
    duration = sum(s.duration_minutes for s in services)
    total = args.total_amount if args.total_amount is not None else sum(s.price for s in services)

    created = await ctx.client.create_appointment({
        "name": name,
        "mobile": normalize_phone(mobile),
        "resourceName": args.contact_id,
        "start": backend_start(args.date, args.time),
        "serviceIds": args.service_ids,
        "duration": duration,
        "totalAmount": total,
        "additional": args.additional,
        "discount": args.discount,
        "toBeInformed": args.to_be_informed,
        "deposit": args.deposit,
        "force": force,
    })

    snapshot = AppointmentSnapshot(
        id=str(created["id"]),
        date=args.date,
        time=args.time,
        service_ids=list(args.service_ids),
        service_names=[s.name for s in services],
        status="confirmed",
    )
    logger.info("Booked appointment %s at %s %s (force=%s)", snapshot.id, args.date, args.time, force)
    return ToolResult(
        _booking_payload(
            snapshot, total, duration, forced=force,
            message=f"Booked {', '.join(snapshot.service_names)} for {name}.",
        ),
        updates=ContextUpdate(
            last_booking=snapshot, preferred_date=args.date, preferred_time=args.time,
        ),
    )


# ── update_appointment ───────────────────────────────────────────────


async def update_appointment(
    args: UpdateAppointmentArgs, ctx: ToolContext, force: bool = False,
) -> ToolResult:
    row = await _load_owned(ctx, args.appointment_id)
    check_open(args.date, args.time, ctx.now)
    services = await services_for(args.service_ids, ctx)
    duration = sum(s.duration_minutes for s in services)
    total = args.total_amount if args.total_amount is not None else sum(s.price for s in services)

    await ctx.client.update_appointment(args.appointment_id, {
        "name": row.get("name"),
        "mobile": row.get("mobile"),
        "resourceName": row.get("resourceName"),
        "start": backend_start(args.date, args.time),
        "serviceIds": args.service_ids,
        "duration": duration,
        "totalAmount": total,
        "force": force,
    })

    snapshot = AppointmentSnapshot(
        id=args.appointment_id,
        date=args.date,
        time=args.time,
        service_ids=list(args.service_ids),
        service_names=[s.name for s in services],
        status=row.get("status") or "confirmed",
    )
    logger.info("Updated appointment %s to %s %s (force=%s)", snapshot.id, args.date, args.time, force)
    return ToolResult(
        _booking_payload(snapshot, total, duration, forced=force, message="Appointment updated."),
        updates=ContextUpdate(
            active_appointment=snapshot, preferred_date=args.date, preferred_time=args.time,
        ),
    )


# ── cancel_appointment / get_appointment ─────────────────────────────


async def cancel_appointment(args: AppointmentRefArgs, ctx: ToolContext) -> ToolResult:
    row = await _load_owned(ctx, args.appointment_id)
    await ctx.client.cancel_appointment(args.appointment_id)
    snapshot = await snapshot_from_row(row, ctx.catalog)
    logger.info("Cancelled appointment %s", args.appointment_id)
    payload = {
        "success": True,
        "cancelled": True,
        "services": snapshot.service_names,
        "message": "Appointment cancelled.",
    }
    if snapshot.date and snapshot.time:
        payload["date"] = format_display_date(snapshot.date)
        payload["time"] = format_display_time(snapshot.time)
    return ToolResult(
        payload,
        updates=ContextUpdate(
            clear_active_appointment=ctx.session.memory.active_appointment_id == args.appointment_id,
        ),
    )


async def get_appointment(args: AppointmentRefArgs, ctx: ToolContext) -> ToolResult:
    row = await _load_owned(ctx, args.appointment_id)
    snapshot = await snapshot_from_row(row, ctx.catalog)
    payload = {
        "success": True,
        "appointment_id": snapshot.id,
        "customer": row.get("name"),
        "services": snapshot.service_names,
        "status": snapshot.status,
        "message": "Appointment loaded.",
    }
    if snapshot.date and snapshot.time:
        payload["date"] = format_display_date(snapshot.date)
        payload["time"] = format_display_time(snapshot.time)
    return ToolResult(payload, updates=ContextUpdate(active_appointment=snapshot))


SPECS = [
    ToolSpec(
        name="check_availability",
        description="List free start times on a date for the selected services.",
        args_model=CheckAvailabilityArgs,
        handler=check_availability,
        recover=_recover_availability,
    ),
    ToolSpec(
        name="create_appointment",
        description=(
            "Book a new appointment for the identified customer. Services may be given "
            "by name; an ambiguous name is reported back instead of guessed."
        ),
        args_model=CreateAppointmentArgs,
        handler=create_appointment,
        recover=_recover_create,
        booking=True,
        writes=True,
    ),
    ToolSpec(
        name="update_appointment",
        description="Move an existing appointment and/or change its services.",
        args_model=UpdateAppointmentArgs,
        handler=update_appointment,
        recover=_recover_update,
        booking=True,
        writes=True,
    ),
    ToolSpec(
        name="cancel_appointment",
        description="Cancel an existing appointment.",
        args_model=AppointmentRefArgs,
        handler=cancel_appointment,
        recover=_recover_appointment_ref,
        writes=True,
    ),
    ToolSpec(
        name="get_appointment",
        description="Load one appointment's details so it can be changed or cancelled.",
        args_model=AppointmentRefArgs,
        handler=get_appointment,
        recover=_recover_appointment_ref,
    ),
]
