"""Customer tools: identify a caller, register a new one, search by name."""

from __future__ import annotations

import logging
from typing import Any

from salon_agent.models import AppointmentSnapshot, CustomerIdentity
from salon_agent.tools.args import CreateContactArgs, LookupCustomerArgs, SearchCustomersArgs
from salon_agent.tools.base import ADMIN_ONLY, ContextUpdate, ToolContext, ToolResult, ToolSpec
from salon_agent.utils import extract_phone, normalize_phone, parse_backend_start

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 5


def identity_from_contact(contact: dict[str, Any]) -> CustomerIdentity:
    return CustomerIdentity(
        external_id=contact["resourceName"],
        display_name=contact.get("name") or contact.get("display") or "",
        mobile=normalize_phone(contact.get("mobile", "")),
    )


async def snapshot_from_row(row: dict[str, Any], catalog) -> AppointmentSnapshot:
    """Build a snapshot from a backend appointment row, naming its services."""
    date = time = None
    if row.get("start"):
        date, time = parse_backend_start(row["start"])
    service_ids = [str(i) for i in row.get("serviceIds") or []]
    names = []
    for service_id in service_ids:
        service = await catalog.by_id(service_id)
        names.append(service.name if service else "Unknown service")
    return AppointmentSnapshot(
        id=str(row["id"]),
        date=date,
        time=time,
        service_ids=service_ids,
        service_names=names,
        status=row.get("status"),
    )


def _describe(snapshot: AppointmentSnapshot) -> dict[str, Any]:
    return {
        "appointment_id": snapshot.id,
        "date": snapshot.date,
        "time": snapshot.time,
        "services": snapshot.service_names,
        "status": snapshot.status,
    }


# ── lookup_customer ──────────────────────────────────────────────────


async def _recover_phone(raw: dict[str, Any], blob: str, ctx: ToolContext) -> dict[str, Any]:
    args = dict(raw)
    phone = extract_phone(str(args.get("phone") or "")) if args.get("phone") else None
    phone = phone or extract_phone(blob) or extract_phone(ctx.user_text)
    if phone:
        args["phone"] = phone
    return args


async def lookup_customer(args: LookupCustomerArgs, ctx: ToolContext) -> ToolResult:
    contact = await ctx.client.lookup_contact_by_phone(args.phone)
    if contact is None:
        return ToolResult({
            "success": True,
            "found": False,
            "message": (
                "No customer is registered with that number. Offer to create a new "
                "customer record with their first name, last name and mobile."
            ),
        })

    identity = identity_from_contact(contact)
    logger.info("Identified customer %s", identity.external_id)

    history: list[AppointmentSnapshot] = []
    if args.include_history:
        rows = await ctx.client.customer_appointments(identity.external_id)
        rows = sorted(rows, key=lambda r: r.get("start") or "", reverse=True)[:HISTORY_LIMIT]
        history = [await snapshot_from_row(r, ctx.catalog) for r in rows]

    return ToolResult(
        payload={
            "success": True,
            "found": True,
            "customer": {"name": identity.display_name, "mobile": identity.mobile},
            "appointments": [_describe(s) for s in history],
            "message": f"Customer identified: {identity.display_name}.",
        },
        updates=ContextUpdate(identity=identity, known_appointments=history),
    )


# ── create_contact ───────────────────────────────────────────────────


async def _recover_contact(raw: dict[str, Any], blob: str, ctx: ToolContext) -> dict[str, Any]:
    args = await _recover_phone({**raw, "phone": raw.get("mobile")}, blob, ctx)
    if args.get("phone"):
        args["mobile"] = args["phone"]
    args.pop("phone", None)
    if not args.get("first_name") and args.get("name"):
        first, _, last = str(args.pop("name")).strip().partition(" ")
        args["first_name"] = first
        args.setdefault("last_name", last or None)
    return args


async def create_contact(args: CreateContactArgs, ctx: ToolContext) -> ToolResult:
    mobile = normalize_phone(args.mobile)
    existing = await ctx.client.lookup_contact_by_phone(mobile)
    if existing is not None:
        identity = identity_from_contact(existing)
        return ToolResult(
            payload={
                "success": True,
                "created": False,
                "customer": {"name": identity.display_name, "mobile": identity.mobile},
                "message": "A customer with this mobile already exists; using that record.",
            },
            updates=ContextUpdate(identity=identity),
        )

    contact = await ctx.client.create_contact(args.first_name.strip(), args.last_name, mobile)
    identity = identity_from_contact(contact)
    logger.info("Created contact %s", identity.external_id)
    return ToolResult(
        payload={
            "success": True,
            "created": True,
            "customer": {"name": identity.display_name, "mobile": identity.mobile},
            "message": f"New customer record created for {identity.display_name}.",
        },
        updates=ContextUpdate(identity=identity, known_appointments=[]),
    )


# ── search_customers (staff) ─────────────────────────────────────────


async def search_customers(args: SearchCustomersArgs, ctx: ToolContext) -> ToolResult:
    contacts = await ctx.client.search_contacts(args.name)
    return ToolResult({
        "success": True,
        "customers": [
            {"name": c.get("name"), "mobile": normalize_phone(c.get("mobile", ""))}
            for c in contacts
        ],
        "message": f"{len(contacts)} customer(s) match \"{args.name}\".",
    })


SPECS = [
    ToolSpec(
        name="lookup_customer",
        description=(
            "Identify a customer by mobile number. Returns their name and recent "
            "appointments, or found=false when the number is not registered."
        ),
        args_model=LookupCustomerArgs,
        handler=lookup_customer,
        recover=_recover_phone,
    ),
    ToolSpec(
        name="create_contact",
        description="Register a new customer. Only call this after lookup_customer found nobody.",
        args_model=CreateContactArgs,
        handler=create_contact,
        recover=_recover_contact,
        writes=True,
    ),
    ToolSpec(
        name="search_customers",
        description="Find customers by name. Use lookup_customer with their mobile to select one.",
        args_model=SearchCustomersArgs,
        handler=search_customers,
        roles=ADMIN_ONLY,
    ),
]
