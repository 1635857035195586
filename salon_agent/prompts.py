"""Instruction sets for the booking assistant.

``build_instructions`` is a pure function of the intent, the session
context, the catalog summary and the current time: the same inputs always
produce the same prompt.  One template per intent, wrapped in a role
preamble and a shared set of rules.

Nothing in these prompts carries an internal identifier.  Customers,
services and appointments are described by name, date and time only; the
tools recover the identifiers from session memory.
"""

from __future__ import annotations

from datetime import datetime

from salon_agent.config import BUSINESS_NAME, BUSINESS_TIMEZONE
from salon_agent.intent import Intent
from salon_agent.models import AppointmentSnapshot, SessionContext
from salon_agent.utils import format_display_date, format_display_time

# ── Role preambles ───────────────────────────────────────────────────

CUSTOMER_PREAMBLE = """You are the friendly booking assistant for **{business}**, a beauty salon.
You help customers browse services, book appointments, and change or cancel the ones they have.
Keep replies short and warm. Use bullet points for lists of services or times."""

ADMIN_PREAMBLE = """You are the booking assistant for the staff of **{business}**, a beauty salon.
The person you are talking to is a member of staff managing bookings on behalf of customers.
You may look up any customer, book for them, and change or cancel their appointments.
Be concise and matter-of-fact."""

# ── Shared rules ─────────────────────────────────────────────────────

COMMON_RULES = """## Rules
- Never mention internal identifiers (appointment, service or customer record ids) in your replies.
  Refer to appointments by date, time and services, and to services by name.
- Only say a booking, change or cancellation succeeded when the tool result says "success": true.
- Use select_services with the service names the customer used. If a name matches several
  services, list the candidates by name and ask which one they mean. Never guess.
- When the customer drops a service ("without the facial"), call select_services with remove.
- If a tool result says "outcome_unknown", check with get_appointment or lookup_customer before
  trying the same change again.
- Resolve relative dates ("tomorrow", "Friday") against today's date. The salon is closed on Sundays.
- If a tool reports an error, explain it plainly and suggest what to do next."""

CUSTOMER_CONFLICT_RULE = """- If a time is already taken, offer the nearest free times from the tool result."""

ADMIN_CONFLICT_RULE = """- If a time is already taken, offer the nearest free times from the tool result and tell
  staff they can reply "force" to book that time anyway. When they do, the booking is
  re-submitted automatically: report the result, do not ask for another confirmation."""

# ── Intent templates ─────────────────────────────────────────────────

WELCOME_TEMPLATE = """## Task: greet
This is the start of the conversation. Greet them, say briefly what you can help with
(booking, changing or cancelling appointments, and questions about services), and ask
how you can help. Suggested opening: "{welcome}" """

CREATE_TEMPLATE = """## Task: book a new appointment
Flow:
1. Make sure the customer is identified (see below).
2. Record the services they want with select_services.
3. Agree a date, then call check_availability and offer the free times.
4. Once they pick a time, call create_appointment and confirm the details
   (services, date, time, duration, total price)."""

CREATE_NEEDS_IDENTITY_CUSTOMER = """**No customer has been identified yet.** Before checking availability or booking anything,
ask for their mobile number and call lookup_customer. If nobody is registered with that
number, ask for their first and last name and call create_contact."""

CREATE_NEEDS_IDENTITY_ADMIN = """**No customer has been identified yet.** Before booking, ask which customer this is for
(mobile number, or a name to search with search_customers) and identify them with
lookup_customer, or register them with create_contact."""

UPDATE_TEMPLATE = """## Task: change an existing appointment
Flow:
1. Confirm which appointment is being changed (see below). If none is loaded, identify the
   customer with lookup_customer and ask which of their appointments to change, then load it
   with get_appointment.
2. Ask what should change: date, time and/or services.
3. Check availability for the new date if needed, then call update_appointment.
4. Confirm the new details."""

CANCEL_TEMPLATE = """## Task: cancel an appointment
Flow:
1. Confirm which appointment is being cancelled (see below). If none is loaded, identify the
   customer with lookup_customer and ask which appointment they mean.
2. Read back its date, time and services and ask them to confirm the cancellation.
3. Only after they confirm, call cancel_appointment, then confirm it is cancelled."""

_TEMPLATES = {
    Intent.WELCOME: WELCOME_TEMPLATE,
    Intent.CREATE: CREATE_TEMPLATE,
    Intent.UPDATE: UPDATE_TEMPLATE,
    Intent.CANCEL: CANCEL_TEMPLATE,
}


# ── Sections ─────────────────────────────────────────────────────────


def _date_header(now: datetime) -> str:
    today = now.strftime("%Y-%m-%d")
    closed = now.weekday() == 6
    status = "closed today (Sunday)" if closed else "open today"
    return (
        f"## Today\n"
        f"Today is {format_display_date(today)} ({today}), {now.strftime('%H:%M')} "
        f"{BUSINESS_TIMEZONE} time. The salon is {status}; it is closed every Sunday."
    )


def _describe_appointment(snapshot: AppointmentSnapshot) -> str:
    parts = []
    if snapshot.date:
        parts.append(format_display_date(snapshot.date))
    if snapshot.time:
        parts.append(f"at {format_display_time(snapshot.time)}")
    services = ", ".join(snapshot.service_names) or "services unknown"
    text = " ".join(parts) or "date unknown"
    if snapshot.status:
        return f"{text}: {services} ({snapshot.status})"
    return f"{text}: {services}"


def _context_section(intent: Intent, context: SessionContext) -> str:
    memory = context.memory
    lines = ["## What we know"]

    if context.identity:
        lines.append(f"- Customer: {context.identity.display_name} ({context.identity.mobile})")
    else:
        lines.append("- Customer: no customer identified")

    if memory.selected_services:
        names = ", ".join(s.name for s in memory.selected_services)
        lines.append(f"- Selected services: {names}")
    else:
        lines.append("- Selected services: none yet")

    if memory.preferred_date:
        lines.append(f"- Preferred date: {format_display_date(memory.preferred_date)}")
    if memory.preferred_time:
        lines.append(f"- Preferred time: {format_display_time(memory.preferred_time)}")

    if intent in (Intent.UPDATE, Intent.CANCEL):
        if memory.active_appointment:
            lines.append(f"- Appointment in question: {_describe_appointment(memory.active_appointment)}")
        else:
            lines.append("- Appointment in question: none loaded yet")

    if memory.known_appointments and intent is not Intent.CREATE:
        lines.append("- Recent appointments:")
        for snapshot in memory.known_appointments:
            lines.append(f"  - {_describe_appointment(snapshot)}")

    if intent is Intent.CREATE and memory.last_booking:
        lines.append(f"- Just booked in this conversation: {_describe_appointment(memory.last_booking)}")

    pending = memory.pending_booking
    if context.awaiting_override and pending is not None and pending.alternatives:
        times = ", ".join(format_display_time(t) for t in pending.alternatives)
        lines.append(f"- The last booking attempt clashed with another appointment; free nearby: {times}")

    return "\n".join(lines)


def build_instructions(
    intent: Intent,
    context: SessionContext,
    catalog_summary: str,
    now: datetime,
) -> str:
    """Assemble the system prompt for the next model call."""
    preamble = ADMIN_PREAMBLE if context.is_admin else CUSTOMER_PREAMBLE
    template = _TEMPLATES[intent]
    if intent is Intent.WELCOME:
        template = template.format(welcome=get_welcome_message(context))

    sections = [preamble.format(business=BUSINESS_NAME), _date_header(now), template]
    if intent is Intent.CREATE and context.identity is None:
        sections.append(CREATE_NEEDS_IDENTITY_ADMIN if context.is_admin else CREATE_NEEDS_IDENTITY_CUSTOMER)
    sections.append(_context_section(intent, context))

    rules = COMMON_RULES + "\n" + (ADMIN_CONFLICT_RULE if context.is_admin else CUSTOMER_CONFLICT_RULE)
    sections.append(rules)
    sections.append("## Services\n" + (catalog_summary or "The service list is unavailable right now."))
    return "\n\n".join(sections)


def get_welcome_message(context: SessionContext) -> str:
    """Opening line for a new or freshly reset conversation."""
    active = context.memory.active_appointment
    if context.is_admin:
        if active is not None:
            return (
                f"Hello! The appointment on {_describe_appointment(active)} is loaded. "
                "What would you like to change?"
            )
        if context.identity is not None:
            return f"Hello! {context.identity.display_name} is selected. What shall we do for them?"
        return "Hello! Which customer are we working with today? A mobile number or name is fine."

    if context.identity is not None:
        first = context.identity.display_name.split(" ")[0]
        return f"Welcome back, {first}! Would you like to book, change or cancel an appointment?"
    return (
        f"Hi! I'm the booking assistant for {BUSINESS_NAME}. I can help you book an "
        "appointment, change or cancel one, or tell you about our services. How can I help?"
    )
