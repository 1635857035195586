"""Small parsing helpers shared by the tools and the intent classifier."""

from __future__ import annotations

import re
from datetime import datetime

# Appointment identifiers as issued by the salon backend, e.g. "appt:abc123".
APPOINTMENT_ID_RE = re.compile(r"\b(?:appt|appointment)s?:[A-Za-z0-9_-]+", re.IGNORECASE)

# Phone-shaped token: optional +, 8+ digits possibly split by spaces or dashes.
_PHONE_TOKEN_RE = re.compile(r"(?<![\w:])\+?\d[\d\s-]{6,16}\d(?!\w)")
_DATE_LIKE_RE = re.compile(r"(19|20)\d{2}[-/]?\d{2}[-/]?\d{2}")

_TIME_12H_RE = re.compile(r"^(\d{1,2})(?:[:.](\d{2}))?\s*(am|pm|a\.m\.|p\.m\.)$", re.IGNORECASE)
_TIME_24H_RE = re.compile(r"^(\d{1,2})[:.h](\d{2})$")
_TIME_COMPACT_RE = re.compile(r"^(\d{2})(\d{2})$")

_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%Y%m%d", "%d/%m/%Y", "%d-%m-%Y")


def normalize_phone(value: str) -> str:
    """Normalize a phone number to E.164, assuming Singapore for local numbers.

    Examples:
        >>> normalize_phone("9123 4567")
        '+6591234567'
        >>> normalize_phone("65-9123-4567")
        '+6591234567'
        >>> normalize_phone("+44 20 7946 0958")
        '+442079460958'
    """
    value = (value or "").strip()
    if value.startswith("+"):
        return "+" + re.sub(r"\D", "", value[1:])
    digits = re.sub(r"\D", "", value)
    if len(digits) == 8 and digits[0] in "689":
        return f"+65{digits}"
    if len(digits) == 10 and digits.startswith("65"):
        return f"+{digits}"
    return f"+{digits}" if digits else ""


def phone_suffix(value: str, length: int = 8) -> str:
    """The trailing *length* digits, used to compare numbers across formats."""
    return re.sub(r"\D", "", value or "")[-length:]


def extract_phone(text: str) -> str | None:
    """Return the first phone-shaped token in *text* (normalized) or ``None``."""
    for match in _PHONE_TOKEN_RE.finditer(text or ""):
        token = match.group(0).strip()
        if _DATE_LIKE_RE.fullmatch(token):
            continue
        if len(re.sub(r"\D", "", token)) >= 8:
            return normalize_phone(token)
    return None


def extract_appointment_id(text: str) -> str | None:
    match = APPOINTMENT_ID_RE.search(text or "")
    return match.group(0) if match else None


def canonical_date(value: str) -> str:
    """Parse *value* into ``YYYY-MM-DD`` or raise ``ValueError``."""
    value = (value or "").strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    raise ValueError(f'"{value}" is not a date in YYYY-MM-DD format')


def canonical_time(value: str) -> str:
    """Parse *value* ("14:00", "2pm", "2:30 PM", "1400") into ``HH:MM``."""
    raw = (value or "").strip().lower()
    hour: int
    minute: int
    if m := _TIME_12H_RE.match(raw):
        hour, minute = int(m.group(1)), int(m.group(2) or 0)
        if not 1 <= hour <= 12:
            raise ValueError(f'"{value}" is not a valid time')
        is_pm = m.group(3).startswith("p")
        hour = hour % 12 + (12 if is_pm else 0)
    elif m := _TIME_24H_RE.match(raw) or _TIME_COMPACT_RE.match(raw):
        hour, minute = int(m.group(1)), int(m.group(2))
    elif raw.isdigit() and len(raw) <= 2:
        hour, minute = int(raw), 0
    else:
        raise ValueError(f'"{value}" is not a time in HH:MM format')
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f'"{value}" is not a valid time')
    return f"{hour:02d}:{minute:02d}"


def backend_start(date: str, time: str) -> str:
    """Format a canonical date and time as the backend's ``YYYYMMDDTHHmm``."""
    return f"{date.replace('-', '')}T{time.replace(':', '')}"


def parse_backend_start(value: str) -> tuple[str, str]:
    """Inverse of :func:`backend_start`; also accepts ISO 8601 strings."""
    value = (value or "").strip()
    if re.fullmatch(r"\d{8}T\d{4}", value):
        dt = datetime.strptime(value, "%Y%m%dT%H%M")
    else:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return dt.strftime("%Y-%m-%d"), dt.strftime("%H:%M")


def format_display_date(date: str) -> str:
    """'2026-02-17' → 'Tuesday, 17 February 2026'."""
    return datetime.strptime(date, "%Y-%m-%d").strftime("%A, %d %B %Y")


def format_display_time(time: str) -> str:
    """'14:30' → '2:30 PM'."""
    dt = datetime.strptime(time, "%H:%M")
    return dt.strftime("%I:%M %p").lstrip("0")
