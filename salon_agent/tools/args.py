"""Typed argument models, one per tool.

These double as the JSON schemas the model is shown.  Dates and times are
canonicalised here so handlers only ever see ``YYYY-MM-DD`` and ``HH:MM``.
The ``force`` flag of the booking tools is deliberately absent: only the
orchestrator can set it.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator

from salon_agent.utils import canonical_date, canonical_time


class _DateTimeArgs(BaseModel):
    @field_validator("date", mode="before", check_fields=False)
    @classmethod
    def _canonical_date(cls, value):
        return canonical_date(value) if value is not None else value

    @field_validator("time", mode="before", check_fields=False)
    @classmethod
    def _canonical_time(cls, value):
        return canonical_time(value) if value is not None else value


# ── Customers ────────────────────────────────────────────────────────


class LookupCustomerArgs(BaseModel):
    phone: str = Field(description="The customer's mobile number, e.g. 91234567 or +6591234567.")
    include_history: bool = Field(
        default=True, description="Also return the customer's recent appointments.",
    )


class CreateContactArgs(BaseModel):
    first_name: str = Field(description="The customer's first name.")
    last_name: str | None = Field(default=None, description="The customer's last name, if given.")
    mobile: str = Field(description="The customer's mobile number.")


class SearchCustomersArgs(BaseModel):
    name: str = Field(description="All or part of the customer's name.")


# ── Services ─────────────────────────────────────────────────────────


class ListServicesArgs(BaseModel):
    category: str | None = Field(
        default=None,
        description="Optional category filter: Lashes, Facial, Threading, Waxing, Skin or Other.",
    )


class SelectServicesArgs(BaseModel):
    services: list[str] = Field(
        default_factory=list,
        description="Service names exactly as the customer described them (or service ids).",
    )
    append: bool = Field(
        default=False, description="Add to the current selection instead of replacing it.",
    )
    remove: list[str] = Field(
        default_factory=list,
        description="Services the customer no longer wants, by name or id. Taken off the selection.",
    )

    @model_validator(mode="after")
    def _select_or_remove(self):
        if not self.services and not self.remove:
            raise ValueError("give at least one service to select or remove")
        return self


# ── Appointments ─────────────────────────────────────────────────────


class CheckAvailabilityArgs(_DateTimeArgs):
    date: str = Field(description="Date to check, YYYY-MM-DD.")
    service_ids: list[str] = Field(
        default_factory=list,
        description="Services to fit into the slot. Defaults to the current selection.",
    )
    time: str | None = Field(
        default=None, description="Optional preferred start time, HH:MM (24h).",
    )


class CreateAppointmentArgs(_DateTimeArgs):
    date: str = Field(description="Appointment date, YYYY-MM-DD.")
    time: str = Field(description="Start time, HH:MM (24h).")
    service_ids: list[str] = Field(
        min_length=1, description="Services to book. Defaults to the current selection.",
    )
    name: str | None = Field(default=None, description="Customer name (staff bookings only).")
    mobile: str | None = Field(default=None, description="Customer mobile (staff bookings only).")
    contact_id: str | None = Field(default=None, description="Customer record, when known.")
    total_amount: float | None = Field(
        default=None, description="Override the total price. Defaults to the catalog total.",
    )
    additional: float = Field(default=0.0, description="Additional charge.")
    discount: float = Field(default=0.0, description="Discount amount.")
    deposit: float = Field(default=0.0, description="Deposit already paid.")
    to_be_informed: bool = Field(default=False, description="Send the customer a confirmation.")


class UpdateAppointmentArgs(_DateTimeArgs):
    appointment_id: str = Field(description="The appointment being changed.")
    date: str = Field(description="New date, YYYY-MM-DD.")
    time: str = Field(description="New start time, HH:MM (24h).")
    service_ids: list[str] = Field(
        min_length=1, description="Services after the change. Defaults to the current ones.",
    )
    total_amount: float | None = Field(default=None, description="Override the total price.")


class AppointmentRefArgs(BaseModel):
    appointment_id: str = Field(description="The appointment to act on.")
