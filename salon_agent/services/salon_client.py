"""Async GraphQL client for the salon's scheduling and contacts backend.

Every request carries the salon API token in the ``Authorization`` header.
Transport failures (timeouts, refused or reset connections, protocol
errors) and 5xx responses are retried with exponential backoff; 4xx
responses, GraphQL errors and unparseable bodies are not.  A booking mutation that
the backend rejects because the slot overlaps an existing appointment is
raised as :class:`SchedulingConflictError` rather than a generic failure.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
from typing import Any

import httpx

from salon_agent.config import SALON_API_TOKEN, SALON_API_URL
from salon_agent.errors import SalonAPIError, SchedulingConflictError
from salon_agent.services.cache import TTLCache
from salon_agent.services.metrics import metrics
from salon_agent.utils import phone_suffix

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0

# Contacts are fetched in bulk and matched locally.
CONTACTS_TTL_SECONDS = 600.0
_CK_CONTACTS = "contacts"

_CONFLICT_RE = re.compile(r"overlap|conflict|clash|already booked|not available", re.IGNORECASE)

# ── GraphQL documents ───────────────────────────────────────────────

SERVICES_QUERY = "{ services { id, service, duration, price, enabled } }"

CONTACTS_QUERY = "{ contacts { name, mobile, display, resourceName } }"

CREATE_CONTACT_MUTATION = """
mutation CreateNewContact($first: String!, $last: String, $mobile: String!) {
  createContact(first: $first, last: $last, mobile: $mobile) {
    resourceName, name, mobile
  }
}
"""

CUSTOMER_APPOINTMENTS_QUERY = """
query CustomerAppointments($resourceName: String!) {
  customerAppointments(resourceName: $resourceName) {
    id, start, serviceIds, status
  }
}
"""

APPOINTMENT_QUERY = """
query Appointment($id: String!) {
  appointment(id: $id) {
    id, start, serviceIds, status, name, mobile, resourceName
  }
}
"""

AVAILABLE_SLOTS_QUERY = """
query AvailableSlots($date: String!, $serviceIds: [String]!, $duration: Int!) {
  availableSlots(date: $date, serviceIds: $serviceIds, duration: $duration)
}
"""

CREATE_APPOINTMENT_MUTATION = """
mutation($name: String!, $mobile: String!, $resourceName: String, $start: String!,
         $serviceIds: [String]!, $duration: Int!, $totalAmount: Float, $additional: Float,
         $discount: Float, $toBeInformed: Boolean, $deposit: Float, $force: Boolean) {
  createAppointment(name: $name, mobile: $mobile, resourceName: $resourceName, start: $start,
                    serviceIds: $serviceIds, duration: $duration, totalAmount: $totalAmount,
                    additional: $additional, discount: $discount, toBeInformed: $toBeInformed,
                    deposit: $deposit, force: $force) {
    id, createdNewContact
  }
}
"""

UPDATE_APPOINTMENT_MUTATION = """
mutation($id: String!, $name: String, $mobile: String, $resourceName: String, $start: String!,
         $serviceIds: [String]!, $duration: Int!, $totalAmount: Float, $force: Boolean) {
  updateAppointment(id: $id, name: $name, mobile: $mobile, resourceName: $resourceName,
                    start: $start, serviceIds: $serviceIds, duration: $duration,
                    totalAmount: $totalAmount, force: $force) {
    id
  }
}
"""

CANCEL_APPOINTMENT_MUTATION = """
mutation($id: String!) {
  cancelAppointment(id: $id) { id, status }
}
"""


class SalonClient:
    """Thin async wrapper around the salon GraphQL API with automatic retries.

    Contacts are cached for ``CONTACTS_TTL_SECONDS`` and invalidated by
    ``create_contact``; availability and appointments are always fetched
    fresh because they change in real time.
    """

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        *,
        cache: TTLCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._token = token or SALON_API_TOKEN
        self._url = base_url or SALON_API_URL
        self._client = httpx.AsyncClient(
            headers={
                "Authorization": self._token,
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )
        self._cache = cache or TTLCache(ttl_seconds=CONTACTS_TTL_SECONDS)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Internal helpers ─────────────────────────────────────────────

    async def _post(self, payload: dict[str, Any], operation: str) -> dict[str, Any]:
        """POST one GraphQL document with exponential-backoff retries."""
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = await self._client.post(self._url, json=payload)
                if response.status_code >= 500:
                    raise SalonAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise SalonAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
            except httpx.TransportError as exc:
                last_error = exc
                metrics.record_failure(
                    "salon_api", operation, error_type=type(exc).__name__,
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                logger.warning(
                    "Salon API %s attempt %d/%d failed (%s). Retrying in %.1fs…",
                    operation,
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except SalonAPIError as exc:
                metrics.record_failure(
                    "salon_api", operation, error_type=f"http_{exc.status_code}",
                )
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Salon API server error on %s attempt %d/%d. Retrying…",
                        operation,
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise
            else:
                try:
                    body = response.json()
                except ValueError:
                    body = None
                if not isinstance(body, dict):
                    metrics.record_failure("salon_api", operation, error_type="invalid_json")
                    raise SalonAPIError(
                        f"Salon API {operation} returned a body that is not a JSON object",
                        status_code=response.status_code,
                    )
                metrics.record_success(
                    "salon_api", operation, latency_ms=(time.perf_counter() - t0) * 1000,
                )
                return body

            if attempt < MAX_RETRIES:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise SalonAPIError(
            f"Salon API {operation} failed after {MAX_RETRIES} retries: {last_error}"
        )

    async def _graphql(
        self,
        operation: str,
        query: str,
        variables: dict[str, Any] | None = None,
        *,
        booking: bool = False,
    ) -> dict[str, Any]:
        """Run a GraphQL document and return its ``data`` block.

        With ``booking=True`` an overlap rejection (HTTP 409 or a GraphQL
        error mentioning a conflict) raises ``SchedulingConflictError``.
        """
        payload: dict[str, Any] = {"query": query}
        if variables is not None:
            payload["variables"] = variables

        try:
            result = await self._post(payload, operation)
        except SalonAPIError as exc:
            if booking and exc.status_code == 409:
                raise SchedulingConflictError(str(exc)) from exc
            raise

        errors = result.get("errors")
        if errors:
            message = "; ".join(str(e.get("message", e)) for e in errors)
            if booking and _CONFLICT_RE.search(message):
                raise SchedulingConflictError(message)
            raise SalonAPIError(f"GraphQL errors in {operation}: {message}")

        data = result.get("data")
        if data is None:
            raise SalonAPIError(f"Salon API {operation} returned no data")
        return data

    # ── Services ─────────────────────────────────────────────────────

    async def list_services(self) -> list[dict[str, Any]]:
        """Return the raw service rows; filtering happens in the catalog."""
        data = await self._graphql("services", SERVICES_QUERY)
        return data.get("services") or []

    # ── Contacts ─────────────────────────────────────────────────────

    async def get_contacts(self) -> list[dict[str, Any]]:
        cached = self._cache.get(_CK_CONTACTS)
        if cached is not None:
            return cached
        data = await self._graphql("contacts", CONTACTS_QUERY)
        contacts = data.get("contacts") or []
        self._cache.put(_CK_CONTACTS, contacts)
        logger.debug("Fetched %d contacts", len(contacts))
        return contacts

    async def lookup_contact_by_phone(self, phone: str) -> dict[str, Any] | None:
        """Find a contact whose mobile shares the last eight digits with *phone*."""
        suffix = phone_suffix(phone)
        if len(suffix) < 8:
            return None
        for contact in await self.get_contacts():
            if phone_suffix(contact.get("mobile", "")) == suffix:
                return contact
        return None

    async def search_contacts(self, name: str, limit: int = 10) -> list[dict[str, Any]]:
        """Contacts whose name contains every word of *name* (case-insensitive)."""
        words = [w for w in name.lower().split() if w]
        if not words:
            return []
        matches = []
        for contact in await self.get_contacts():
            haystack = f"{contact.get('name', '')} {contact.get('display', '')}".lower()
            if all(w in haystack for w in words):
                matches.append(contact)
                if len(matches) >= limit:
                    break
        return matches

    async def create_contact(self, first: str, last: str | None, mobile: str) -> dict[str, Any]:
        data = await self._graphql(
            "createContact",
            CREATE_CONTACT_MUTATION,
            {"first": first, "last": last or "", "mobile": mobile},
        )
        self._cache.invalidate(_CK_CONTACTS)
        contact = data.get("createContact")
        if not contact:
            raise SalonAPIError("Salon API createContact returned no contact")
        return contact

    # ── Appointments ─────────────────────────────────────────────────

    async def customer_appointments(self, resource_name: str) -> list[dict[str, Any]]:
        data = await self._graphql(
            "customerAppointments",
            CUSTOMER_APPOINTMENTS_QUERY,
            {"resourceName": resource_name},
        )
        return data.get("customerAppointments") or []

    async def get_appointment(self, appointment_id: str) -> dict[str, Any] | None:
        data = await self._graphql("appointment", APPOINTMENT_QUERY, {"id": appointment_id})
        return data.get("appointment")

    async def available_slots(
        self, date: str, service_ids: list[str], duration: int,
    ) -> list[str]:
        """Start times (``HH:MM``) the backend reports free on *date*."""
        data = await self._graphql(
            "availableSlots",
            AVAILABLE_SLOTS_QUERY,
            {"date": date, "serviceIds": service_ids, "duration": duration},
        )
        return list(data.get("availableSlots") or [])

    async def create_appointment(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = await self._graphql(
            "createAppointment", CREATE_APPOINTMENT_MUTATION, payload, booking=True,
        )
        created = data.get("createAppointment")
        if not created or not created.get("id"):
            raise SalonAPIError("Salon API createAppointment returned no appointment id")
        return created

    async def update_appointment(self, appointment_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        data = await self._graphql(
            "updateAppointment",
            UPDATE_APPOINTMENT_MUTATION,
            {"id": appointment_id, **payload},
            booking=True,
        )
        return data.get("updateAppointment") or {"id": appointment_id}

    async def cancel_appointment(self, appointment_id: str) -> dict[str, Any]:
        data = await self._graphql(
            "cancelAppointment", CANCEL_APPOINTMENT_MUTATION, {"id": appointment_id},
        )
        return data.get("cancelAppointment") or {"id": appointment_id}


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: SalonClient | None = None
_client_lock = threading.Lock()


def get_salon_client() -> SalonClient:
    """Return a module-level SalonClient singleton (double-checked locking)."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = SalonClient()
    return _client
