"""Conversation-initialization aggregator.

Given a tenant and the caller's phone number, gathers everything the voice
agent should know before it speaks:

1. customer lookup by phone, then by equivalent phone spellings
2. parallel fanout: upcoming bookings, recent bookings, service catalog,
   staff roster. Each branch fails independently to an empty slice.
3. filtering / sorting / formatting in the tenant's timezone

The aggregator never raises for commerce failures: a failed primary lookup
yields ``success=False`` and the caller falls back to default variables.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from voice_gateway.domain.tenant import TenantContext
from voice_gateway.services.commerce_client import CommerceClient
from voice_gateway.services.json_utils import duration_to_minutes, format_price, stringify_large_ints
from voice_gateway.services.phone import display_phone, fallback_formats, mask_phone, to_e164
from voice_gateway.services.time_format import (
    format_clock,
    format_current_datetime,
    format_long_date,
    get_zone,
    parse_timestamp,
    relative_timeframe,
    to_rfc3339,
)

logger = logging.getLogger(__name__)

UPCOMING_LIMIT = 10
HISTORY_LIMIT = 50
HISTORY_WINDOW_DAYS = 30
MAX_BOOKINGS_RETURNED = 10

UPCOMING_STATUSES = {"ACCEPTED", "PENDING"}
HISTORY_STATUSES = {"ACCEPTED"}

UNKNOWN_CALLER_GREETING = "Thank you for calling. Who am I speaking with today?"
KNOWN_CALLER_GREETING = "Thank you for calling. It's great to hear from you again. Am I speaking to {name}?"


@dataclass
class InitPayload:
    success: bool
    customer_found: bool = False
    customer: dict | None = None
    dynamic_variables: dict[str, Any] = field(default_factory=dict)
    upcoming_bookings: list[dict] = field(default_factory=list)
    past_bookings: list[dict] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    elapsed_ms: int = 0


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def customer_names(customer: dict | None) -> tuple[str, str, str]:
    """Return (first, last, full) names of a commerce customer."""
    if not customer:
        return "", "", ""
    first = customer.get("given_name") or customer.get("first_name") or ""
    last = customer.get("family_name") or customer.get("last_name") or ""
    return first, last, f"{first} {last}".strip()


def greeting_for(first: str, last: str, full: str) -> str:
    name = first or full or last
    if name:
        return KNOWN_CALLER_GREETING.format(name=name)
    return UNKNOWN_CALLER_GREETING


def format_booking(booking: dict, tz_name: str, now: datetime) -> dict:
    start = parse_timestamp(booking.get("start_at"))
    segments = booking.get("appointment_segments") or []
    first_segment = segments[0] if segments else {}

    formatted: dict[str, Any] = {
        "booking_id": booking.get("id"),
        "status": booking.get("status"),
        "start_at": booking.get("start_at"),
        "end_at": None,
        "date": "",
        "time": "",
        "days_away": None,
        "relative_time": "",
        "service_variation_id": first_segment.get("service_variation_id"),
        "team_member_id": first_segment.get("team_member_id"),
        "location_id": booking.get("location_id"),
        "customer_note": booking.get("customer_note") or "",
        "seller_note": booking.get("seller_note") or "",
        "version": booking.get("version"),
        "created_at": booking.get("created_at"),
        "updated_at": booking.get("updated_at"),
        "appointment_segments": segments,
    }

    if start is not None:
        local = start.astimezone(get_zone(tz_name))
        total_minutes = sum(int(s.get("duration_minutes") or 0) for s in segments)
        formatted["end_at"] = to_rfc3339(start + timedelta(minutes=total_minutes)) if total_minutes else None
        formatted["date"] = format_long_date(local)
        formatted["time"] = format_clock(local)
        formatted["days_away"] = math.ceil((start - now).total_seconds() / 86400)
        formatted["relative_time"] = relative_timeframe(start, tz_name, now)

    return stringify_large_ints(formatted)


def build_service_variations(items: list[dict]) -> dict[str, dict]:
    """Map variation id -> service details for bookable catalog items."""
    variations: dict[str, dict] = {}
    for item in items:
        data = item.get("item_data") or {}
        service_name = data.get("name") or ""
        for variation in data.get("variations") or []:
            vdata = variation.get("item_variation_data") or {}
            is_service = data.get("product_type") == "APPOINTMENTS_SERVICE" or vdata.get("service_duration")
            if not is_service or not variation.get("id"):
                continue
            price = (vdata.get("price_money") or {}).get("amount")
            variations[variation["id"]] = {
                "serviceName": service_name,
                "variationName": vdata.get("name") or "",
                "priceFormatted": format_price(price) if price is not None else "",
                "durationMinutes": duration_to_minutes(vdata.get("service_duration")),
                "teamMemberIds": list(vdata.get("team_member_ids") or []),
            }
    return variations


def build_staff(team_members: list[dict]) -> list[dict]:
    staff = []
    for member in team_members:
        if member.get("status", "ACTIVE") != "ACTIVE":
            continue
        first = member.get("given_name") or ""
        last = member.get("family_name") or ""
        staff.append({
            "id": member.get("id"),
            "name": f"{first} {last}".strip() or "Staff Member",
            "displayName": first or "Staff Member",
        })
    return staff


def _service_names(variations: dict[str, dict]) -> str:
    names: list[str] = []
    for entry in variations.values():
        if entry["serviceName"] and entry["serviceName"] not in names:
            names.append(entry["serviceName"])
    return ", ".join(names)


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class ConversationInitAggregator:
    """Builds the init payload for one caller of one tenant."""

    def __init__(
        self,
        client_factory: Callable[[TenantContext], CommerceClient] = CommerceClient.for_tenant,
        clock: Callable[[], datetime] | None = None,
    ):
        self._client_factory = client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def build(self, tenant: TenantContext, phone_number: str | None, correlation_id: str | None = None) -> InitPayload:
        started = asyncio.get_running_loop().time()
        now = self._clock()
        client = self._client_factory(tenant)

        try:
            customer = await self._find_customer(client, phone_number) if phone_number else None
        except Exception as e:
            logger.error(
                "Customer lookup failed for %s (correlation_id=%s): %s",
                mask_phone(phone_number), correlation_id, e,
            )
            return InitPayload(success=False, errors={"customer": str(e)})

        payload = InitPayload(success=True, customer_found=customer is not None, customer=customer)

        branches: dict[str, Awaitable[Any]] = {
            "services": client.list_service_items(),
            "staff": client.search_team_members(),
        }
        if customer is not None:
            branches["upcoming"] = client.list_bookings(
                customer.get("id"),
                start_at_min=to_rfc3339(now),
                limit=UPCOMING_LIMIT,
            )
            branches["history"] = client.list_bookings(
                customer.get("id"),
                start_at_min=to_rfc3339(now - timedelta(days=HISTORY_WINDOW_DAYS)),
                start_at_max=to_rfc3339(now),
                limit=HISTORY_LIMIT,
            )

        results = await asyncio.gather(*branches.values(), return_exceptions=True)
        slices: dict[str, list] = {}
        for name, result in zip(branches.keys(), results):
            if isinstance(result, BaseException):
                logger.warning("Init branch %s failed (correlation_id=%s): %s", name, correlation_id, result)
                payload.errors[name] = str(result)
                slices[name] = []
            else:
                slices[name] = stringify_large_ints(result or [])

        tz_name = tenant.timezone
        upcoming = sorted(
            (b for b in slices.get("upcoming", []) if b.get("status") in UPCOMING_STATUSES),
            key=lambda b: b.get("start_at") or "",
        )[:MAX_BOOKINGS_RETURNED]
        history = sorted(
            (b for b in slices.get("history", []) if b.get("status") in HISTORY_STATUSES),
            key=lambda b: b.get("start_at") or "",
            reverse=True,
        )[:MAX_BOOKINGS_RETURNED]

        payload.upcoming_bookings = [format_booking(b, tz_name, now) for b in upcoming]
        payload.past_bookings = [format_booking(b, tz_name, now) for b in history]

        variations = build_service_variations(slices["services"])
        staff = build_staff(slices["staff"])
        first, last, full = customer_names(customer)

        payload.dynamic_variables = {
            "customer_first_name": first,
            "customer_last_name": last,
            "customer_full_name": full,
            "customer_email": (customer or {}).get("email_address") or "",
            "customer_phone": display_phone(phone_number),
            "customer_phone_e164": to_e164(phone_number) or "",
            "customer_id": (customer or {}).get("id") or "",
            "upcoming_bookings_json": payload.upcoming_bookings,
            "booking_history_json": payload.past_bookings,
            "is_returning_customer": customer is not None,
            "current_datetime_store_timezone": format_current_datetime(tz_name, now),
            "service_variations_json": variations,
            "staff_with_ids_json": staff,
            "available_staff": ", ".join(s["displayName"] for s in staff),
            "available_services": _service_names(variations),
            "initial_message": greeting_for(first, last, full),
        }

        payload.elapsed_ms = int((asyncio.get_running_loop().time() - started) * 1000)
        logger.info(
            "Init payload built: caller=%s found=%s upcoming=%d history=%d errors=%s elapsed=%dms",
            mask_phone(phone_number), payload.customer_found, len(payload.upcoming_bookings),
            len(payload.past_bookings), sorted(payload.errors), payload.elapsed_ms,
        )
        return payload

    async def _find_customer(self, client: CommerceClient, phone_number: str) -> dict | None:
        """Exact lookup first, then equivalent spellings; first hit with an id wins."""
        customer = _first_identified(await client.search_customers_by_phone(phone_number))
        if customer is not None:
            return customer

        for candidate in fallback_formats(phone_number):
            try:
                customers = await client.search_customers_by_phone(candidate)
            except Exception as e:
                logger.warning("Fallback customer search failed for format %s: %s", mask_phone(candidate), e)
                continue
            customer = _first_identified(customers)
            if customer is not None:
                logger.info("Customer found with fallback format %s", mask_phone(candidate))
                return customer
        return None


def _first_identified(customers: list[dict] | None) -> dict | None:
    """Records without an id cannot be booked against; treat them as a miss."""
    for customer in customers or []:
        if isinstance(customer, dict) and customer.get("id"):
            return customer
    return None
