"""Live tool-call endpoints invoked by the voice agent mid-call.

Every endpoint authenticates through ``tool_context`` (signature, tenant,
optional bearer) and answers with the standard success envelope.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from voice_gateway.app.responses import success_response
from voice_gateway.app.tool_auth import ToolContext, tool_context
from voice_gateway.domain.errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from voice_gateway.domain.schemas import (
    AvailabilityArgs,
    CancelBookingArgs,
    CreateBookingArgs,
    CustomerBookingsArgs,
    CustomerInfoArgs,
    UpdateCustomerArgs,
)
from voice_gateway.domain.tenant import TenantContext
from voice_gateway.services.commerce_client import CommerceClient
from voice_gateway.services.conversation_init import (
    MAX_BOOKINGS_RETURNED,
    UPCOMING_STATUSES,
    ConversationInitAggregator,
    format_booking,
)
from voice_gateway.services.phone import mask_phone
from voice_gateway.services.time_format import (
    format_clock,
    format_long_date,
    get_zone,
    parse_timestamp,
    to_rfc3339,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tools", tags=["tools"])

SLOT_RECHECK_WINDOW = timedelta(minutes=30)
SLOT_MATCH_TOLERANCE = timedelta(minutes=1)
ALTERNATIVE_SEARCH_WINDOW = timedelta(days=7)
MAX_ALTERNATIVES = 10


def _client(tenant: TenantContext) -> CommerceClient:
    return CommerceClient.for_tenant(tenant)


def _aggregator() -> ConversationInitAggregator:
    return ConversationInitAggregator(client_factory=_client)


def _parse_args(model: type[BaseModel], args: dict) -> Any:
    try:
        return model.model_validate(args)
    except PydanticValidationError as e:
        fields = [
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in e.errors()
        ]
        raise ValidationError("Invalid tool arguments", details=fields)


def _format_slot(slot: dict, tz_name: str) -> dict:
    start = parse_timestamp(slot.get("start_at"))
    local = start.astimezone(get_zone(tz_name)) if start else None
    segments = slot.get("appointment_segments") or []
    return {
        "start_at": slot.get("start_at"),
        "date": format_long_date(local) if local else "",
        "time": format_clock(local) if local else "",
        "location_id": slot.get("location_id"),
        "team_member_id": segments[0].get("team_member_id") if segments else None,
        "appointment_segments": segments,
    }


def _segment_filters(service_variation_ids: list[str], staff_member_id: str | None) -> list[dict]:
    filters = []
    for variation_id in service_variation_ids:
        entry: dict[str, Any] = {"service_variation_id": variation_id}
        if staff_member_id:
            entry["team_member_id_filter"] = {"any": [staff_member_id]}
        filters.append(entry)
    return filters


# ======================================================================
# Customer lookups
# ======================================================================


@router.post("/customer-info")
async def customer_info(ctx: ToolContext = Depends(tool_context)):
    """Caller context: customer, bookings and catalog for the given or session phone."""
    args = _parse_args(CustomerInfoArgs, ctx.args)
    phone = (
        args.phone
        or args.phone_number
        or ctx.session_metadata.get("from_number")
        or ctx.call.get("from_number")
    )
    if not phone:
        raise ValidationError("A phone number is required to look up the caller")

    payload = await _aggregator().build(ctx.tenant, phone)
    logger.info("customer-info for %s: found=%s", mask_phone(phone), payload.customer_found)
    return success_response({
        "customer_found": payload.customer_found,
        "customer": payload.customer,
        "upcoming_bookings": payload.upcoming_bookings,
        "past_bookings": payload.past_bookings,
        "dynamic_variables": payload.dynamic_variables,
        "lookup_success": payload.success,
    })


@router.post("/bookings")
async def customer_bookings(ctx: ToolContext = Depends(tool_context)):
    args = _parse_args(CustomerBookingsArgs, ctx.args)
    now = datetime.now(timezone.utc)
    bookings = await _client(ctx.tenant).list_bookings(
        args.customer_id,
        start_at_min=to_rfc3339(now),
        limit=MAX_BOOKINGS_RETURNED,
    )
    upcoming = sorted(
        (b for b in bookings if b.get("status") in UPCOMING_STATUSES),
        key=lambda b: b.get("start_at") or "",
    )[:MAX_BOOKINGS_RETURNED]
    formatted = [format_booking(b, ctx.tenant.timezone, now) for b in upcoming]
    return success_response({"bookings": formatted, "count": len(formatted)})


# ======================================================================
# Availability and booking writes
# ======================================================================


@router.post("/availability")
async def availability(ctx: ToolContext = Depends(tool_context)):
    args = _parse_args(AvailabilityArgs, ctx.args)
    start = datetime.now(timezone.utc)
    end = start + timedelta(days=args.days_ahead)
    slots = await _client(ctx.tenant).search_availability(
        to_rfc3339(start),
        to_rfc3339(end),
        _segment_filters(args.service_variation_ids, args.staff_member_id),
    )
    formatted = [_format_slot(s, ctx.tenant.timezone) for s in slots]
    return success_response({"availabilities": formatted, "count": len(formatted)})


@router.post("/booking/create")
async def create_booking(ctx: ToolContext = Depends(tool_context)):
    """Create a booking after confirming the slot is still open.

    The slot is re-checked with an availability search 30 minutes either
    side of the requested start; a slot starting within one minute counts.
    When it is gone the caller gets 409 with alternative slots.
    """
    args = _parse_args(CreateBookingArgs, ctx.args)
    tenant = ctx.tenant
    client = _client(tenant)

    start = args.start_at
    if start.tzinfo is None:
        start = start.replace(tzinfo=get_zone(tenant.timezone))
    location_id = args.location_id or tenant.effective_location_id
    first_segment = args.appointment_segments[0]
    filters = _segment_filters(
        [s.service_variation_id for s in args.appointment_segments],
        first_segment.team_member_id,
    )

    nearby = await client.search_availability(
        to_rfc3339(start - SLOT_RECHECK_WINDOW),
        to_rfc3339(start + SLOT_RECHECK_WINDOW),
        filters,
        location_id=location_id,
    )
    matched = None
    for slot in nearby:
        slot_start = parse_timestamp(slot.get("start_at"))
        if slot_start is not None and abs(slot_start - start) <= SLOT_MATCH_TOLERANCE:
            matched = slot
            break

    if matched is None:
        later = await client.search_availability(
            to_rfc3339(start),
            to_rfc3339(start + ALTERNATIVE_SEARCH_WINDOW),
            filters,
            location_id=location_id,
        )
        alternatives = [_format_slot(s, tenant.timezone) for s in later[:MAX_ALTERNATIVES]]
        logger.info("Requested slot %s no longer available, %d alternatives", to_rfc3339(start), len(alternatives))
        raise ConflictError(
            "The requested time is no longer available",
            details={"requested_start_at": to_rfc3339(start), "alternatives": alternatives},
        )

    slot_segments = matched.get("appointment_segments") or []
    segments = []
    for i, segment in enumerate(args.appointment_segments):
        slot_segment = slot_segments[i] if i < len(slot_segments) else {}
        entry = {
            "service_variation_id": segment.service_variation_id,
            "team_member_id": segment.team_member_id or slot_segment.get("team_member_id"),
            "service_variation_version": (
                segment.service_variation_version or slot_segment.get("service_variation_version")
            ),
            "duration_minutes": segment.duration_minutes or slot_segment.get("duration_minutes"),
        }
        segments.append({k: v for k, v in entry.items() if v is not None})

    booking = {
        "start_at": to_rfc3339(start),
        "location_id": location_id,
        "customer_id": args.customer_id,
        "appointment_segments": segments,
    }
    if args.customer_note:
        booking["customer_note"] = args.customer_note

    created = await client.create_booking(booking)
    logger.info("Booking created: id=%s tenant=%s", created.get("id"), tenant.tenant_id)
    return success_response(
        format_booking(created, tenant.timezone, datetime.now(timezone.utc)),
        message="Booking created",
        status_code=201,
    )


@router.post("/booking/cancel")
async def cancel_booking(ctx: ToolContext = Depends(tool_context)):
    args = _parse_args(CancelBookingArgs, ctx.args)
    client = _client(ctx.tenant)

    try:
        booking = await client.get_booking(args.booking_id)
    except UpstreamError as e:
        if e.upstream_status != 404:
            raise
        booking = None
    if booking is None:
        raise NotFoundError(f"Booking {args.booking_id} not found")

    cancelled = await client.cancel_booking(args.booking_id, booking.get("version"))
    logger.info("Booking cancelled: id=%s tenant=%s", args.booking_id, ctx.tenant.tenant_id)
    return success_response(
        format_booking(cancelled or booking, ctx.tenant.timezone, datetime.now(timezone.utc)),
        message="Booking cancelled",
    )


# ======================================================================
# Customer writes
# ======================================================================


@router.post("/customer/update")
async def update_customer(ctx: ToolContext = Depends(tool_context)):
    args = _parse_args(UpdateCustomerArgs, ctx.args)
    fields = args.model_dump(include={"given_name", "family_name", "email_address"}, exclude_none=True)
    if not fields:
        raise ValidationError("No customer fields to update")

    customer = await _client(ctx.tenant).update_customer(args.customer_id, fields)
    logger.info("Customer %s updated: fields=%s", args.customer_id, sorted(fields))
    return success_response({"customer": customer}, message="Customer updated")
