"""Commerce platform booking webhook.

Receives ``booking.created`` and ``booking.updated`` notifications, verifies
the HMAC signature over the raw body and records a short summary of each
event. Unknown event types are acknowledged and logged.
"""

import json
import logging
from collections import deque
from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response

from voice_gateway.domain.errors import ValidationError
from voice_gateway.infra.secret_store import get_secret_store
from voice_gateway.services.signature import COMMERCE_SIGNATURE_HEADER, verify_commerce_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["commerce"])

BOOKING_EVENTS = ("booking.created", "booking.updated")
RECENT_EVENTS_LIMIT = 100

# Most recent booking events, newest last
recent_booking_events: deque[dict] = deque(maxlen=RECENT_EVENTS_LIMIT)


def commerce_signing_key() -> str:
    return get_secret_store().get_secret("COMMERCE_WEBHOOK_SIGNING_KEY") or ""


def summarize_booking_event(event: dict) -> dict:
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    obj = data.get("object") if isinstance(data.get("object"), dict) else {}
    booking = obj.get("booking") if isinstance(obj.get("booking"), dict) else {}
    return {
        "event_id": event.get("event_id"),
        "type": event.get("type"),
        "merchant_id": event.get("merchant_id"),
        "booking_id": booking.get("id") or data.get("id"),
        "status": booking.get("status"),
        "start_at": booking.get("start_at"),
        "location_id": booking.get("location_id"),
        "customer_id": booking.get("customer_id"),
        "version": booking.get("version"),
        "received_at": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/webhooks/commerce/booking")
async def commerce_booking_webhook(request: Request):
    body_bytes = await request.body()
    verify_commerce_signature(body_bytes, request.headers.get(COMMERCE_SIGNATURE_HEADER), commerce_signing_key())

    try:
        event = json.loads(body_bytes) if body_bytes else None
    except ValueError:
        raise ValidationError("Invalid request body format", details="Body is not valid JSON")
    if not isinstance(event, dict):
        raise ValidationError("Invalid request body format", details="Expected JSON object")

    event_type = event.get("type")
    if event_type in BOOKING_EVENTS:
        summary = summarize_booking_event(event)
        recent_booking_events.append(summary)
        logger.info(
            "Commerce %s: booking=%s status=%s start_at=%s",
            event_type, summary["booking_id"], summary["status"], summary["start_at"],
        )
    else:
        logger.info("Commerce webhook ignored: type=%s", event_type)

    return Response(status_code=204)
