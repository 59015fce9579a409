"""Tests for POST /webhooks/commerce/booking."""

import json

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from voice_gateway.app.exception_handlers import register_exception_handlers
from voice_gateway.app.routes import commerce_webhook
from voice_gateway.services.signature import COMMERCE_SIGNATURE_HEADER, sign_commerce_payload

SIGNING_KEY = "test-commerce-key"

BOOKING_EVENT = {
    "merchant_id": "MERCHANT1",
    "type": "booking.created",
    "event_id": "evt-1",
    "data": {
        "type": "booking",
        "id": "BK1",
        "object": {
            "booking": {
                "id": "BK1",
                "status": "ACCEPTED",
                "start_at": "2030-01-15T15:00:00Z",
                "location_id": "LOC123",
                "customer_id": "CUST1",
                "version": 0,
            },
        },
    },
}


@pytest.fixture
def app():
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(commerce_webhook.router)
    return app


@pytest.fixture
async def client(app):
    commerce_webhook.recent_booking_events.clear()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac


async def _post(client, payload, signature: str | None = None):
    body = json.dumps(payload).encode()
    headers = {
        "content-type": "application/json",
        COMMERCE_SIGNATURE_HEADER: signature or sign_commerce_payload(body, SIGNING_KEY),
    }
    return await client.post("/webhooks/commerce/booking", content=body, headers=headers)


class TestCommerceWebhook:
    @pytest.mark.asyncio
    async def test_booking_created_recorded(self, client):
        resp = await _post(client, BOOKING_EVENT)
        assert resp.status_code == 204
        summary = commerce_webhook.recent_booking_events[-1]
        assert summary["booking_id"] == "BK1"
        assert summary["status"] == "ACCEPTED"
        assert summary["customer_id"] == "CUST1"

    @pytest.mark.asyncio
    async def test_booking_updated_recorded(self, client):
        event = dict(BOOKING_EVENT, type="booking.updated")
        resp = await _post(client, event)
        assert resp.status_code == 204
        assert commerce_webhook.recent_booking_events[-1]["type"] == "booking.updated"

    @pytest.mark.asyncio
    async def test_other_types_acknowledged(self, client):
        resp = await _post(client, {"type": "customer.created", "data": {}})
        assert resp.status_code == 204
        assert len(commerce_webhook.recent_booking_events) == 0

    @pytest.mark.asyncio
    async def test_bad_signature(self, client):
        resp = await _post(client, BOOKING_EVENT, signature="bm90LXRoZS1zaWduYXR1cmU=")
        assert resp.status_code == 401
        assert len(commerce_webhook.recent_booking_events) == 0

    @pytest.mark.asyncio
    async def test_non_object_body(self, client):
        resp = await _post(client, ["booking.created"])
        assert resp.status_code == 400


class TestSummary:
    def test_summary_without_booking_object(self):
        summary = commerce_webhook.summarize_booking_event({"type": "booking.created", "data": {"id": "BK9"}})
        assert summary["booking_id"] == "BK9"
        assert summary["status"] is None
