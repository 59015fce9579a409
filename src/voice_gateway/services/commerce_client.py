"""Async client for the commerce (Square) REST API.

Endpoints used:
- POST /v2/customers/search                 find customers by phone
- GET  /v2/customers/{id}, PUT /v2/customers/{id}
- GET  /v2/bookings                         list a customer's bookings
- GET  /v2/bookings/{id}, POST /v2/bookings, POST /v2/bookings/{id}/cancel
- POST /v2/bookings/availability/search
- GET  /v2/catalog/list?types=ITEM          services and variations
- POST /v2/team-members/search              staff roster

Reads are retried with jittered exponential backoff; writes are sent once.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from typing import Any

import httpx

from voice_gateway.app.config import Settings, get_settings
from voice_gateway.domain.errors import UpstreamError
from voice_gateway.domain.tenant import TenantContext

logger = logging.getLogger(__name__)

BASE_URLS = {
    "production": "https://connect.squareup.com",
    "sandbox": "https://connect.squareupsandbox.com",
}

RETRYABLE_STATUS = {429, 500, 502, 503, 504}
BACKOFF_BASE_SECONDS = 0.25
BACKOFF_JITTER_SECONDS = 0.25


class CommerceClient:
    """Thin, tenant-scoped wrapper around the commerce REST API."""

    def __init__(
        self,
        access_token: str,
        environment: str = "production",
        location_id: str | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.access_token = access_token
        self.location_id = location_id
        self.base_url = BASE_URLS.get((environment or "production").lower(), BASE_URLS["production"])
        self._transport = transport

    @classmethod
    def for_tenant(cls, tenant: TenantContext, **kwargs) -> CommerceClient:
        return cls(
            access_token=tenant.access_token or "",
            environment=tenant.environment,
            location_id=tenant.effective_location_id,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Square-Version": self.settings.commerce_api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        idempotent: bool = False,
    ) -> dict:
        attempts = max(1, self.settings.commerce_max_attempts) if idempotent else 1
        url = f"{self.base_url}{path}"
        last_error: str = "no attempt made"

        for attempt in range(attempts):
            try:
                async with httpx.AsyncClient(
                    timeout=self.settings.commerce_timeout_seconds,
                    transport=self._transport,
                ) as client:
                    resp = await client.request(
                        method,
                        url,
                        params={k: v for k, v in (params or {}).items() if v is not None},
                        json=json,
                        headers=self._headers(),
                    )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(
                    "Commerce %s %s failed (attempt %d/%d): %s",
                    method, path, attempt + 1, attempts, last_error,
                )
                if attempt + 1 < attempts:
                    await asyncio.sleep(_backoff(attempt))
                    continue
                raise UpstreamError(f"Commerce API unreachable: {method} {path}") from e

            if 200 <= resp.status_code < 300:
                if not resp.content:
                    return {}
                return resp.json()

            last_error = f"http_{resp.status_code}"
            if resp.status_code in RETRYABLE_STATUS and attempt + 1 < attempts:
                logger.warning(
                    "Commerce %s %s returned %d, retrying (attempt %d/%d)",
                    method, path, resp.status_code, attempt + 1, attempts,
                )
                await asyncio.sleep(_backoff(attempt))
                continue

            raise UpstreamError(
                f"Commerce API error {resp.status_code} for {method} {path}",
                upstream_status=resp.status_code,
                details=_error_details(resp),
            )

        raise UpstreamError(f"Commerce API failed after {attempts} attempts: {last_error}")

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def search_customers_by_phone(self, phone: str) -> list[dict]:
        data = await self._request(
            "POST",
            "/v2/customers/search",
            json={"query": {"filter": {"phone_number": {"exact": phone}}}, "limit": 10},
            idempotent=True,
        )
        return data.get("customers") or []

    async def retrieve_customer(self, customer_id: str) -> dict | None:
        data = await self._request("GET", f"/v2/customers/{customer_id}", idempotent=True)
        return data.get("customer")

    async def update_customer(self, customer_id: str, fields: dict[str, Any]) -> dict:
        data = await self._request("PUT", f"/v2/customers/{customer_id}", json=fields)
        return data.get("customer") or {}

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    async def list_bookings(
        self,
        customer_id: str,
        start_at_min: str | None = None,
        start_at_max: str | None = None,
        limit: int = 10,
    ) -> list[dict]:
        data = await self._request(
            "GET",
            "/v2/bookings",
            params={
                "customer_id": customer_id,
                "location_id": self.location_id,
                "start_at_min": start_at_min,
                "start_at_max": start_at_max,
                "limit": limit,
            },
            idempotent=True,
        )
        return data.get("bookings") or []

    async def get_booking(self, booking_id: str) -> dict | None:
        data = await self._request("GET", f"/v2/bookings/{booking_id}", idempotent=True)
        return data.get("booking")

    async def create_booking(self, booking: dict, idempotency_key: str | None = None) -> dict:
        data = await self._request(
            "POST",
            "/v2/bookings",
            json={"booking": booking, "idempotency_key": idempotency_key or str(uuid.uuid4())},
        )
        return data.get("booking") or {}

    async def cancel_booking(self, booking_id: str, version: int | None = None) -> dict:
        body: dict[str, Any] = {"idempotency_key": str(uuid.uuid4())}
        if version is not None:
            body["booking_version"] = version
        data = await self._request("POST", f"/v2/bookings/{booking_id}/cancel", json=body)
        return data.get("booking") or {}

    async def search_availability(
        self,
        start_at: str,
        end_at: str,
        segment_filters: list[dict],
        location_id: str | None = None,
    ) -> list[dict]:
        data = await self._request(
            "POST",
            "/v2/bookings/availability/search",
            json={
                "query": {
                    "filter": {
                        "start_at_range": {"start_at": start_at, "end_at": end_at},
                        "location_id": location_id or self.location_id,
                        "segment_filters": segment_filters,
                    }
                }
            },
            idempotent=True,
        )
        return data.get("availabilities") or []

    # ------------------------------------------------------------------
    # Catalog / team
    # ------------------------------------------------------------------

    async def list_service_items(self) -> list[dict]:
        """All ITEM catalog objects (services) across pages."""
        items: list[dict] = []
        cursor = None
        while True:
            data = await self._request(
                "GET",
                "/v2/catalog/list",
                params={"types": "ITEM", "cursor": cursor},
                idempotent=True,
            )
            items.extend(data.get("objects") or [])
            cursor = data.get("cursor")
            if not cursor:
                return items

    async def search_team_members(self) -> list[dict]:
        query: dict[str, Any] = {"filter": {"status": "ACTIVE"}}
        if self.location_id:
            query["filter"]["location_ids"] = [self.location_id]
        data = await self._request(
            "POST",
            "/v2/team-members/search",
            json={"query": query, "limit": 100},
            idempotent=True,
        )
        return data.get("team_members") or []


def _backoff(attempt: int) -> float:
    return BACKOFF_BASE_SECONDS * (2 ** attempt) + random.uniform(0, BACKOFF_JITTER_SECONDS)


def _error_details(resp: httpx.Response) -> Any:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:300]
    errors = body.get("errors") if isinstance(body, dict) else None
    if isinstance(errors, list):
        return [e.get("detail") or e.get("code") for e in errors if isinstance(e, dict)]
    return None
