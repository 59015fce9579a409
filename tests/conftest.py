"""Shared test infrastructure for the voice gateway test suite.

Provides:
- session_factory / db_session: async SQLite in-memory database with all tables
- use_test_db: points ``database.async_session`` at the test database
- make_tenant: factory onboarding a tenant + voice agent + commerce credentials
- FakeCommerceClient / fake_commerce: in-memory stand-in for the commerce API
- signed_headers: voice-platform signature headers for a raw body
"""

import os
import time

# Settings are read once at import time; configure before importing the app
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["VOICE_API_KEY"] = "test-voice-api-key"
os.environ["COMMERCE_WEBHOOK_SIGNING_KEY"] = "test-commerce-key"
os.environ["CREDENTIALS_ENCRYPTION_KEY"] = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["ALLOW_UNSIGNED_TOOL_CALLS"] = "false"
os.environ["SECRET_STORE_NAME"] = ""
os.environ["SENDGRID_API_KEY"] = ""
os.environ["DEFAULT_COMMERCE_ACCESS_TOKEN"] = ""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Import Base first, then models to register all tables
from voice_gateway.infra import database
from voice_gateway.infra.database import Base

import voice_gateway.domain.models  # noqa: F401

from voice_gateway.domain.models import Tenant
from voice_gateway.services.session_store import session_store
from voice_gateway.services.signature import VOICE_SIGNATURE_HEADER, sign_voice_payload
from voice_gateway.services.tenant_service import TenantService

TEST_VOICE_API_KEY = "test-voice-api-key"
TEST_COMMERCE_KEY = "test-commerce-key"
TEST_ACCESS_TOKEN = "EAAAtest-access-token-0123456789"
TEST_BEARER_TOKEN = "agent-bearer-token"


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def session_factory():
    """Session factory over a fresh in-memory database with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def use_test_db(session_factory, monkeypatch):
    """Route every ``database.async_session()`` call to the test database."""
    monkeypatch.setattr(database, "async_session", session_factory)
    return session_factory


@pytest.fixture(autouse=True)
def clear_call_sessions():
    yield
    session_store.shutdown()


# ---------------------------------------------------------------------------
# Tenant factory
# ---------------------------------------------------------------------------

@pytest.fixture
def make_tenant(db_session):
    """Factory that onboards a tenant with one agent and commits.

    Usage:
        tenant = await make_tenant(agent_id="agent_abc")
    """
    async def _factory(
        agent_id: str = "agent_test_123",
        business_name: str = "Elite Barbers",
        access_token: str = TEST_ACCESS_TOKEN,
        location_id: str = "LOC123",
        bearer_token: str | None = TEST_BEARER_TOKEN,
        staff_email: str | None = None,
    ) -> Tenant:
        tenant = await TenantService(db_session).create_tenant_with_agent(
            business_name=business_name,
            agent_id=agent_id,
            access_token=access_token,
            location_id=location_id,
            merchant_id="MERCHANT1",
            bearer_token=bearer_token,
            staff_email=staff_email,
        )
        await db_session.commit()
        return tenant

    return _factory


# ---------------------------------------------------------------------------
# Commerce fake
# ---------------------------------------------------------------------------

class FakeCommerceClient:
    """In-memory commerce API. Set ``fail`` to a method name to make it raise."""

    def __init__(self):
        self.customers_by_phone: dict[str, list[dict]] = {}
        self.bookings: list[dict] = []
        self.items: list[dict] = []
        self.team_members: list[dict] = []
        self.availabilities: list[dict] = []
        self.created: list[dict] = []
        self.cancelled: list[tuple] = []
        self.updated: list[tuple] = []
        self.searched_phones: list[str] = []
        self.fail: set[str] = set()

    def _check(self, name: str) -> None:
        if name in self.fail:
            raise RuntimeError(f"{name} unavailable")

    async def search_customers_by_phone(self, phone):
        self._check("search_customers_by_phone")
        self.searched_phones.append(phone)
        return self.customers_by_phone.get(phone, [])

    async def list_bookings(self, customer_id, start_at_min=None, start_at_max=None, limit=10):
        self._check("list_bookings")
        return [b for b in self.bookings if b.get("customer_id") == customer_id]

    async def list_service_items(self):
        self._check("list_service_items")
        return self.items

    async def search_team_members(self):
        self._check("search_team_members")
        return self.team_members

    async def search_availability(self, start_at, end_at, segment_filters, location_id=None):
        self._check("search_availability")
        return [a for a in self.availabilities if start_at <= a["start_at"] <= end_at]

    async def get_booking(self, booking_id):
        self._check("get_booking")
        return next((b for b in self.bookings if b.get("id") == booking_id), None)

    async def create_booking(self, booking, idempotency_key=None):
        self._check("create_booking")
        created = {"id": f"BK{len(self.created) + 1}", "status": "ACCEPTED", "version": 0, **booking}
        self.created.append(created)
        return created

    async def cancel_booking(self, booking_id, version=None):
        self._check("cancel_booking")
        self.cancelled.append((booking_id, version))
        return {"id": booking_id, "status": "CANCELLED_BY_CUSTOMER", "version": (version or 0) + 1}

    async def update_customer(self, customer_id, fields):
        self._check("update_customer")
        self.updated.append((customer_id, fields))
        return {"id": customer_id, **fields}


@pytest.fixture
def fake_commerce():
    return FakeCommerceClient()


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

@pytest.fixture
def signed_headers():
    """Factory: headers carrying a valid voice signature for *body*."""
    def _factory(body: bytes, extra: dict | None = None) -> dict:
        timestamp_ms = int(time.time() * 1000)
        headers = {
            "content-type": "application/json",
            VOICE_SIGNATURE_HEADER: sign_voice_payload(body, TEST_VOICE_API_KEY, timestamp_ms),
        }
        headers.update(extra or {})
        return headers

    return _factory
