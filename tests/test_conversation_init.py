"""Tests for the conversation-initialization aggregator."""

from datetime import datetime, timezone

import pytest

from voice_gateway.domain.tenant import TenantContext
from voice_gateway.services.conversation_init import (
    ConversationInitAggregator,
    build_service_variations,
    build_staff,
    format_booking,
)

NOW = datetime(2026, 3, 6, 19, 30, tzinfo=timezone.utc)
TENANT = TenantContext(
    tenant_id="tenant-1",
    agent_id="agent_1",
    business_name="Elite Barbers",
    access_token="EAAAtoken",
    location_id="LOC1",
    source="agent_config",
)
CUSTOMER = {"id": "CUST1", "given_name": "Nick", "family_name": "Smith", "email_address": "nick@example.com"}

HAIRCUT_ITEM = {
    "id": "ITEM1",
    "item_data": {
        "name": "Haircut",
        "product_type": "APPOINTMENTS_SERVICE",
        "variations": [{
            "id": "SV1",
            "item_variation_data": {
                "name": "Regular",
                "price_money": {"amount": 3500, "currency": "USD"},
                "service_duration": 1800000,
                "team_member_ids": ["TM1"],
            },
        }],
    },
}


def _booking(booking_id: str, start_at: str, status: str = "ACCEPTED") -> dict:
    return {
        "id": booking_id,
        "customer_id": "CUST1",
        "status": status,
        "start_at": start_at,
        "location_id": "LOC1",
        "version": 1,
        "appointment_segments": [
            {"service_variation_id": "SV1", "team_member_id": "TM1", "duration_minutes": 30},
        ],
    }


@pytest.fixture
def aggregator(fake_commerce):
    return ConversationInitAggregator(client_factory=lambda tenant: fake_commerce, clock=lambda: NOW)


class TestCustomerLookup:
    @pytest.mark.asyncio
    async def test_exact_match(self, aggregator, fake_commerce):
        fake_commerce.customers_by_phone["+12677210098"] = [CUSTOMER]
        payload = await aggregator.build(TENANT, "+12677210098")
        assert payload.success and payload.customer_found
        assert fake_commerce.searched_phones == ["+12677210098"]
        assert payload.dynamic_variables["customer_full_name"] == "Nick Smith"
        assert payload.dynamic_variables["customer_phone"] == "267 721 0098"
        assert payload.dynamic_variables["customer_phone_e164"] == "+12677210098"

    @pytest.mark.asyncio
    async def test_fallback_formats_tried_in_order(self, aggregator, fake_commerce):
        fake_commerce.customers_by_phone["(267) 721-0098"] = [CUSTOMER]
        payload = await aggregator.build(TENANT, "2677210098")
        assert payload.customer_found
        assert fake_commerce.searched_phones == [
            "2677210098", "+12677210098", "12677210098", "(267) 721-0098",
        ]

    @pytest.mark.asyncio
    async def test_unknown_caller(self, aggregator, fake_commerce):
        payload = await aggregator.build(TENANT, "+12677210098")
        assert payload.success
        assert not payload.customer_found
        assert payload.dynamic_variables["is_returning_customer"] is False
        assert payload.dynamic_variables["initial_message"].endswith("Who am I speaking with today?")

    @pytest.mark.asyncio
    async def test_record_without_id_is_a_miss(self, aggregator, fake_commerce):
        fake_commerce.customers_by_phone["+12677210098"] = [{"given_name": "Nick"}]
        payload = await aggregator.build(TENANT, "+12677210098")
        assert payload.success
        assert not payload.customer_found
        assert payload.dynamic_variables["customer_id"] == ""
        assert len(fake_commerce.searched_phones) > 1

    @pytest.mark.asyncio
    async def test_primary_failure_is_unsuccessful(self, aggregator, fake_commerce):
        fake_commerce.fail.add("search_customers_by_phone")
        payload = await aggregator.build(TENANT, "+12677210098")
        assert payload.success is False
        assert "customer" in payload.errors


class TestFanout:
    @pytest.mark.asyncio
    async def test_branch_failure_is_isolated(self, aggregator, fake_commerce):
        fake_commerce.customers_by_phone["+12677210098"] = [CUSTOMER]
        fake_commerce.team_members = [{"id": "TM1", "given_name": "Alex", "family_name": "Kim", "status": "ACTIVE"}]
        fake_commerce.fail.add("list_service_items")

        payload = await aggregator.build(TENANT, "+12677210098")

        assert payload.success
        assert "services" in payload.errors
        assert payload.dynamic_variables["service_variations_json"] == {}
        assert payload.dynamic_variables["available_staff"] == "Alex"

    @pytest.mark.asyncio
    async def test_empty_staff_roster(self, aggregator, fake_commerce):
        payload = await aggregator.build(TENANT, "+12677210098")
        assert payload.dynamic_variables["staff_with_ids_json"] == []
        assert payload.dynamic_variables["available_staff"] == ""

    @pytest.mark.asyncio
    async def test_upcoming_sorted_and_filtered(self, aggregator, fake_commerce):
        fake_commerce.customers_by_phone["+12677210098"] = [CUSTOMER]
        fake_commerce.bookings = [
            _booking("BK_LATER", "2026-03-20T15:00:00Z"),
            _booking("BK_CANCELLED", "2026-03-08T15:00:00Z", status="CANCELLED_BY_CUSTOMER"),
            _booking("BK_SOON", "2026-03-10T15:00:00Z"),
        ]
        payload = await aggregator.build(TENANT, "+12677210098")
        assert [b["booking_id"] for b in payload.upcoming_bookings] == ["BK_SOON", "BK_LATER"]

    @pytest.mark.asyncio
    async def test_bookings_skipped_without_customer(self, aggregator, fake_commerce):
        fake_commerce.fail.add("list_bookings")
        payload = await aggregator.build(TENANT, "+12677210098")
        assert payload.errors == {}
        assert payload.upcoming_bookings == []


class TestFormatting:
    def test_format_booking_in_tenant_timezone(self):
        formatted = format_booking(_booking("BK1", "2026-03-10T15:00:00Z"), "America/New_York", NOW)
        assert formatted["date"] == "Tuesday, March 10, 2026"
        assert formatted["time"] == "11:00 AM"
        assert formatted["end_at"] == "2026-03-10T15:30:00Z"
        assert formatted["days_away"] == 4
        assert formatted["relative_time"] == "in 4 days"
        assert formatted["service_variation_id"] == "SV1"

    def test_format_booking_without_start(self):
        formatted = format_booking({"id": "BK1", "status": "ACCEPTED"}, "America/New_York", NOW)
        assert formatted["date"] == ""
        assert formatted["days_away"] is None

    def test_large_version_stringified(self):
        booking = _booking("BK1", "2026-03-10T15:00:00Z")
        booking["version"] = 2**60
        assert format_booking(booking, "America/New_York", NOW)["version"] == str(2**60)

    def test_service_variations(self):
        variations = build_service_variations([HAIRCUT_ITEM])
        assert variations == {
            "SV1": {
                "serviceName": "Haircut",
                "variationName": "Regular",
                "priceFormatted": "$35.00",
                "durationMinutes": 30,
                "teamMemberIds": ["TM1"],
            }
        }

    def test_non_service_items_skipped(self):
        item = {"item_data": {"name": "Pomade", "product_type": "REGULAR", "variations": [
            {"id": "V1", "item_variation_data": {"name": "Jar"}},
        ]}}
        assert build_service_variations([item]) == {}

    def test_inactive_staff_skipped(self):
        staff = build_staff([
            {"id": "TM1", "given_name": "Alex", "family_name": "Kim"},
            {"id": "TM2", "given_name": "Sam", "status": "INACTIVE"},
            {"id": "TM3"},
        ])
        assert staff == [
            {"id": "TM1", "name": "Alex Kim", "displayName": "Alex"},
            {"id": "TM3", "name": "Staff Member", "displayName": "Staff Member"},
        ]
