"""Tests for customer memory: derivation, idempotent saves and the read path."""

import json
import uuid

import pytest
from sqlalchemy import func, select

from voice_gateway.domain.models import CallHistory, CustomerProfile, OpenIssue
from voice_gateway.domain.tenant import TenantContext
from voice_gateway.services.customer_memory import (
    CustomerMemoryService,
    build_dynamic_variables,
    derive_context_entries,
    derive_issues,
    normalize_call_analysis,
)

TENANT_ID = str(uuid.uuid4())
TENANT = TenantContext(tenant_id=TENANT_ID, agent_id="agent_1", access_token="EAAAtoken", source="database")

ANALYSIS = {
    "preferred_stylist": "Alex",
    "service_interest": "Haircut",
    "booking_attempted": True,
    "booking_completed": False,
    "unanswered_questions": ["Do you sell gift cards?", "Do you sell gift cards?"],
    "callback_requested": True,
    "callback_urgent": True,
    "call_summary": "Caller asked about a haircut with Alex.",
    "user_sentiment": "Positive",
}


def _call(call_id: str = "call-1", **overrides) -> dict:
    call = {
        "call_id": call_id,
        "from_number": "+12677210098",
        "start_timestamp": 1772820000000,
        "end_timestamp": 1772820300000,
        "call_status": "success",
        "retell_llm_dynamic_variables": {"customer_first_name": "Nick", "customer_id": "CUST1"},
    }
    call.update(overrides)
    return call


@pytest.fixture
def memory(session_factory):
    return CustomerMemoryService(session_factory)


class TestAnalysisShapes:
    def test_list_of_name_value_items(self):
        raw = [{"name": "service_interest", "value": "Beard Trim"}, {"name": "spam_detected", "result": False}]
        assert normalize_call_analysis(raw) == {"service_interest": "Beard Trim", "spam_detected": False}

    def test_json_string(self):
        assert normalize_call_analysis('{"call_summary": "hi"}') == {"call_summary": "hi"}

    def test_custom_fields_lifted_without_override(self):
        raw = {"call_summary": "top", "custom_analysis_data": {"call_summary": "nested", "referral_source": "Yelp"}}
        analysis = normalize_call_analysis(raw)
        assert analysis["call_summary"] == "top"
        assert analysis["referral_source"] == "Yelp"

    @pytest.mark.parametrize("raw", [None, "not json", 42])
    def test_unusable_input(self, raw):
        assert normalize_call_analysis(raw) == {}


class TestDerivation:
    def test_context_entries(self):
        entries = {e.key: e for e in derive_context_entries(ANALYSIS)}
        assert set(entries) == {"favorite_staff", "service_interest"}
        assert json.loads(entries["favorite_staff"].value) == {"service": "Haircut", "staff": "Alex"}
        assert entries["favorite_staff"].value_type == "json"
        assert entries["service_interest"].confidence == 0.85

    def test_stylist_without_service_is_general(self):
        entry = derive_context_entries({"preferred_stylist": "Sam"})[0]
        assert json.loads(entry.value)["service"] == "general"

    def test_issues_deduplicated(self):
        issues = derive_issues(ANALYSIS)
        assert [(i.type, i.priority) for i in issues] == [
            ("booking_incomplete", "high"),
            ("question_unanswered", "normal"),
            ("callback_requested", "urgent"),
        ]

    def test_unresolved_issue_fallback(self):
        issues = derive_issues({"unresolved_issue": "Parking"})
        assert issues[0].description == "Parking"

    def test_completed_booking_is_not_an_issue(self):
        assert derive_issues({"booking_attempted": True, "booking_completed": True}) == []


class TestSaveCallAnalysis:
    @pytest.mark.asyncio
    async def test_first_save_creates_everything(self, memory, session_factory):
        result = await memory.save_call_analysis(TENANT, _call(), ANALYSIS)

        assert result.profile_created
        assert result.call_history_created
        assert result.context_upserts == 2
        assert result.issues_created == 3

        async with session_factory() as db:
            profile = await db.get(CustomerProfile, result.profile_id)
            history = await db.get(CallHistory, result.call_history_id)
        assert profile.phone_number == "2677210098"
        assert profile.first_name == "Nick"
        assert profile.commerce_customer_id == "CUST1"
        assert profile.total_calls == 1
        assert history.call_duration_seconds == 300
        assert history.call_successful is True
        assert history.call_summary == "Caller asked about a haircut with Alex."

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, memory, session_factory):
        first = await memory.save_call_analysis(TENANT, _call(), ANALYSIS)
        replay = await memory.save_call_analysis(TENANT, _call(), ANALYSIS)

        assert replay.call_history_id == first.call_history_id
        assert not replay.call_history_created
        assert replay.issues_created == 0
        assert replay.issues_updated == 3

        async with session_factory() as db:
            profile = await db.get(CustomerProfile, first.profile_id)
            calls = (await db.execute(select(func.count()).select_from(CallHistory))).scalar()
            issues = (await db.execute(select(func.count()).select_from(OpenIssue))).scalar()
        assert profile.total_calls == 1
        assert calls == 1
        assert issues == 3

    @pytest.mark.asyncio
    async def test_second_call_increments(self, memory, session_factory):
        first = await memory.save_call_analysis(TENANT, _call("call-1"), {})
        await memory.save_call_analysis(
            TENANT, _call("call-2", start_timestamp=1772906400000, end_timestamp=None), {"booking_completed": True},
        )
        async with session_factory() as db:
            profile = await db.get(CustomerProfile, first.profile_id)
        assert profile.total_calls == 2
        assert profile.total_bookings == 1

    @pytest.mark.asyncio
    async def test_language_preference(self, memory, session_factory):
        result = await memory.save_call_analysis(TENANT, _call(), {"language_preference": "Spanish"})
        async with session_factory() as db:
            profile = await db.get(CustomerProfile, result.profile_id)
        assert profile.preferred_language == "es"
        assert profile.language_confidence == 0.9

    @pytest.mark.asyncio
    async def test_non_uuid_tenant_skipped(self, memory):
        tenant = TenantContext(tenant_id="opaque", access_token="EAAAtoken")
        assert await memory.save_call_analysis(tenant, _call(), ANALYSIS) is None

    @pytest.mark.asyncio
    async def test_missing_phone_skipped(self, memory):
        assert await memory.save_call_analysis(TENANT, _call(from_number=None), ANALYSIS) is None

    @pytest.mark.asyncio
    async def test_analysis_read_from_call(self, memory):
        call = _call(call_analysis={"custom_analysis_data": {"service_interest": "Shave"}})
        result = await memory.save_call_analysis(TENANT, call)
        assert result.context_upserts == 1


class TestReadContext:
    @pytest.mark.asyncio
    async def test_returning_caller(self, memory):
        await memory.save_call_analysis(TENANT, _call(), ANALYSIS)
        context = await memory.get_customer_context(TENANT_ID, "(267) 721-0098")

        assert context.profile.total_calls == 1
        assert context.open_issues[0]["priority"] == "urgent"
        assert context.last_call["call_summary"] == "Caller asked about a haircut with Alex."

        variables = context.dynamic_variables
        assert variables["is_returning_customer"] == "true"
        assert variables["favorite_staff"] == "Alex"
        assert variables["favorite_staff_json"] == '{"Haircut":"Alex"}'
        assert variables["service_interest"] == "Haircut"
        assert variables["has_open_issues"] == "true"
        assert variables["last_call_sentiment"] == "Positive"
        assert all(isinstance(v, str) for v in variables.values())

    @pytest.mark.asyncio
    async def test_unknown_caller(self, memory):
        context = await memory.get_customer_context(TENANT_ID, "+12155550100")
        assert context.profile is None
        assert context.dynamic_variables == {}

    @pytest.mark.asyncio
    async def test_other_tenant_isolated(self, memory):
        await memory.save_call_analysis(TENANT, _call(), ANALYSIS)
        context = await memory.get_customer_context(str(uuid.uuid4()), "+12677210098")
        assert context.profile is None

    @pytest.mark.asyncio
    async def test_unusable_inputs(self, memory):
        assert await memory.get_customer_context(None, "+12677210098") is None
        assert await memory.get_customer_context(TENANT_ID, "") is None


class TestMemoryVariables:
    def test_hidden_context_keys_not_exposed(self):
        profile = CustomerProfile(total_calls=0, preferred_language="en")
        entries = [
            {"context_key": "referral_source", "context_value": "Yelp", "value_type": "string"},
            {"context_key": "preferred_time", "context_value": "mornings", "value_type": "string"},
        ]
        variables = build_dynamic_variables(profile, [], None, entries)
        assert variables["is_returning_customer"] == "false"
        assert variables["preferred_time"] == "mornings"
        assert "referral_source" not in variables
        assert variables["has_open_issues"] == "false"

    def test_no_profile_no_variables(self):
        assert build_dynamic_variables(None, [], None, []) == {}
