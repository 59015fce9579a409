"""Tests for the call_analyzed pipeline and the staff report email."""

import json
import uuid

import httpx
import pytest

from voice_gateway.app.config import Settings
from voice_gateway.domain.tenant import TenantContext
from voice_gateway.services import post_call_email
from voice_gateway.services.customer_memory import CustomerMemoryService
from voice_gateway.services.post_call import PostCallPipeline, PostCallResult
from voice_gateway.services.post_call_email import (
    EmailResult,
    build_email_html,
    build_subject,
    customer_spoke,
    format_cost,
    format_duration,
    resolve_recipient,
    send_post_call_email,
)
from voice_gateway.services.session_store import SessionStore

TENANT = TenantContext(
    tenant_id=str(uuid.uuid4()),
    agent_id="agent_1",
    business_name="Elite Barbers",
    access_token="EAAAtoken",
    staff_email="owner@elitebarbers.com",
    source="database",
)

TRANSCRIPT = [
    {"role": "agent", "content": "Thank you for calling Elite Barbers, who am I speaking with today?"},
    {"role": "user", "content": "Hi, this is Nick."},
    {"role": "tool_call_invocation", "name": "lookup_customer", "arguments": '{"phone": "2677210098"}'},
]


def _call(**overrides) -> dict:
    call = {
        "call_id": "call-1",
        "agent_id": "agent_1",
        "from_number": "+12677210098",
        "start_timestamp": 1772820000000,
        "end_timestamp": 1772820090000,
        "duration_ms": 90000,
        "call_status": "ended",
        "transcript": "Agent: Thank you for calling. User: Hi, this is Nick.",
        "transcript_with_tool_calls": TRANSCRIPT,
        "call_cost": {"combined_cost": 1234, "product_costs": [{"product": "elevenlabs_tts", "cost": 300}]},
        "call_analysis": {
            "call_successful": True,
            "user_sentiment": "Positive",
            "call_summary": "Nick booked a haircut.",
            "custom_analysis_data": {"service_interest": "Haircut"},
        },
        "retell_llm_dynamic_variables": {"customer_first_name": "Nick"},
    }
    call.update(overrides)
    return call


class RecordingSender:
    def __init__(self, result: EmailResult | None = None, error: Exception | None = None):
        self.calls = []
        self.result = result or EmailResult(sent=True)
        self.error = error

    async def __call__(self, call, analysis, tenant=None, correlation_id=None):
        self.calls.append((call, analysis, tenant))
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def sessions():
    return SessionStore()


def _pipeline(session_factory, sessions, fake_commerce, sender=None) -> PostCallPipeline:
    return PostCallPipeline(
        memory=CustomerMemoryService(session_factory),
        sessions=sessions,
        email_sender=sender or RecordingSender(),
        client_factory=lambda tenant: fake_commerce,
        settings=Settings(),
    )


class TestPipeline:
    @pytest.mark.asyncio
    async def test_full_run(self, session_factory, sessions, fake_commerce):
        fake_commerce.customers_by_phone["+12677210098"] = [{"id": "CUST1"}]
        sessions.create("session-1", "agent_1", {"access_token": "EAAAtoken"})
        sender = RecordingSender()

        result = await _pipeline(session_factory, sessions, fake_commerce, sender).run(
            _call(), TENANT, session_call_id="session-1", correlation_id="corr-1",
        )

        assert result.email_sent
        assert result.commerce_customer_id == "CUST1"
        assert result.context_upserts == 1
        assert result.customer_profile_id is not None
        assert sender.calls[0][1]["service_interest"] == "Haircut"
        metadata = sessions.get_metadata("session-1")
        assert metadata["customer_profile_id"] == result.customer_profile_id
        assert "context_persisted_at" in metadata

    @pytest.mark.asyncio
    async def test_email_failure_is_absorbed(self, session_factory, sessions, fake_commerce):
        sender = RecordingSender(error=RuntimeError("smtp down"))
        result = await _pipeline(session_factory, sessions, fake_commerce, sender).run(_call(), TENANT)
        assert result.email_sent is False
        assert result.customer_profile_id is not None

    @pytest.mark.asyncio
    async def test_attribution_failure_is_absorbed(self, session_factory, sessions, fake_commerce):
        fake_commerce.fail.add("search_customers_by_phone")
        result = await _pipeline(session_factory, sessions, fake_commerce).run(_call(), TENANT)
        assert result.commerce_customer_id is None
        assert result.customer_profile_id is not None

    @pytest.mark.asyncio
    async def test_no_tenant_skips_memory(self, session_factory, sessions, fake_commerce):
        result = await _pipeline(session_factory, sessions, fake_commerce).run(_call(), None)
        assert result.customer_profile_id is None
        assert result.email_sent

    @pytest.mark.asyncio
    async def test_memory_failure_propagates(self, sessions, fake_commerce):
        class BrokenMemory:
            async def save_call_analysis(self, *args, **kwargs):
                raise RuntimeError("database is locked")

        pipeline = PostCallPipeline(
            memory=BrokenMemory(),
            sessions=sessions,
            email_sender=RecordingSender(),
            client_factory=lambda tenant: fake_commerce,
            settings=Settings(),
        )
        with pytest.raises(RuntimeError):
            await pipeline.run(_call(), TENANT)

    @pytest.mark.asyncio
    async def test_summary_hook_posts_and_failures_absorbed(self, session_factory, sessions, fake_commerce):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(500)

        pipeline = PostCallPipeline(
            memory=CustomerMemoryService(session_factory),
            sessions=sessions,
            email_sender=RecordingSender(),
            client_factory=lambda tenant: fake_commerce,
            settings=Settings(call_summary_webhook_url="https://hooks.example.com/summary"),
            http_transport=httpx.MockTransport(handler),
        )
        result = await pipeline.run(_call(), TENANT, correlation_id="corr-1")

        assert seen[0]["call_id"] == "call-1"
        assert seen[0]["call_summary"] == "Nick booked a haircut."
        assert seen[0]["correlation_id"] == "corr-1"
        assert result.customer_profile_id is not None

    def test_result_dict(self):
        assert PostCallResult(call_id="c", email_sent=True).as_dict()["emailSent"] is True


class TestEmailContent:
    def test_customer_spoke(self):
        assert customer_spoke(_call())
        assert not customer_spoke(_call(transcript_with_tool_calls=[{"role": "user", "content": "  "}]))
        assert not customer_spoke(_call(transcript_with_tool_calls=[]))

    def test_subjects(self):
        ok = build_subject(_call(), {"call_successful": True, "user_sentiment": "Positive"}, "Elite Barbers")
        assert ok == "✅ Elite Barbers - Call Report - Nick"

        failed = build_subject(_call(), {"call_successful": False}, "Elite Barbers")
        assert failed == "🚨 Elite Barbers - Nick - Failed Call"

        negative = build_subject(_call(), {"call_successful": True, "user_sentiment": "Negative"}, "Elite Barbers")
        assert negative.endswith("Negative Sentiment")

        spam_call = _call(collected_dynamic_variables={"current_agent_state": "identify_spam_call"})
        assert build_subject(spam_call, {}, "Elite Barbers") == "🗑️ Elite Barbers - Spam Call Detected"

    def test_cost_and_duration(self):
        assert format_cost(1234, 10.0) == ("$12.34", True)
        assert format_cost(None, 10.0) == ("$0.00", False)
        assert format_duration(90000) == "1m 30s"
        assert format_duration(None) == "Unknown"

    def test_html_escapes_content(self):
        call = _call(transcript_with_tool_calls=[{"role": "user", "content": "<script>alert(1)</script>"}])
        body = build_email_html(call, {"call_summary": "ok"}, "Elite Barbers", 10.0)
        assert "<script>" not in body
        assert "&lt;script&gt;" in body
        assert "Elite Barbers Call Report" in body

    def test_recipient_prefers_tenant_staff(self):
        assert resolve_recipient(TENANT) == "owner@elitebarbers.com"


class TestSendEmail:
    @pytest.mark.asyncio
    async def test_skipped_when_customer_silent(self):
        result = await send_post_call_email(_call(transcript_with_tool_calls=[]), {}, tenant=TENANT)
        assert result.skipped and result.reason == "no_customer_speech"

    @pytest.mark.asyncio
    async def test_skipped_when_not_configured(self):
        result = await send_post_call_email(_call(), {}, tenant=TENANT)
        assert result.skipped and result.reason == "email_not_configured"

    @pytest.mark.asyncio
    async def test_sends_through_sendgrid(self, monkeypatch):
        sent = []
        monkeypatch.setattr(
            post_call_email, "get_settings",
            lambda: Settings(sendgrid_api_key="SG.test", email_from="calls@elitebarbers.com"),
        )
        monkeypatch.setattr(post_call_email, "_send_mail", lambda mail: sent.append(mail) or True)

        analysis = {"call_successful": True, "user_sentiment": "Positive"}
        result = await send_post_call_email(_call(), analysis, tenant=TENANT)

        assert result.sent
        assert result.recipient == "owner@elitebarbers.com"
        assert result.subject == "✅ Elite Barbers - Call Report - Nick"
        assert len(sent) == 1
