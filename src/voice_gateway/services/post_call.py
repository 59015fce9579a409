"""Post-call pipeline for ``call_analyzed`` events.

Order: normalize analysis, staff email, side effects, memory save, session
metadata update. Only the memory save may fail the pipeline; everything
before it is logged and absorbed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping

import httpx

from voice_gateway.app.config import Settings, get_settings
from voice_gateway.domain.tenant import TenantContext
from voice_gateway.services.commerce_client import CommerceClient
from voice_gateway.services.customer_memory import CustomerMemoryService, normalize_call_analysis
from voice_gateway.services.phone import mask_phone
from voice_gateway.services.post_call_email import EmailResult, send_post_call_email
from voice_gateway.services.session_store import SessionStore, session_store

logger = logging.getLogger(__name__)

SUMMARY_HOOK_TIMEOUT_SECONDS = 5.0

EmailSender = Callable[..., Awaitable[EmailResult]]


@dataclass
class PostCallResult:
    call_id: str | None
    context_upserts: int = 0
    issues_created: int = 0
    email_sent: bool = False
    customer_profile_id: str | None = None
    commerce_customer_id: str | None = None
    processing_ms: int = 0

    def as_dict(self) -> dict:
        return {
            "callId": self.call_id,
            "contextUpserts": self.context_upserts,
            "issuesCreated": self.issues_created,
            "emailSent": self.email_sent,
            "customerProfileId": self.customer_profile_id,
            "processingMs": self.processing_ms,
        }


class PostCallPipeline:
    def __init__(
        self,
        memory: CustomerMemoryService | None = None,
        sessions: SessionStore = session_store,
        email_sender: EmailSender = send_post_call_email,
        client_factory: Callable[[TenantContext], CommerceClient] = CommerceClient.for_tenant,
        settings: Settings | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.memory = memory or CustomerMemoryService()
        self.sessions = sessions
        self.email_sender = email_sender
        self.client_factory = client_factory
        self.settings = settings or get_settings()
        self._http_transport = http_transport

    async def run(
        self,
        call: Mapping[str, Any],
        tenant: TenantContext | None,
        session_call_id: str | None = None,
        correlation_id: str | None = None,
    ) -> PostCallResult:
        started = time.monotonic()
        call_id = call.get("call_id")
        result = PostCallResult(call_id=call_id)
        analysis = normalize_call_analysis(call.get("call_analysis"))

        try:
            email = await self.email_sender(call, analysis, tenant=tenant, correlation_id=correlation_id)
            result.email_sent = email.sent
        except Exception as e:
            logger.error("Post-call email failed for call %s: %s", call_id, e)

        result.commerce_customer_id = await self._lookup_customer(call, tenant)
        await self._post_summary(call, analysis, tenant, correlation_id)

        if tenant is not None:
            saved = await self.memory.save_call_analysis(tenant, call, analysis, correlation_id)
            if saved is not None:
                result.context_upserts = saved.context_upserts
                result.issues_created = saved.issues_created
                result.customer_profile_id = saved.profile_id
                if session_call_id:
                    self.sessions.update(session_call_id, {
                        "customer_profile_id": saved.profile_id,
                        "context_persisted_at": datetime.now(timezone.utc).isoformat(),
                    })
        else:
            logger.warning("No tenant for analyzed call %s, memory not persisted", call_id)

        result.processing_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Post-call pipeline done: call=%s context=%d issues=%d email=%s elapsed=%dms",
            call_id, result.context_upserts, result.issues_created, result.email_sent, result.processing_ms,
        )
        return result

    async def _lookup_customer(self, call: Mapping[str, Any], tenant: TenantContext | None) -> str | None:
        """Commerce customer id of the caller, for attribution only."""
        phone = call.get("from_number")
        if tenant is None or not tenant.usable or not phone:
            return None
        try:
            customers = await self.client_factory(tenant).search_customers_by_phone(phone)
        except Exception as e:
            logger.warning("Attribution lookup failed for %s: %s", mask_phone(phone), e)
            return None
        return customers[0].get("id") if customers else None

    async def _post_summary(
        self,
        call: Mapping[str, Any],
        analysis: Mapping[str, Any],
        tenant: TenantContext | None,
        correlation_id: str | None,
    ) -> None:
        url = self.settings.call_summary_webhook_url
        if not url:
            return
        body = {
            "call_id": call.get("call_id"),
            "tenant_id": tenant.tenant_id if tenant else None,
            "agent_id": call.get("agent_id"),
            "from_number": call.get("from_number"),
            "duration_ms": call.get("duration_ms"),
            "call_successful": analysis.get("call_successful"),
            "user_sentiment": analysis.get("user_sentiment"),
            "call_summary": analysis.get("call_summary"),
            "correlation_id": correlation_id,
        }
        try:
            async with httpx.AsyncClient(
                timeout=SUMMARY_HOOK_TIMEOUT_SECONDS, transport=self._http_transport,
            ) as client:
                resp = await client.post(url, json=body)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Call summary hook failed for call %s: %s", call.get("call_id"), e)
