"""Voice platform webhook endpoint.

Handles four event types:
- call_inbound: resolve the tenant, mint a session, return dynamic variables
- call_started: confirm the session and warm the caller lookup
- call_analyzed: run the post-call pipeline (email, memory)
- call_ended: destroy the session
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from voice_gateway.app.config import get_settings
from voice_gateway.app.request_context import get_correlation_id
from voice_gateway.app.tool_auth import voice_api_key
from voice_gateway.domain.enums import VoiceEvent
from voice_gateway.domain.errors import AgentConfigMissingError, AppError, InternalError, ValidationError
from voice_gateway.domain.tenant import TenantContext
from voice_gateway.infra import database
from voice_gateway.services.conversation_init import ConversationInitAggregator, InitPayload
from voice_gateway.services.customer_memory import CustomerContext, CustomerMemoryService
from voice_gateway.services.inbound_response import build_inbound_response
from voice_gateway.services.phone import mask_phone
from voice_gateway.services.post_call import PostCallPipeline
from voice_gateway.services.session_store import session_store
from voice_gateway.services.signature import VOICE_SIGNATURE_HEADER, verify_voice_signature
from voice_gateway.services.tenant_resolver import build_tenant_resolver

logger = logging.getLogger(__name__)

router = APIRouter(tags=["voice"])


def _aggregator() -> ConversationInitAggregator:
    return ConversationInitAggregator()


def _memory_service() -> CustomerMemoryService:
    return CustomerMemoryService()


def _pipeline() -> PostCallPipeline:
    return PostCallPipeline(memory=_memory_service())


@router.post("/webhooks/voice")
async def voice_webhook(request: Request):
    """Single voice-platform webhook endpoint dispatching by event type."""
    # Signature runs against the raw bytes, before parsing
    body_bytes = await request.body()
    verify_voice_signature(body_bytes, request.headers.get(VOICE_SIGNATURE_HEADER), voice_api_key())

    payload = _parse_body(body_bytes)
    event = payload.get("event")
    if not event:
        raise ValidationError(
            "Missing required field: event",
            details={"received_fields": sorted(payload.keys())},
        )

    route = _EVENT_TABLE.get(event)
    if route is None:
        raise ValidationError(f"Unsupported event type: {event}")

    subtree, expected, handler = route
    if not isinstance(payload.get(subtree), dict):
        raise ValidationError(f"Missing required field: {subtree}", details={"expected": expected})

    logger.info("Voice webhook: event=%s", event)

    try:
        return await handler(payload, request)
    except AppError:
        raise
    except Exception:
        logger.exception("Voice webhook handler failed: event=%s", event)
        raise InternalError("Failed to process voice webhook")


def _json_type(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return type(value).__name__


def _parse_body(body_bytes: bytes) -> dict:
    if not body_bytes or not body_bytes.strip():
        raise ValidationError("Request body is required")
    try:
        payload = json.loads(body_bytes)
    except ValueError:
        raise ValidationError("Invalid request body format", details="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError(
            "Invalid request body format",
            details=f"Expected JSON object, got {_json_type(payload)}",
        )
    return payload


def _session_call_id(call: dict) -> str | None:
    """The gateway-minted call id travels back in the dynamic variables."""
    dyn = call.get("retell_llm_dynamic_variables") or {}
    metadata = call.get("metadata") if isinstance(call.get("metadata"), dict) else {}
    return dyn.get("call_id") or metadata.get("call_id") or call.get("call_id")


# ======================================================================
# call_inbound
# ======================================================================


async def _handle_call_inbound(payload: dict, request: Request) -> JSONResponse:
    """Resolve the tenant, create the call session and return the seed payload.

    1. Resolve tenant by agent id (no session exists yet)
    2. Mint a call id and snapshot credentials into the session store
    3. Run the caller lookup and the memory read under the inbound deadline
    4. Build the all-string dynamic variables
    """
    settings = get_settings()
    inbound = payload["call_inbound"]
    agent_id = inbound.get("agent_id")
    from_number = inbound.get("from_number")
    to_number = inbound.get("to_number")
    correlation_id = get_correlation_id()

    async with database.async_session() as db:
        tenant = await build_tenant_resolver(db).resolve(agent_id=agent_id)
    if tenant is None:
        raise AgentConfigMissingError(agent_id, VoiceEvent.CALL_INBOUND.value)

    call_id = str(uuid.uuid4())
    session_store.create(
        call_id,
        tenant.agent_id or agent_id,
        tenant.session_credentials(),
        ttl=settings.session_ttl_seconds,
        metadata={
            "from_number": from_number,
            "to_number": to_number,
            "agent_id": agent_id,
            "correlation_id": correlation_id,
            "tenant_id": tenant.tenant_id,
        },
    )
    logger.info(
        "Inbound call from %s: call_id=%s tenant=%s", mask_phone(from_number), call_id, tenant.tenant_id,
    )

    init_payload, memory = await _load_caller_context(
        tenant, from_number, correlation_id, settings.inbound_deadline_seconds,
    )

    body = build_inbound_response(
        business_name=tenant.business_name or settings.default_business_name,
        from_number=from_number,
        call_id=call_id,
        correlation_id=correlation_id,
        init_payload=init_payload,
        memory=memory,
        tz_name=tenant.timezone,
    )
    return JSONResponse(body)


async def _load_caller_context(
    tenant: TenantContext,
    phone: str | None,
    correlation_id: str | None,
    deadline: float,
) -> tuple[InitPayload | None, CustomerContext | None]:
    """Aggregator and memory read in parallel; each falls back to None on failure or deadline."""

    async def read_memory() -> CustomerContext | None:
        if not tenant.has_uuid_tenant_id:
            return None
        return await _memory_service().get_customer_context(tenant.tenant_id, phone)

    init_payload, memory = await asyncio.gather(
        asyncio.wait_for(_aggregator().build(tenant, phone, correlation_id), timeout=deadline),
        asyncio.wait_for(read_memory(), timeout=deadline),
        return_exceptions=True,
    )
    if isinstance(init_payload, BaseException):
        logger.warning(
            "Caller lookup unavailable for %s, using defaults: %r", mask_phone(phone), init_payload,
        )
        init_payload = None
    if isinstance(memory, BaseException):
        logger.warning("Customer memory unavailable for %s: %r", mask_phone(phone), memory)
        memory = None
    return init_payload, memory


# ======================================================================
# call_started
# ======================================================================


async def _handle_call_started(payload: dict, request: Request) -> Response:
    settings = get_settings()
    call = payload["call"]
    agent_id = call.get("agent_id")
    session_call_id = _session_call_id(call)
    hint = call.get("metadata") if isinstance(call.get("metadata"), dict) else None

    async with database.async_session() as db:
        tenant = await build_tenant_resolver(db).resolve(
            agent_id=agent_id,
            call_id=session_call_id,
            hint=hint,
        )
    if tenant is None:
        raise AgentConfigMissingError(agent_id, VoiceEvent.CALL_STARTED.value)

    has_session = False
    if session_call_id:
        updated = session_store.update(session_call_id, {
            "platform_call_id": call.get("call_id"),
            "call_started_at": datetime.now(timezone.utc).isoformat(),
            "tenant_id": tenant.tenant_id,
        })
        has_session = updated is not None
    if not has_session:
        logger.info("call_started without live session: call_id=%s", session_call_id)

    phone = call.get("from_number")
    if phone:
        try:
            init_payload = await asyncio.wait_for(
                _aggregator().build(tenant, phone, get_correlation_id()),
                timeout=settings.webhook_deadline_seconds,
            )
        except Exception as e:
            logger.warning("Caller warm-up failed for %s: %r", mask_phone(phone), e)
        else:
            if has_session and init_payload.success:
                session_store.update(session_call_id, {
                    "customer_id": init_payload.dynamic_variables.get("customer_id") or None,
                    "is_returning_customer": init_payload.customer_found,
                })

    return Response(status_code=204)


# ======================================================================
# call_analyzed
# ======================================================================


async def _handle_call_analyzed(payload: dict, request: Request) -> Response:
    """Post-call email and memory. A memory failure surfaces as 500 so the platform redelivers."""
    call = payload["call"]
    session_call_id = _session_call_id(call)

    async with database.async_session() as db:
        tenant = await build_tenant_resolver(db).resolve(
            agent_id=call.get("agent_id"),
            call_id=session_call_id,
        )

    result = await _pipeline().run(
        call,
        tenant,
        session_call_id=session_call_id,
        correlation_id=get_correlation_id(),
    )
    logger.info("call_analyzed processed: %s", result.as_dict())
    return Response(status_code=204)


# ======================================================================
# call_ended
# ======================================================================


async def _handle_call_ended(payload: dict, request: Request) -> Response:
    session_call_id = _session_call_id(payload["call"])
    existed = session_store.destroy(session_call_id)
    logger.info("call_ended: call_id=%s session_existed=%s", session_call_id, existed)
    return Response(status_code=204)


# event -> (required subtree, expected contents, handler)
_EVENT_TABLE = {
    VoiceEvent.CALL_INBOUND.value: (
        "call_inbound", "call_inbound object with agent_id, from_number, to_number", _handle_call_inbound,
    ),
    VoiceEvent.CALL_STARTED.value: (
        "call", "call object with call_id, from_number, agent_id, direction", _handle_call_started,
    ),
    VoiceEvent.CALL_ANALYZED.value: (
        "call", "call object with call_id, transcript, call_analysis", _handle_call_analyzed,
    ),
    VoiceEvent.CALL_ENDED.value: (
        "call", "call object with call_id", _handle_call_ended,
    ),
}
