"""Authentication and tenant binding for live tool calls.

A tool call must carry a valid voice-platform signature over the raw body
(unless unsigned calls are explicitly allowed outside production). The
tenant comes from the call session, or from the resolver chain keyed by
agent id when the session is gone.
"""

import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi import Request

from voice_gateway.app.config import Settings, get_settings
from voice_gateway.domain.errors import AgentConfigMissingError, ForbiddenError, ValidationError
from voice_gateway.domain.tenant import TenantContext
from voice_gateway.infra import database
from voice_gateway.infra.secret_store import get_secret_store
from voice_gateway.services.payload_normalizer import normalize_tool_payload, parse_maybe_json
from voice_gateway.services.session_store import CallSession, session_store
from voice_gateway.services.signature import VOICE_SIGNATURE_HEADER, verify_voice_signature
from voice_gateway.services.tenant_resolver import build_tenant_resolver

logger = logging.getLogger(__name__)

CALL_ID_HEADERS = ("x-call-id", "x-retell-call-id")
AGENT_ID_HEADER = "x-agent-id"


@dataclass
class ToolContext:
    """Everything a tool handler needs about the calling agent."""

    tenant: TenantContext
    args: dict
    call: dict = field(default_factory=dict)
    call_id: str | None = None
    session: CallSession | None = None
    tool_name: str | None = None

    @property
    def session_metadata(self) -> dict:
        return dict(self.session.metadata) if self.session else {}


def signature_required(settings: Settings) -> bool:
    return not (settings.allow_unsigned_tool_calls and not settings.is_production)


def voice_api_key() -> str:
    return get_secret_store().get_secret("VOICE_API_KEY") or ""


def _raw_args(body: dict) -> dict:
    args = parse_maybe_json(body.get("args"))
    return args if isinstance(args, dict) else {}


def extract_session_call_id(request: Request, body: dict) -> str | None:
    """Headers first, then ``call_id``/``callId`` in the args, then the call's dynamic variables."""
    for header in CALL_ID_HEADERS:
        value = request.headers.get(header)
        if value:
            return value

    for source in (_raw_args(body), body):
        for key in ("call_id", "callId"):
            value = source.get(key)
            if isinstance(value, str) and value:
                return value

    call = body.get("call") if isinstance(body.get("call"), dict) else {}
    dyn = call.get("retell_llm_dynamic_variables") or {}
    return dyn.get("call_id") or None


def _check_bearer(request: Request, tenant: TenantContext) -> None:
    auth = request.headers.get("authorization")
    if not auth:
        return
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise ForbiddenError("Malformed authorization header")
    if not tenant.bearer_token or not hmac.compare_digest(token.strip(), tenant.bearer_token):
        logger.warning("Bearer token mismatch for agent %s", tenant.agent_id)
        raise ForbiddenError("Invalid agent bearer token")


async def tool_context(request: Request) -> ToolContext:
    """FastAPI dependency: verify, parse and bind a tool call to its tenant."""
    settings = get_settings()
    body_bytes = await request.body()

    if signature_required(settings):
        verify_voice_signature(body_bytes, request.headers.get(VOICE_SIGNATURE_HEADER), voice_api_key())
    else:
        logger.warning("Unsigned tool call accepted for %s (non-production override)", request.url.path)

    try:
        body: Any = json.loads(body_bytes) if body_bytes else {}
    except ValueError:
        raise ValidationError("Invalid request body format", details="Body is not valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Invalid request body format", details="Expected JSON object")

    call_id = extract_session_call_id(request, body)
    normalized = normalize_tool_payload(body)
    session = session_store.get(call_id)

    agent_id = (
        request.headers.get(AGENT_ID_HEADER)
        or normalized.call.get("agent_id")
        or (session.agent_id if session else None)
    )

    async with database.async_session() as db:
        tenant = await build_tenant_resolver(db).resolve(
            agent_id=agent_id,
            call_id=call_id,
            require_agent=True,
        )

    if tenant is None:
        logger.warning("Tool call rejected: no tenant for agent=%s call=%s", agent_id, call_id)
        raise AgentConfigMissingError(agent_id, "tool_call")

    _check_bearer(request, tenant)

    return ToolContext(
        tenant=tenant,
        args=normalized.args,
        call=normalized.call,
        call_id=call_id,
        session=session,
        tool_name=normalized.tool_name,
    )
