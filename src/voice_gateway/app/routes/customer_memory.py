"""Customer-memory admin API.

Read profiles with their context, open issues and call history, and edit
context entries by hand. Every edit writes a ``context_change_events`` row.
Requests must carry ``X-Admin-Token`` matching ``ADMIN_API_TOKEN``.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from voice_gateway.app.config import get_settings
from voice_gateway.app.responses import success_response
from voice_gateway.domain.errors import ForbiddenError, NotFoundError, UnauthorizedError
from voice_gateway.domain.models import CustomerProfile
from voice_gateway.domain.schemas import (
    CallHistoryOut,
    ContextChangeEventOut,
    ContextEntryOut,
    ContextEntryUpsert,
    CustomerProfileOut,
    OpenIssueOut,
)
from voice_gateway.infra.database import get_db
from voice_gateway.services.customer_memory import (
    delete_context_entry,
    get_profile_detail,
    list_profiles,
    upsert_context_entry,
)

logger = logging.getLogger(__name__)


async def require_admin_token(x_admin_token: Optional[str] = Header(default=None)) -> None:
    expected = get_settings().admin_api_token
    if not expected:
        raise ForbiddenError("Customer-memory admin API is disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise UnauthorizedError("Invalid admin token")


router = APIRouter(
    prefix="/api/customer-memory",
    tags=["customer-memory"],
    dependencies=[Depends(require_admin_token)],
)


async def _get_profile(db: AsyncSession, profile_id: str) -> CustomerProfile:
    profile = await db.get(CustomerProfile, profile_id)
    if profile is None:
        raise NotFoundError(f"Customer profile {profile_id} not found")
    return profile


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/profiles")
async def get_profiles(
    tenant_id: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    profiles, total = await list_profiles(db, tenant_id=tenant_id, search=search, limit=limit, offset=offset)
    return success_response({
        "profiles": [CustomerProfileOut.model_validate(p).model_dump(mode="json") for p in profiles],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@router.get("/profiles/{profile_id}")
async def get_profile(profile_id: str, db: AsyncSession = Depends(get_db)):
    detail = await get_profile_detail(db, profile_id)
    if detail is None:
        raise NotFoundError(f"Customer profile {profile_id} not found")

    return success_response({
        "profile": CustomerProfileOut.model_validate(detail["profile"]).model_dump(mode="json"),
        "context": [ContextEntryOut.model_validate(c).model_dump(mode="json") for c in detail["context"]],
        "open_issues": [OpenIssueOut.model_validate(i).model_dump(mode="json") for i in detail["open_issues"]],
        "recent_calls": [CallHistoryOut.model_validate(c).model_dump(mode="json") for c in detail["recent_calls"]],
        "change_events": [
            ContextChangeEventOut.model_validate(e).model_dump(mode="json") for e in detail["change_events"]
        ],
    })


@router.post("/profiles/{profile_id}/context")
async def put_context_entry(profile_id: str, body: ContextEntryUpsert, db: AsyncSession = Depends(get_db)):
    profile = await _get_profile(db, profile_id)
    entry = await upsert_context_entry(
        db,
        profile,
        body.context_key,
        body.context_value,
        value_type=body.value_type,
        confidence=body.confidence,
        changed_by_email=body.changed_by_email,
    )
    await db.commit()
    await db.refresh(entry)
    return success_response(
        ContextEntryOut.model_validate(entry).model_dump(mode="json"),
        message="Context entry saved",
    )


@router.delete("/profiles/{profile_id}/context/{context_key}")
async def remove_context_entry(
    profile_id: str,
    context_key: str,
    changed_by_email: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    profile = await _get_profile(db, profile_id)
    deleted = await delete_context_entry(db, profile, context_key, changed_by_email=changed_by_email)
    if not deleted:
        raise NotFoundError(f"Context key {context_key} not found")
    await db.commit()
    return success_response({"deleted": True, "context_key": context_key}, message="Context entry deleted")
