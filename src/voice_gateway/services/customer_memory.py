"""Durable per-tenant customer memory.

Two flows:

- ``save_call_analysis`` runs after a call is analyzed. It derives context
  entries and open issues from the analysis and persists profile, call
  history, context and issues in one transaction. Replays of the same
  upstream call id leave aggregates untouched.
- ``get_customer_context`` runs on ``call_inbound``. It loads the caller's
  profile, open issues, last call and context entries and flattens the
  agent-visible subset into dynamic variables.

Admin helpers at the bottom back the customer-memory admin routes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import case, delete, func, or_, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from voice_gateway.domain.enums import (
    ContextChangeType,
    ContextValueType,
    IssuePriority,
    IssueStatus,
    IssueType,
    ISSUE_PRIORITY_RANK,
)
from voice_gateway.domain.models import (
    CallHistory,
    ContextChangeEvent,
    ConversationContext,
    CustomerProfile,
    OpenIssue,
)
from voice_gateway.domain.tenant import TenantContext
from voice_gateway.infra import database
from voice_gateway.services.phone import mask_phone, normalize_phone

logger = logging.getLogger(__name__)

CONTEXT_SOURCE = "voice_post_call_analysis"
CONTEXT_CONFIDENCE = 0.85
NEW_LANGUAGE_CONFIDENCE = 0.9
MISMATCHED_LANGUAGE_CEILING = 0.75
DEFAULT_LANGUAGE_CONFIDENCE = 0.5
SAVE_ATTEMPTS = 2

AGENT_VISIBLE_CONTEXT_KEYS = frozenset({"favorite_staff", "service_interest", "preferred_time"})

LANGUAGE_CODES = {
    "english": "en",
    "spanish": "es",
    "brazilian portuguese": "pt-BR",
    "portuguese": "pt",
    "russian": "ru",
    "french": "fr",
    "german": "de",
}

OPEN_STATUSES = (IssueStatus.OPEN.value, IssueStatus.IN_PROGRESS.value)


@dataclass(frozen=True)
class ContextEntry:
    key: str
    value: str
    value_type: str = ContextValueType.STRING.value
    confidence: float = CONTEXT_CONFIDENCE
    source: str = CONTEXT_SOURCE


@dataclass(frozen=True)
class DerivedIssue:
    type: str
    description: str
    priority: str


@dataclass
class SaveResult:
    profile_id: str
    call_history_id: str
    profile_created: bool = False
    call_history_created: bool = False
    context_upserts: int = 0
    issues_created: int = 0
    issues_updated: int = 0


@dataclass
class CustomerContext:
    normalized_phone: str
    profile: CustomerProfile | None = None
    open_issues: list[dict] = field(default_factory=list)
    last_call: dict | None = None
    context_entries: list[dict] = field(default_factory=list)
    dynamic_variables: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Analysis shape helpers
# ---------------------------------------------------------------------------


def normalize_call_analysis(raw: Any) -> dict:
    """Accept an object, a JSON string or a list of ``{name, value}`` items.

    Fields under ``custom_analysis_data`` are lifted to the top level without
    overriding top-level keys.
    """
    if raw is None:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("call_analysis is not valid JSON, ignoring")
            return {}
    if isinstance(raw, list):
        flattened: dict[str, Any] = {}
        for item in raw:
            if isinstance(item, Mapping) and item.get("name"):
                flattened[str(item["name"])] = item.get("value", item.get("result"))
        raw = flattened
    if not isinstance(raw, Mapping):
        return {}

    analysis = dict(raw)
    custom = analysis.get("custom_analysis_data")
    if isinstance(custom, Mapping):
        for key, value in custom.items():
            analysis.setdefault(key, value)
    return analysis


def normalize_language(value: Any) -> str | None:
    if not value:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    return LANGUAGE_CODES.get(text, text)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (dict, list)) and not value)


def derive_context_entries(analysis: Mapping[str, Any]) -> list[ContextEntry]:
    entries: list[ContextEntry] = []

    stylist = analysis.get("preferred_stylist")
    if not _is_empty(stylist):
        service = analysis.get("service_interest") or "general"
        entries.append(ContextEntry(
            key="favorite_staff",
            value=json.dumps({"service": service, "staff": stylist}),
            value_type=ContextValueType.JSON.value,
        ))

    for field_name, key in (
        ("service_interest", "service_interest"),
        ("preferred_time_of_day", "preferred_time"),
        ("referral_source", "referral_source"),
        ("hallucination_details", "hallucination_details"),
    ):
        value = analysis.get(field_name)
        if _is_empty(value):
            continue
        entries.append(ContextEntry(key=key, value=str(value)))

    return entries


def derive_issues(analysis: Mapping[str, Any]) -> list[DerivedIssue]:
    issues: list[DerivedIssue] = []

    if analysis.get("booking_attempted") and not analysis.get("booking_completed"):
        issues.append(DerivedIssue(
            IssueType.BOOKING_INCOMPLETE.value,
            analysis.get("booking_failure_reason") or "Booking not completed during call",
            IssuePriority.HIGH.value,
        ))

    questions = analysis.get("unanswered_questions")
    if isinstance(questions, list):
        for question in questions:
            if question:
                issues.append(DerivedIssue(
                    IssueType.QUESTION_UNANSWERED.value, str(question), IssuePriority.NORMAL.value,
                ))
    elif analysis.get("unresolved_issue"):
        issues.append(DerivedIssue(
            IssueType.QUESTION_UNANSWERED.value, str(analysis["unresolved_issue"]), IssuePriority.NORMAL.value,
        ))

    if analysis.get("callback_requested"):
        issues.append(DerivedIssue(
            IssueType.CALLBACK_REQUESTED.value,
            analysis.get("callback_reason") or "Customer requested a callback",
            IssuePriority.URGENT.value if analysis.get("callback_urgent") else IssuePriority.HIGH.value,
        ))

    unique: list[DerivedIssue] = []
    seen: set[tuple[str, str]] = set()
    for issue in issues:
        if (issue.type, issue.description) not in seen:
            seen.add((issue.type, issue.description))
            unique.append(issue)
    return unique


def _ms_to_datetime(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _first(*values: Any) -> Any:
    for value in values:
        if not _is_empty(value):
            return value
    return None


def _call_history_fields(call: Mapping[str, Any], analysis: Mapping[str, Any]) -> dict:
    start = _ms_to_datetime(call.get("start_timestamp")) or datetime.now(timezone.utc).replace(tzinfo=None)
    end = _ms_to_datetime(call.get("end_timestamp"))

    if call.get("duration_ms"):
        duration = round(call["duration_ms"] / 1000)
    elif end is not None:
        duration = round((end - start).total_seconds())
    else:
        duration = None

    transcript = call.get("transcript")
    if transcript is not None and not isinstance(transcript, str):
        transcript = json.dumps(transcript)

    collected = call.get("collected_dynamic_variables") or {}
    final_state = collected.get("current_agent_state") or collected.get("agent_state")

    if isinstance(analysis.get("call_successful"), bool):
        successful = analysis["call_successful"]
    else:
        successful = call.get("call_status") == "success" if call.get("call_status") else None

    return {
        "call_start_time": start,
        "call_end_time": end,
        "call_duration_seconds": duration,
        "call_successful": successful,
        "user_sentiment": analysis.get("user_sentiment") or None,
        "detected_language": normalize_language(
            analysis.get("language_preference") or analysis.get("detected_language")
        ),
        "call_summary": _first(analysis.get("call_summary"), analysis.get("summary"), call.get("call_summary")),
        "call_transcript": transcript,
        "booking_created": bool(
            analysis.get("booking_created")
            or analysis.get("booking_completed")
            or analysis.get("booking_confirmation") is True
        ),
        "booking_id": _first(
            analysis.get("booking_id"),
            analysis.get("created_booking_id"),
            analysis.get("booking_confirmation_id"),
            call.get("booking_id"),
        ),
        "final_agent_state": final_state,
        "spam_detected": bool(analysis.get("spam_detected") or final_state == "identify_spam_call"),
    }


# ---------------------------------------------------------------------------
# Dynamic variables
# ---------------------------------------------------------------------------


def build_dynamic_variables(
    profile: CustomerProfile | None,
    open_issues: list[dict],
    last_call: dict | None,
    context_entries: list[dict],
) -> dict[str, str]:
    """Flatten stored memory into string-valued dynamic variables."""
    if profile is None:
        return {}

    variables: dict[str, str] = {
        "is_returning_customer": "true" if (profile.total_calls or 0) > 0 else "false",
    }
    if profile.preferred_language:
        variables["preferred_language"] = profile.preferred_language
    if last_call:
        if last_call.get("call_summary"):
            variables["last_call_summary"] = last_call["call_summary"]
        if last_call.get("user_sentiment"):
            variables["last_call_sentiment"] = last_call["user_sentiment"]

    if open_issues:
        variables["has_open_issues"] = "true"
        variables["open_issues_json"] = json.dumps(open_issues, separators=(",", ":"))
    else:
        variables["has_open_issues"] = "false"

    for entry in context_entries:
        key = entry["context_key"]
        if key not in AGENT_VISIBLE_CONTEXT_KEYS:
            continue
        value = entry["context_value"]
        if entry.get("value_type") == ContextValueType.BOOLEAN.value:
            value = "true" if str(value).lower() in ("true", "1") else "false"

        if key == "favorite_staff":
            try:
                parsed = json.loads(value) if isinstance(value, str) else value
                staff = parsed.get("staff") if isinstance(parsed, dict) else None
                service = (parsed.get("service") if isinstance(parsed, dict) else None) or "general"
            except ValueError:
                variables["favorite_staff"] = str(value)
                variables["favorite_staff_json"] = str(value)
                continue
            if staff:
                variables["favorite_staff"] = str(staff)
                variables["favorite_staff_json"] = json.dumps({service: str(staff)}, separators=(",", ":"))
            continue

        variables[key] = str(value)

    return variables


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _issue_view(issue: OpenIssue) -> dict:
    return {
        "id": issue.id,
        "type": issue.issue_type,
        "description": issue.issue_description,
        "priority": issue.priority,
        "status": issue.status,
        "created_at": _iso(issue.created_at),
        "updated_at": _iso(issue.updated_at),
        "call_history_id": issue.call_history_id,
    }


def _priority_order():
    return case(
        *[(OpenIssue.priority == name, rank) for name, rank in ISSUE_PRIORITY_RANK.items()],
        else_=len(ISSUE_PRIORITY_RANK),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class CustomerMemoryService:
    """Reads and writes customer memory through short-lived DB sessions."""

    def __init__(self, session_factory=None):
        self._factory = session_factory

    @property
    def _session_factory(self):
        return self._factory or database.async_session

    # -- write path -------------------------------------------------------

    async def save_call_analysis(
        self,
        tenant: TenantContext,
        call: Mapping[str, Any],
        analysis: Mapping[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> SaveResult | None:
        """Persist one analyzed call. Returns None when there is nothing to key on."""
        if not tenant.has_uuid_tenant_id:
            logger.warning(
                "Skipping memory save for non-UUID tenant %s (call %s)", tenant.tenant_id, call.get("call_id"),
            )
            return None
        if not call.get("call_id"):
            logger.warning("Skipping memory save: call has no call_id")
            return None

        phone = normalize_phone(call.get("from_number") or call.get("customer_phone"))
        if not phone:
            logger.warning("Skipping memory save for call %s: no caller phone", call.get("call_id"))
            return None

        if analysis is None:
            analysis = normalize_call_analysis(call.get("call_analysis"))

        for attempt in range(1, SAVE_ATTEMPTS + 1):
            try:
                async with self._session_factory() as db:
                    try:
                        result = await self._save(db, tenant.tenant_id, phone, call, analysis)
                        await db.commit()
                    except Exception:
                        await db.rollback()
                        raise
            except (IntegrityError, OperationalError) as e:
                if attempt >= SAVE_ATTEMPTS:
                    raise
                logger.warning(
                    "Memory save conflict for call %s (attempt %d), retrying: %s",
                    call.get("call_id"), attempt, e,
                )
                continue

            logger.info(
                "Call analysis saved: tenant=%s call=%s profile=%s new_call=%s context=%d issues_created=%d "
                "issues_updated=%d correlation_id=%s",
                tenant.tenant_id, call.get("call_id"), result.profile_id, result.call_history_created,
                result.context_upserts, result.issues_created, result.issues_updated, correlation_id,
            )
            return result
        return None

    async def _save(
        self,
        db: AsyncSession,
        tenant_id: str,
        phone: str,
        call: Mapping[str, Any],
        analysis: Mapping[str, Any],
    ) -> SaveResult:
        dyn = call.get("retell_llm_dynamic_variables") or {}
        customer_id = _first(dyn.get("customer_id"), dyn.get("customerId"), analysis.get("customer_id"))
        email = _first(dyn.get("customer_email"), analysis.get("customer_email"), call.get("customer_email"))
        first_name = _first(
            dyn.get("customer_first_name"), analysis.get("customer_first_name"), call.get("customer_first_name"),
        )
        last_name = _first(
            dyn.get("customer_last_name"), analysis.get("customer_last_name"), call.get("customer_last_name"),
        )
        language = normalize_language(analysis.get("language_preference") or dyn.get("preferred_language"))

        profile, profile_created = await self._ensure_profile(
            db, tenant_id, phone, customer_id, email, first_name, last_name, language,
        )

        history_fields = _call_history_fields(call, analysis)
        history, history_created = await self._upsert_call_history(
            db, tenant_id, profile.id, call["call_id"], history_fields,
        )

        if history_created:
            profile.total_calls = (profile.total_calls or 0) + 1
            if history_fields["booking_created"]:
                profile.total_bookings = (profile.total_bookings or 0) + 1
        call_time = history_fields["call_start_time"]
        if profile.first_call_date is None:
            profile.first_call_date = call_time
        if profile.last_call_date is None or call_time >= profile.last_call_date:
            profile.last_call_date = call_time

        if language and not profile_created:
            current = profile.preferred_language
            current_conf = profile.language_confidence or DEFAULT_LANGUAGE_CONFIDENCE
            if current == language:
                profile.language_confidence = min(1.0, max(current_conf, NEW_LANGUAGE_CONFIDENCE))
            else:
                profile.preferred_language = language
                profile.language_confidence = min(NEW_LANGUAGE_CONFIDENCE, MISMATCHED_LANGUAGE_CEILING)

        confirmed_at = history_fields["call_end_time"] or call_time
        context_upserts = await self._upsert_context(db, profile.id, derive_context_entries(analysis), confirmed_at)
        created, updated = await self._upsert_issues(db, tenant_id, profile.id, history.id, derive_issues(analysis))

        await db.flush()
        return SaveResult(
            profile_id=profile.id,
            call_history_id=history.id,
            profile_created=profile_created,
            call_history_created=history_created,
            context_upserts=context_upserts,
            issues_created=created,
            issues_updated=updated,
        )

    async def _ensure_profile(
        self,
        db: AsyncSession,
        tenant_id: str,
        phone: str,
        customer_id: str | None,
        email: str | None,
        first_name: str | None,
        last_name: str | None,
        language: str | None,
    ) -> tuple[CustomerProfile, bool]:
        match = CustomerProfile.phone_number == phone
        if customer_id:
            match = or_(match, CustomerProfile.commerce_customer_id == customer_id)
        result = await db.execute(
            select(CustomerProfile)
            .where(CustomerProfile.tenant_id == tenant_id, match)
            .order_by(CustomerProfile.created_at)
            .limit(1)
        )
        profile = result.scalar_one_or_none()

        if profile is None:
            profile = CustomerProfile(
                tenant_id=tenant_id,
                commerce_customer_id=customer_id,
                phone_number=phone,
                email=email,
                first_name=first_name,
                last_name=last_name,
                preferred_language=language or "en",
                language_confidence=NEW_LANGUAGE_CONFIDENCE if language else DEFAULT_LANGUAGE_CONFIDENCE,
                total_calls=0,
                total_bookings=0,
            )
            db.add(profile)
            await db.flush()
            logger.info("Customer profile created: tenant=%s phone=%s", tenant_id, mask_phone(phone))
            return profile, True

        if customer_id and not profile.commerce_customer_id:
            profile.commerce_customer_id = customer_id
        if not profile.phone_number:
            profile.phone_number = phone
        if email:
            profile.email = email
        if first_name:
            profile.first_name = first_name
        if last_name:
            profile.last_name = last_name
        return profile, False

    async def _upsert_call_history(
        self,
        db: AsyncSession,
        tenant_id: str,
        profile_id: str,
        call_id: str,
        values: dict,
    ) -> tuple[CallHistory, bool]:
        result = await db.execute(select(CallHistory).where(CallHistory.call_id == call_id))
        history = result.scalar_one_or_none()

        if history is None:
            history = CallHistory(call_id=call_id, tenant_id=tenant_id, customer_profile_id=profile_id, **values)
            db.add(history)
            await db.flush()
            return history, True

        # Replays only fill in or refresh values, never blank them out
        history.customer_profile_id = profile_id or history.customer_profile_id
        history.tenant_id = tenant_id
        for name, value in values.items():
            if value is not None:
                setattr(history, name, value)
        return history, False

    async def _upsert_context(
        self,
        db: AsyncSession,
        profile_id: str,
        entries: list[ContextEntry],
        confirmed_at: datetime,
    ) -> int:
        for entry in entries:
            result = await db.execute(
                select(ConversationContext).where(
                    ConversationContext.customer_profile_id == profile_id,
                    ConversationContext.context_key == entry.key,
                )
            )
            existing = result.scalar_one_or_none()
            if existing is None:
                db.add(ConversationContext(
                    customer_profile_id=profile_id,
                    context_key=entry.key,
                    context_value=entry.value,
                    value_type=entry.value_type,
                    confidence=entry.confidence,
                    source=entry.source,
                    last_confirmed_at=confirmed_at,
                ))
            else:
                existing.context_value = entry.value
                existing.value_type = entry.value_type
                existing.confidence = min(1.0, max(existing.confidence or 0.0, entry.confidence))
                existing.source = entry.source
                existing.last_confirmed_at = confirmed_at
        return len(entries)

    async def _upsert_issues(
        self,
        db: AsyncSession,
        tenant_id: str,
        profile_id: str,
        call_history_id: str,
        issues: list[DerivedIssue],
    ) -> tuple[int, int]:
        created = updated = 0
        for issue in issues:
            result = await db.execute(
                select(OpenIssue)
                .where(
                    OpenIssue.tenant_id == tenant_id,
                    OpenIssue.customer_profile_id == profile_id,
                    OpenIssue.status.in_(OPEN_STATUSES),
                    OpenIssue.issue_type == issue.type,
                    OpenIssue.issue_description == issue.description,
                )
                .limit(1)
            )
            existing = result.scalar_one_or_none()
            if existing is None:
                db.add(OpenIssue(
                    tenant_id=tenant_id,
                    customer_profile_id=profile_id,
                    call_history_id=call_history_id,
                    issue_type=issue.type,
                    issue_description=issue.description,
                    priority=issue.priority,
                    status=IssueStatus.OPEN.value,
                ))
                created += 1
            else:
                existing.call_history_id = call_history_id
                existing.priority = issue.priority
                updated += 1
            # Visible to the next iteration's lookup
            await db.flush()
        return created, updated

    # -- read path --------------------------------------------------------

    async def get_customer_context(self, tenant_id: str | None, phone_number: str | None) -> CustomerContext | None:
        """Memory for the caller, or None when the tenant or phone is unusable."""
        phone = normalize_phone(phone_number)
        if not tenant_id or not phone:
            return None

        async with self._session_factory() as db:
            return await load_customer_context(db, tenant_id, phone)


async def load_customer_context(db: AsyncSession, tenant_id: str, phone: str) -> CustomerContext:
    result = await db.execute(
        select(CustomerProfile)
        .where(CustomerProfile.tenant_id == tenant_id, CustomerProfile.phone_number == phone)
        .limit(1)
    )
    profile = result.scalar_one_or_none()
    if profile is None:
        return CustomerContext(normalized_phone=phone)

    issues_result = await db.execute(
        select(OpenIssue)
        .where(
            OpenIssue.customer_profile_id == profile.id,
            OpenIssue.tenant_id == tenant_id,
            OpenIssue.status.in_(OPEN_STATUSES),
        )
        .order_by(_priority_order(), OpenIssue.created_at.asc())
    )
    open_issues = [_issue_view(i) for i in issues_result.scalars().all()]

    call_result = await db.execute(
        select(CallHistory)
        .where(CallHistory.customer_profile_id == profile.id)
        .order_by(CallHistory.call_start_time.desc())
        .limit(1)
    )
    last = call_result.scalar_one_or_none()
    last_call = None
    if last is not None:
        last_call = {
            "id": last.id,
            "call_summary": last.call_summary,
            "user_sentiment": last.user_sentiment,
            "call_successful": last.call_successful,
            "call_start_time": _iso(last.call_start_time),
            "call_end_time": _iso(last.call_end_time),
            "call_duration_seconds": last.call_duration_seconds,
        }

    context_result = await db.execute(
        select(ConversationContext)
        .where(ConversationContext.customer_profile_id == profile.id)
        .order_by(ConversationContext.updated_at.desc())
    )
    context_entries = [
        {
            "context_key": c.context_key,
            "context_value": c.context_value,
            "value_type": c.value_type,
            "confidence": c.confidence,
            "source": c.source,
            "last_confirmed_at": _iso(c.last_confirmed_at),
        }
        for c in context_result.scalars().all()
    ]

    logger.info(
        "Customer context loaded: tenant=%s profile=%s open_issues=%d context_entries=%d",
        tenant_id, profile.id, len(open_issues), len(context_entries),
    )
    return CustomerContext(
        normalized_phone=phone,
        profile=profile,
        open_issues=open_issues,
        last_call=last_call,
        context_entries=context_entries,
        dynamic_variables=build_dynamic_variables(profile, open_issues, last_call, context_entries),
    )


# ---------------------------------------------------------------------------
# Admin operations
# ---------------------------------------------------------------------------


def _serialize_context_value(value: Any, value_type: str) -> str:
    if value_type == ContextValueType.JSON.value:
        return value if isinstance(value, str) else json.dumps(value)
    if value_type == ContextValueType.BOOLEAN.value:
        return "true" if value in (True, "true", "1", 1) else "false"
    return str(value)


def _audit_value(value: str | None, value_type: str | None) -> Any:
    if value is None:
        return None
    if value_type == ContextValueType.JSON.value:
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


async def list_profiles(
    db: AsyncSession,
    tenant_id: str | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CustomerProfile], int]:
    query = select(CustomerProfile)
    if tenant_id:
        query = query.where(CustomerProfile.tenant_id == tenant_id)
    if search:
        pattern = f"%{search.strip()}%"
        digits = normalize_phone(search)
        clauses = [
            CustomerProfile.first_name.ilike(pattern),
            CustomerProfile.last_name.ilike(pattern),
            CustomerProfile.email.ilike(pattern),
        ]
        if digits:
            clauses.append(CustomerProfile.phone_number.like(f"%{digits}%"))
        query = query.where(or_(*clauses))

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
    result = await db.execute(
        query.order_by(CustomerProfile.last_call_date.desc(), CustomerProfile.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total


async def get_profile_detail(db: AsyncSession, profile_id: str) -> dict | None:
    profile = await db.get(CustomerProfile, profile_id)
    if profile is None:
        return None

    context = (await db.execute(
        select(ConversationContext)
        .where(ConversationContext.customer_profile_id == profile_id)
        .order_by(ConversationContext.context_key)
    )).scalars().all()
    issues = (await db.execute(
        select(OpenIssue)
        .where(OpenIssue.customer_profile_id == profile_id)
        .order_by(_priority_order(), OpenIssue.created_at.asc())
    )).scalars().all()
    calls = (await db.execute(
        select(CallHistory)
        .where(CallHistory.customer_profile_id == profile_id)
        .order_by(CallHistory.call_start_time.desc())
        .limit(20)
    )).scalars().all()
    events = (await db.execute(
        select(ContextChangeEvent)
        .where(ContextChangeEvent.customer_profile_id == profile_id)
        .order_by(ContextChangeEvent.created_at.desc())
        .limit(50)
    )).scalars().all()

    return {
        "profile": profile,
        "context": list(context),
        "open_issues": list(issues),
        "recent_calls": list(calls),
        "change_events": list(events),
    }


async def upsert_context_entry(
    db: AsyncSession,
    profile: CustomerProfile,
    key: str,
    value: Any,
    value_type: str = ContextValueType.STRING.value,
    confidence: float = 1.0,
    changed_by_email: str | None = None,
) -> ConversationContext:
    """Manual edit of one context entry, recorded in the audit trail."""
    result = await db.execute(
        select(ConversationContext).where(
            ConversationContext.customer_profile_id == profile.id,
            ConversationContext.context_key == key,
        )
    )
    entry = result.scalar_one_or_none()
    serialized = _serialize_context_value(value, value_type)
    now = datetime.now(timezone.utc).replace(tzinfo=None)

    if entry is None:
        old_value = None
        change_type = ContextChangeType.CREATE.value
        entry = ConversationContext(
            customer_profile_id=profile.id,
            context_key=key,
            context_value=serialized,
            value_type=value_type,
            confidence=confidence,
            source="manual",
            last_confirmed_at=now,
        )
        db.add(entry)
    else:
        old_value = _audit_value(entry.context_value, entry.value_type)
        change_type = ContextChangeType.UPDATE.value
        entry.context_value = serialized
        entry.value_type = value_type
        entry.confidence = confidence
        entry.source = "manual"
        entry.last_confirmed_at = now

    db.add(ContextChangeEvent(
        tenant_id=profile.tenant_id,
        customer_profile_id=profile.id,
        context_key=key,
        change_type=change_type,
        old_value=old_value,
        new_value=_audit_value(serialized, value_type),
        changed_by_email=changed_by_email,
    ))
    await db.flush()
    logger.info("Context %s: profile=%s key=%s by=%s", change_type, profile.id, key, changed_by_email)
    return entry


async def delete_context_entry(
    db: AsyncSession,
    profile: CustomerProfile,
    key: str,
    changed_by_email: str | None = None,
) -> bool:
    result = await db.execute(
        select(ConversationContext).where(
            ConversationContext.customer_profile_id == profile.id,
            ConversationContext.context_key == key,
        )
    )
    entry = result.scalar_one_or_none()
    if entry is None:
        return False

    db.add(ContextChangeEvent(
        tenant_id=profile.tenant_id,
        customer_profile_id=profile.id,
        context_key=key,
        change_type=ContextChangeType.DELETE.value,
        old_value=_audit_value(entry.context_value, entry.value_type),
        new_value=None,
        changed_by_email=changed_by_email,
    ))
    await db.execute(delete(ConversationContext).where(ConversationContext.id == entry.id))
    await db.flush()
    logger.info("Context delete: profile=%s key=%s by=%s", profile.id, key, changed_by_email)
    return True
