"""Domain enumerations for the voice gateway.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class VoiceEvent(str, Enum):
    """Webhook events delivered by the voice platform."""

    CALL_INBOUND = "call_inbound"
    CALL_STARTED = "call_started"
    CALL_ANALYZED = "call_analyzed"
    CALL_ENDED = "call_ended"


class CommerceEnvironment(str, Enum):
    """Which commerce API host a tenant's credentials belong to."""

    SANDBOX = "sandbox"
    PRODUCTION = "production"


class TenantStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    OFFBOARDED = "offboarded"


class ContextValueType(str, Enum):
    """Storage type of a conversation-context value."""

    STRING = "string"
    JSON = "json"
    BOOLEAN = "boolean"


class IssueType(str, Enum):
    """Open-issue categories derived from post-call analysis."""

    BOOKING_INCOMPLETE = "booking_incomplete"
    QUESTION_UNANSWERED = "question_unanswered"
    CALLBACK_REQUESTED = "callback_requested"


class IssuePriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class IssueStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"


class ContextChangeType(str, Enum):
    """Kind of admin edit recorded in the context audit trail."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ErrorCode(str, Enum):
    """Machine-readable error codes carried by error envelopes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    AGENT_CONFIG_MISSING = "AGENT_CONFIG_MISSING"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"
    UPSTREAM_FAILURE = "UPSTREAM_FAILURE"
    INTERNAL = "INTERNAL"


# Priority ordering used when presenting open issues to the agent.
ISSUE_PRIORITY_RANK: dict[str, int] = {
    IssuePriority.URGENT.value: 1,
    IssuePriority.HIGH.value: 2,
    IssuePriority.NORMAL.value: 3,
    IssuePriority.LOW.value: 4,
}
