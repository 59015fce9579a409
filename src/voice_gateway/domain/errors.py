"""Application error taxonomy.

Every error the gateway surfaces to a client is an ``AppError``. Controllers
raise them; the exception handlers in ``voice_gateway.app.main`` translate
them into the standard error envelope.
"""

from typing import Any

from voice_gateway.domain.enums import ErrorCode


class AppError(Exception):
    """Base class for errors that map onto an HTTP status and error code."""

    status_code: int = 500
    code: str = ErrorCode.INTERNAL.value

    def __init__(
        self,
        message: str,
        details: Any = None,
        code: str | None = None,
        status_code: int | None = None,
    ):
        self.message = message
        self.details = details
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class ValidationError(AppError):
    status_code = 400
    code = ErrorCode.VALIDATION_ERROR.value


class UnauthorizedError(AppError):
    """Missing or invalid signature / bearer credentials."""

    status_code = 401
    code = ErrorCode.UNAUTHENTICATED.value


class AgentConfigMissingError(AppError):
    """No credential source produced a usable tenant for the request."""

    status_code = 401
    code = ErrorCode.AGENT_CONFIG_MISSING.value

    def __init__(self, agent_id: str | None, event: str | None = None):
        self.agent_id = agent_id
        self.event = event
        target = f" for agent {agent_id}" if agent_id else ""
        super().__init__(
            f"No tenant credentials available{target}",
            details={"agent_id": agent_id, "event": event},
        )


class ForbiddenError(AppError):
    status_code = 403
    code = ErrorCode.FORBIDDEN.value


class NotFoundError(AppError):
    status_code = 404
    code = ErrorCode.NOT_FOUND.value


class ConflictError(AppError):
    status_code = 409
    code = ErrorCode.CONFLICT.value


class RateLimitedError(AppError):
    status_code = 429
    code = ErrorCode.RATE_LIMITED.value

    def __init__(self, retry_after: int, message: str = "Too many requests, please try again later"):
        self.retry_after = retry_after
        super().__init__(message, details={"retry_after": retry_after})


class UpstreamError(AppError):
    """A commerce or voice-platform call failed."""

    status_code = 502
    code = ErrorCode.UPSTREAM_FAILURE.value

    def __init__(self, message: str, upstream_status: int | None = None, details: Any = None):
        self.upstream_status = upstream_status
        super().__init__(message, details=details)


class InternalError(AppError):
    status_code = 500
    code = ErrorCode.INTERNAL.value


class SessionExistsError(ValueError):
    """Raised when a call session is created twice for the same call id."""

    def __init__(self, call_id: str):
        self.call_id = call_id
        super().__init__(f"Session already exists for call {call_id}")


class ConfigDecryptionError(Exception):
    """The agent-config envelope could not be decrypted or parsed."""
