"""Standard success / error response envelopes."""

from datetime import datetime, timezone
from typing import Any

from fastapi.responses import JSONResponse

from voice_gateway.app.request_context import CORRELATION_HEADER, get_correlation_id
from voice_gateway.services.json_utils import stringify_large_ints


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def success_envelope(data: Any = None, message: str | None = None, correlation_id: str | None = None) -> dict:
    body: dict[str, Any] = {"success": True, "data": stringify_large_ints(data)}
    if message:
        body["message"] = message
    body["timestamp"] = _timestamp()
    correlation_id = correlation_id or get_correlation_id()
    if correlation_id:
        body["correlation_id"] = correlation_id
    return body


def error_envelope(
    error: str,
    message: str,
    details: Any = None,
    correlation_id: str | None = None,
) -> dict:
    body: dict[str, Any] = {"success": False, "error": error, "message": message}
    if details is not None:
        body["details"] = details
    body["timestamp"] = _timestamp()
    correlation_id = correlation_id or get_correlation_id()
    if correlation_id:
        body["correlation_id"] = correlation_id
    return body


def success_response(data: Any = None, message: str | None = None, status_code: int = 200) -> JSONResponse:
    return _with_correlation(JSONResponse(success_envelope(data, message), status_code=status_code))


def error_response(
    status_code: int,
    error: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    response = JSONResponse(
        error_envelope(error, message, details),
        status_code=status_code,
        headers=headers,
    )
    return _with_correlation(response)


def _with_correlation(response: JSONResponse) -> JSONResponse:
    correlation_id = get_correlation_id()
    if correlation_id:
        response.headers[CORRELATION_HEADER] = correlation_id
    return response
