"""Request middleware: correlation ids and per-agent rate limiting."""

import logging
import math
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from voice_gateway.app.request_context import (
    CORRELATION_HEADER,
    new_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from voice_gateway.app.responses import error_response
from voice_gateway.domain.enums import ErrorCode

logger = logging.getLogger(__name__)

RATE_LIMIT_EXEMPT_PREFIXES = ("/health",)
AGENT_ID_HEADER = "x-agent-id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Bind ``X-Correlation-ID`` (or a fresh uuid) for the request and echo it back.

    Unhandled errors become the 500 envelope here, while the id is still bound.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or new_correlation_id()
        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            response = error_response(500, ErrorCode.INTERNAL.value, "An unexpected error occurred")
        finally:
            reset_correlation_id(token)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window limit keyed by agent id, falling back to the client IP."""

    def __init__(self, app, max_requests: int, window_minutes: int):
        super().__init__(app)
        self.max_requests = max_requests
        self.window_seconds = window_minutes * 60
        self._hits: dict[str, list[float]] = {}
        self._last_sweep = time.time()

    @staticmethod
    def key_for(request: Request) -> str:
        agent_id = request.headers.get(AGENT_ID_HEADER)
        if agent_id:
            return f"agent:{agent_id}"
        host = request.client.host if request.client else "unknown"
        return f"ip:{host}"

    def _sweep(self, now_ts: float) -> None:
        """Drop keys with no hits inside the window; runs at most once per window."""
        if now_ts - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now_ts
        stale = [key for key, hits in self._hits.items() if not hits or now_ts - hits[-1] >= self.window_seconds]
        for key in stale:
            del self._hits[key]

    def hit(self, key: str, now_ts: float | None = None) -> int:
        """Record a hit for ``key``; return seconds to wait, 0 when allowed."""
        now_ts = time.time() if now_ts is None else now_ts
        self._sweep(now_ts)
        hits = [ts for ts in self._hits.get(key, []) if now_ts - ts < self.window_seconds]
        if len(hits) >= self.max_requests:
            self._hits[key] = hits
            return max(1, math.ceil(hits[0] + self.window_seconds - now_ts))
        hits.append(now_ts)
        self._hits[key] = hits
        return 0

    def tracked_keys(self) -> int:
        return len(self._hits)

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(RATE_LIMIT_EXEMPT_PREFIXES):
            return await call_next(request)

        key = self.key_for(request)
        retry_after = self.hit(key)
        if retry_after:
            logger.warning("Rate limit exceeded for %s on %s", key, request.url.path)
            return error_response(
                429,
                ErrorCode.RATE_LIMITED.value,
                "Too many requests, please try again later",
                {"retry_after": retry_after},
                headers={"Retry-After": str(retry_after)},
            )
        return await call_next(request)
