"""Health checks and service descriptor."""

import logging
import time

from fastapi import APIRouter

from voice_gateway.app.config import get_settings
from voice_gateway.app.responses import error_response, success_response
from voice_gateway.domain.enums import ErrorCode
from voice_gateway.infra import database
from voice_gateway.infra.secret_store import get_secret_store
from voice_gateway.services.agent_config import get_agent_config_service
from voice_gateway.services.session_store import session_store

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

SERVICE_NAME = "voice-gateway"
SERVICE_VERSION = "1.0.0"

_started_at = time.monotonic()


async def _database_ok() -> bool:
    try:
        return await database.ping_db()
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        return False


def _agent_configs_ready() -> bool:
    """Loaded, or not required because no secret store is configured."""
    return get_agent_config_service().loaded or not get_secret_store().configured


@router.get("/health")
async def health_check():
    """Return basic service health."""
    return {"status": "ok", "service": SERVICE_NAME}


@router.get("/health/live")
async def liveness():
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness():
    checks = {"database": await _database_ok(), "agent_configs": _agent_configs_ready()}
    if not all(checks.values()):
        return error_response(503, ErrorCode.INTERNAL.value, "Service not ready", details=checks)
    return success_response({"status": "ready", "checks": checks})


@router.get("/health/detailed")
async def detailed_health():
    settings = get_settings()
    agent_configs = get_agent_config_service()
    db_ok = await _database_ok()
    return success_response({
        "status": "ok" if db_ok else "degraded",
        "environment": settings.app_env,
        "uptime_seconds": round(time.monotonic() - _started_at, 1),
        "database": "ok" if db_ok else "unavailable",
        "sessions": {"active": session_store.count()},
        "agent_configs": {"loaded": agent_configs.loaded, "count": agent_configs.count()},
        "email_configured": bool(settings.sendgrid_api_key and settings.email_from),
    })


@router.get("/api/info")
async def service_info():
    settings = get_settings()
    return success_response({
        "name": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "environment": settings.app_env,
        "endpoints": {
            "voice_webhook": "/webhooks/voice",
            "commerce_webhook": "/webhooks/commerce/booking",
            "tools": [
                "/tools/customer-info",
                "/tools/bookings",
                "/tools/availability",
                "/tools/booking/create",
                "/tools/booking/cancel",
                "/tools/customer/update",
            ],
            "customer_memory": "/api/customer-memory",
            "health": ["/health", "/health/live", "/health/ready", "/health/detailed"],
        },
    })
