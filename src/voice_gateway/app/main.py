"""FastAPI application entry point for the voice gateway."""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from voice_gateway.app.config import get_settings
from voice_gateway.app.exception_handlers import register_exception_handlers
from voice_gateway.app.middleware import CorrelationIdMiddleware, RateLimitMiddleware
from voice_gateway.app.request_context import CORRELATION_HEADER
from voice_gateway.infra.database import close_db, init_db
from voice_gateway.services.agent_config import get_agent_config_service
from voice_gateway.services.redactor import RedactingFilter
from voice_gateway.services.session_store import session_sweep_loop, session_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: database, agent configs and the session sweeper."""
    await init_db()

    # An undecryptable agent-config envelope stops startup (ConfigDecryptionError)
    count = get_agent_config_service().load()
    logger.info("Agent configs ready: %d", count)

    sweeper = asyncio.create_task(
        session_sweep_loop(session_store, settings.session_sweep_interval_seconds)
    )
    yield

    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    session_store.shutdown()
    await close_db()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s [%(correlation_id)s]: %(message)s",
    datefmt="%H:%M:%S",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RedactingFilter())

app = FastAPI(
    title="Voice Gateway API",
    lifespan=lifespan,
)

register_exception_handlers(app)

# Last added runs first: CORS, correlation id, rate limit
app.add_middleware(
    RateLimitMiddleware,
    max_requests=settings.rate_limit_max,
    window_minutes=settings.rate_limit_window_minutes,
)
app.add_middleware(CorrelationIdMiddleware)

_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[CORRELATION_HEADER],
)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from voice_gateway.app.routes.health import router as health_router
from voice_gateway.app.routes.voice_webhook import router as voice_webhook_router
from voice_gateway.app.routes.commerce_webhook import router as commerce_webhook_router
from voice_gateway.app.routes.tools import router as tools_router
from voice_gateway.app.routes.customer_memory import router as customer_memory_router

app.include_router(health_router)
app.include_router(voice_webhook_router)
app.include_router(commerce_webhook_router)
app.include_router(tools_router)
app.include_router(customer_memory_router)

# Static admin assets, when shipped
_static_dir = Path(__file__).resolve().parents[3] / "static"
if _static_dir.is_dir():
    app.mount("/static", StaticFiles(directory=str(_static_dir)), name="static")


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "voice_gateway.app.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
