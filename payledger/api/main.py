"""PayLedger API — payment webhooks, credit ledger and checkout verification."""
from __future__ import annotations

import logging

from payledger.logging_config import setup_logging
setup_logging()
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi import Request as FastAPIRequest
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from config.settings import settings
from payledger.api.deps import build_credit_manager, close_clients
from payledger.db import engine as db_engine
from payledger.db.engine import get_session
from payledger.db.tables import Base
from payledger.services.scheduler import start_scheduler, stop_scheduler

# ── Sentry Error Tracking ────────────────────────
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        # Webhook payloads carry customer e-mails
        send_default_pii=False,
    )

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup, start the yearly allocation scheduler."""
    from payledger.startup_checks import validate_settings
    validate_settings()

    # Import all tables so they're registered with Base.metadata
    import payledger.db.billing_tables  # noqa: F401
    async with db_engine.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")

    start_scheduler(
        build_credit_manager(db_engine.async_session),
        interval_hours=settings.YEARLY_ALLOCATION_INTERVAL_HOURS,
    )

    yield

    logger.info("Shutting down — draining connections...")
    stop_scheduler()
    await close_clients()
    await db_engine.engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="PayLedger API",
    version="0.1.0",
    description="Stripe and Creem webhook reconciliation with an auditable credit ledger",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request ID tracing
from payledger.middleware.request_id import RequestIDMiddleware
app.add_middleware(RequestIDMiddleware)

from payledger.api import webhooks as webhooks_api
from payledger.api.webhooks import router as webhooks_router
from payledger.api.payment import router as payment_router
app.include_router(webhooks_router)
app.include_router(payment_router)


@app.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    """Deep health check — validates DB connectivity."""
    try:
        await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        logger.exception("Health check DB probe failed")
        db_status = "error"
    status = "ok" if db_status == "connected" else "degraded"
    return {"status": status, "db": db_status, "version": "0.1.0"}


@app.get("/ready")
async def readiness(session: AsyncSession = Depends(get_session)):
    """Readiness probe. Returns 503 while the DB is down or no provider can deliver webhooks."""
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        return JSONResponse(status_code=503, content={"ready": False, "reason": "database unavailable"})

    providers = {
        "stripe": bool(webhooks_api.STRIPE_WEBHOOK_SECRET),
        "creem": bool(webhooks_api.CREEM_WEBHOOK_SECRET),
    }
    if not any(providers.values()):
        return JSONResponse(status_code=503, content={
            "ready": False, "reason": "no webhook secret configured", "providers": providers,
        })
    return {"ready": True, "providers": providers}


# ── Error envelope ───────────────────────────────

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: FastAPIRequest, exc: RequestValidationError):
    """Return clean, structured validation errors instead of raw Pydantic output."""
    errors = []
    for err in exc.errors():
        field = " → ".join(str(loc) for loc in err["loc"]) if err.get("loc") else "unknown"
        errors.append({"field": field, "message": err["msg"]})
    return JSONResponse(status_code=422, content={
        "error": "validation_error",
        "message": "Invalid request data",
        "details": errors,
    })


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: FastAPIRequest, exc: StarletteHTTPException):
    """Consistent error envelope for all HTTP errors."""
    return JSONResponse(status_code=exc.status_code, content={
        "error": exc.detail if isinstance(exc.detail, str) else "error",
        "message": exc.detail,
    }, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: FastAPIRequest, exc: Exception):
    """Catch-all for unhandled exceptions — never leak stack traces."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={
        "error": "internal_error",
        "message": "Something went wrong. Please try again.",
    })
