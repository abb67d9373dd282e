"""
MedConsult Session Engine — FastAPI Application Entry Point

Aggregates all routers, configures middleware and error rendering,
initializes the database and starts the expiry/promotion sweep.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from medconsult.config import get_settings
from medconsult.database import SessionLocal, init_db
from medconsult.errors import EngineError
from medconsult.routes import (
    text_sessions_router, calls_router, sessions_router, payments_router, admin_router,
)
from medconsult.schemas.schemas import ErrorResponse, HealthResponse
from medconsult.services.scheduler import sweep_loop
from medconsult.utils.logging import configure_logging

settings = get_settings()
logger = logging.getLogger(__name__)

BOOT_TIME = time.time()


# ─── Startup / Shutdown ──────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings)
    init_db()

    logger.info(
        "\n%s\n  %s v%s\n  DATABASE: %s\n  SCHEDULER: %s (every %ss)\n  DEBUG: %s\n%s",
        "=" * 60, settings.APP_NAME, settings.APP_VERSION, settings.DATABASE_URL,
        "on" if settings.SCHEDULER_ENABLED else "off", settings.SWEEP_INTERVAL_SECONDS,
        settings.DEBUG, "=" * 60,
    )

    sweep_task = None
    if settings.SCHEDULER_ENABLED:
        sweep_task = asyncio.create_task(sweep_loop(settings.SWEEP_INTERVAL_SECONDS))

    yield

    if sweep_task is not None:
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task
    logger.info("%s stopped", settings.APP_NAME)


# ─── Application Instance ───────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "Session lifecycle and billing engine for patient/doctor consultations. "
        "Covers text sessions with doctor response deadlines, voice/video calls with "
        "grace-period connection, unit-based billing with doctor payouts, and "
        "idempotent payment-gateway reconciliation."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# ─── Middleware ──────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every API request with timing."""
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 1)

    if request.url.path.startswith("/api"):
        logger.info("%s %s -> %s (%sms)", request.method, request.url.path, response.status_code, duration)

    return response


# ─── Error Rendering ─────────────────────────────────────────────────
@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.message)
    else:
        logger.info("%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(detail=exc.message, error_code=exc.error_code).model_dump(),
    )


# ─── API Routers ─────────────────────────────────────────────────────
app.include_router(text_sessions_router)
app.include_router(calls_router)
app.include_router(sessions_router)
app.include_router(payments_router)
app.include_router(admin_router)


@app.get("/health", tags=["Health"], response_model=HealthResponse)
def deep_health():
    """Detailed health check including database status."""
    db_ok = False
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except Exception as e:
        logger.warning("Health check database query failed: %s", e)
    finally:
        db.close()

    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        database="connected" if db_ok else "disconnected",
        scheduler=settings.SCHEDULER_ENABLED,
        version=settings.APP_VERSION,
        uptime_seconds=round(time.time() - BOOT_TIME, 1),
        config={
            "text_response_window_seconds": settings.TEXT_RESPONSE_WINDOW_SECONDS,
            "call_grace_period_seconds": settings.CALL_GRACE_PERIOD_SECONDS,
            "billing_unit_minutes": settings.BILLING_UNIT_MINUTES,
        },
    )
