"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import ConfigurationError, register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.core.database import close_db, get_session_factory, init_db
from backend.app.core.cache import close_redis

# ── Alert core ──
from backend.app.alerts.channels.sms_gateway import SmsGateway
from backend.app.alerts.channels.voice_gateway import VoiceGateway
from backend.app.alerts.escalation import EscalationScheduler
from backend.app.alerts.rate_limiter import RateLimiter
from backend.app.alerts.webhooks import WebhookReconciler

# ── API routers ──
from backend.app.api.v1.webhooks import router as webhook_router
from backend.app.api.v1.escalations import router as escalation_router
from backend.app.api.v1.rate_limits import router as rate_limit_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the alert core on startup, tear it down on shutdown."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )

    problems = settings.production_problems()
    if problems:
        for problem in problems:
            logger.critical("Configuration problem: %s", problem)
        raise ConfigurationError("Invalid production configuration", problems=problems)

    if not settings.is_production:
        await init_db()
    session_factory = get_session_factory()

    app.state.webhook_rate_limiter = RateLimiter(
        prefix="webhook:ratelimit",
        limit=settings.WEBHOOK_RATE_LIMIT,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
        use_redis=settings.REDIS_ENABLED,
        fail_open=True,
    )
    app.state.reconciler = WebhookReconciler(session_factory)
    app.state.sms_gateway = None
    app.state.voice_gateway = None
    app.state.scheduler = None

    if settings.twilio_configured:
        app.state.sms_gateway = SmsGateway()
        app.state.voice_gateway = VoiceGateway()
        app.state.scheduler = EscalationScheduler(
            session_factory,
            app.state.sms_gateway,
            app.state.voice_gateway,
            reminder_threshold=timedelta(minutes=settings.REMINDER_THRESHOLD_MINUTES),
            escalation_threshold=timedelta(minutes=settings.ESCALATION_THRESHOLD_MINUTES),
            interval_seconds=settings.ESCALATION_INTERVAL_SECONDS,
            call_timeout_seconds=settings.VOICE_CALL_TIMEOUT_SECONDS,
            stop_timeout_seconds=settings.SCHEDULER_STOP_TIMEOUT_SECONDS,
        )
        if settings.ESCALATION_ENABLED and not settings.is_test:
            await app.state.scheduler.start()
    else:
        logger.warning(
            "Twilio credentials not configured; SMS, voice and escalation are disabled"
        )

    try:
        yield
    finally:
        if app.state.scheduler is not None:
            await app.state.scheduler.stop()
        if app.state.sms_gateway is not None:
            await app.state.sms_gateway.rate_limiter.close()
        await app.state.webhook_rate_limiter.close()
        await close_redis()
        await close_db()
        logger.info("Shutting down %s", settings.APP_NAME)


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Care alert escalation service. "
        "Reminds coordinators of unanswered alerts by SMS, escalates to "
        "backup coordinators by voice call, rate-limits outbound SMS per "
        "sender, and reconciles Twilio status callbacks into alert state."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware ──
app.add_middleware(RequestLoggingMiddleware)

# ── Error handlers ──
register_error_handlers(app)

# ── Register routers ──
app.include_router(webhook_router)
app.include_router(escalation_router)
app.include_router(rate_limit_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "escalation-scheduler",
            "sms-rate-limiting",
            "webhook-reconciliation",
        ],
        "docs": "/docs",
    }


def _probe_targets(request: Request):
    state = request.app.state
    sms = getattr(state, "sms_gateway", None)
    limiters = [
        limiter
        for limiter in (
            getattr(state, "webhook_rate_limiter", None),
            sms.rate_limiter if sms is not None else None,
        )
        if limiter is not None
    ]
    return getattr(state, "scheduler", None), limiters


@app.get("/health", tags=["health"])
async def health_check(request: Request):
    """Alert store, rate-limit store and scheduler, worst status wins."""
    scheduler, limiters = _probe_targets(request)
    report = await run_health_check(scheduler, limiters)
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness(request: Request):
    """503 only when the alert store is down; a degraded limiter still serves."""
    scheduler, limiters = _probe_targets(request)
    report = await run_health_check(scheduler, limiters)
    if report.status is HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
