"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

Production features:
- Multiple instances behind a load balancer (no in-process booking state)
- Circuit breaker around the notification broker
- Per-IP rate limiting for anonymous traffic (Redis, fail-open)
- Request IDs and structured JSON logs
- Prometheus metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import time as wall_time
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from pybreaker import CircuitBreakerError
from redis.exceptions import RedisError

from config.database import create_database
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings
from services.booking.router import router as booking_router
from services.scheduling.errors import SchedulingError
from services.therapist.router import router as therapist_router
from shared.schemas.schemas import ErrorResponse


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        request_id = getattr(record, "request_id", None)
        if request_id:
            log_data["request_id"] = request_id
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


# Configure structured logging for every module logger
handler = logging.StreamHandler()
handler.setFormatter(JSONFormatter())
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    handlers=[handler],
)
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler. Owns the database handle."""
    logger.info(f"Starting {settings.APP_NAME}...")

    database = create_database(settings)
    await database.create_all()
    app.state.database = database
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    # Seed a demo therapist (dev only)
    if settings.APP_ENV == "development":
        await seed_initial_data(database)

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    # Cleanup
    await close_redis()
    await database.dispose()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## MindWeal Scheduling API

Appointment scheduling for a therapy practice:
- **Availability**: bookable slots from working hours, buffers, notice and booking window
- **Bookings**: race-checked creation, reschedule, cancellation, status changes
- **Calendar**: Google Meet links for video sessions, ICS invites
- **Notifications**: confirmation, cancellation and reminder emails via Celery

### Authentication
Staff and therapist endpoints require `Authorization: Bearer <access_token>`.
Availability and booking creation are public.

### Errors
Scheduling rejections return `{detail, code, retryable}`. When `retryable`
is true (e.g. `slot_no_longer_available`), re-fetch availability and resubmit.
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (order matters, outermost first) ───────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )

    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Per-IP limit for unauthenticated traffic (public booking form).
        Authenticated requests and operational endpoints are not limited here.
        Fails open when Redis is unavailable.
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if request.url.path in skip_paths or request.headers.get("Authorization", "").startswith("Bearer "):
            return await call_next(request)

        from config.redis_client import redis_client
        if redis_client:
            client_ip = request.client.host if request.client else "unknown"
            try:
                allowed = await RedisCache(redis_client).check_rate_limit(
                    f"rate:unauth:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE
                )
            except RedisError as e:
                logger.error(f"Rate limit check failed: {str(e)}")
                allowed = True
            if not allowed:
                logger.warning(f"Rate limit exceeded for IP {client_ip}")
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Rate limit exceeded. Please slow down."},
                    headers={"Retry-After": "60"},
                )

        return await call_next(request)

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(SchedulingError)
    async def scheduling_error_handler(request: Request, exc: SchedulingError):
        """Render scheduling rejections with a stable code and retry hint."""
        request_id = getattr(request.state, "request_id", None)
        log = logger.warning if exc.status_code >= 500 else logger.info
        log(f"[{request_id}] {exc.code}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(detail=exc.detail, code=exc.code, retryable=exc.retryable).model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)

        if isinstance(exc, CircuitBreakerError):
            logger.error(f"[{request_id}] Service degraded - Circuit breaker open: {str(exc)}")
            return JSONResponse(
                status_code=503,
                content={
                    "detail": "Service temporarily unavailable. Please try again later.",
                    "request_id": request_id,
                    "status": "degraded",
                },
            )

        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        logger.error(f"[{request_id}] Exception: {str(exc)}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "detail": detail,
                "request_id": request_id,
            },
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check(request: Request):
        from config.redis_client import redis_client

        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            await request.app.state.database.ping()
            checks["database"] = "ok"
        except Exception as e:
            logger.error(f"Health check: database unavailable: {e}")
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_client:
                await redis_client.ping()
            checks["redis"] = "ok"
        except RedisError as e:
            logger.error(f"Health check: redis unavailable: {e}")
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    app.include_router(therapist_router)
    app.include_router(booking_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    if settings.ENABLE_METRICS:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

async def seed_initial_data(database):
    """Seed a demo therapist with weekday hours on first run (development only)."""
    from sqlalchemy import func, select
    from shared.models.models import MeetingType, SessionType, Therapist, TherapistAvailability

    async with database.session() as db:
        count = await db.scalar(select(func.count(Therapist.id)))
        if count and count > 0:
            return  # Already seeded

        therapist = Therapist(
            slug="demo-therapist",
            name="Demo Therapist",
            email="therapist@mindweal.in",
            working_hours=[
                TherapistAvailability(day_of_week=day, start_time=start, end_time=end)
                for day in range(5)
                for start, end in ((wall_time(10, 0), wall_time(13, 0)), (wall_time(14, 0), wall_time(18, 0)))
            ],
        )
        db.add(therapist)
        await db.flush()

        db.add_all([
            SessionType(therapist_id=therapist.id, name="Individual Therapy", duration=50, meeting_type=MeetingType.VIDEO),
            SessionType(therapist_id=therapist.id, name="In-Person Consultation", duration=60, meeting_type=MeetingType.IN_PERSON),
            SessionType(therapist_id=therapist.id, name="Phone Check-in", duration=30, meeting_type=MeetingType.PHONE),
        ])
        logger.info(f"Seeded demo therapist {therapist.id}")


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
