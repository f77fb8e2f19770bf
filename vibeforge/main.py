"""Vibeforge backend: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta

# Logging MUST be configured before all other vibeforge imports
# (structlog caches the processor chain on first use).
from vibeforge.core.config import get_settings as _get_settings_early
from vibeforge.core.logging import configure_logging_from_settings

configure_logging_from_settings(_get_settings_early())

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vibeforge.api.routes import api_router
from vibeforge.core.config import get_settings
from vibeforge.core.exceptions import (
    InsufficientCreditsError,
    InvalidRequestError,
    JobAccessDeniedError,
    JobNotFoundError,
    PersistenceError,
    SandboxError,
    VibeforgeError,
)
from vibeforge.credits.ledger import CreditLedger
from vibeforge.db import close_db, close_redis, get_redis, init_db, init_redis
from vibeforge.middleware.correlation import get_correlation_id, setup_correlation_middleware
from vibeforge.queue.job_store import JobStore
from vibeforge.sandbox.e2b_runtime import E2BSandboxProvider
from vibeforge.sandbox.pool import close_sandbox_pool, init_sandbox_pool
from vibeforge.sandbox.sweeper import SandboxSweeper
from vibeforge.services.cancellation_service import CancellationService
from vibeforge.services.generation_service import GenerationService

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so the health check returns 503 while draining
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    # Startup
    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_redis()
    logger.info("redis_initialized")

    # Archive database is optional: jobs run from Redis alone
    try:
        archive_on = await init_db()
        logger.info("db_initialized", archive_enabled=archive_on)
    except Exception as e:
        logger.warning("db_init_skipped", error=str(e), error_type=type(e).__name__)

    pool = init_sandbox_pool(
        E2BSandboxProvider(settings),
        create_timeout=settings.sandbox_create_timeout_seconds,
        max_age=timedelta(seconds=settings.sandbox_max_age_seconds),
        url_template=settings.sandbox_url_template,
        preview_port=settings.sandbox_preview_port,
    )
    sweeper = SandboxSweeper(pool, interval_seconds=settings.sandbox_sweep_interval_seconds)
    sweeper.start()

    redis = get_redis()
    job_store = JobStore(redis)
    ledger = CreditLedger(redis)
    cancellation = CancellationService(job_store, pool)
    app.state.credit_ledger = ledger
    app.state.cancellation_service = cancellation
    app.state.generation_service = GenerationService(job_store, ledger, pool, cancellation, settings=settings)
    logger.info("services_initialized", template_id=settings.e2b_template_id)

    yield

    # Shutdown
    logger.info("shutdown_begin")
    await sweeper.stop()
    await close_sandbox_pool()
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


def _error_status(exc: VibeforgeError) -> tuple[int, str]:
    if isinstance(exc, InsufficientCreditsError):
        return 402, exc.reason
    if isinstance(exc, InvalidRequestError):
        return 422, exc.reason
    if isinstance(exc, JobNotFoundError):
        return 404, "Job not found"
    if isinstance(exc, JobAccessDeniedError):
        return 403, str(exc)
    if isinstance(exc, PersistenceError):
        return 503, "Service temporarily unavailable. Please try again."
    if isinstance(exc, SandboxError):
        return 502, "The preview sandbox could not be started. Please try again."
    return 500, "Internal server error"


async def vibeforge_exception_handler(request: Request, exc: VibeforgeError) -> JSONResponse:
    """Map domain errors raised before or outside a job onto HTTP responses."""
    status_code, detail = _error_status(exc)
    debug_id = str(uuid.uuid4())

    logger.warning(
        "domain_error",
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        error=str(exc),
        error_type=type(exc).__name__,
    )

    content = {"detail": detail, "debug_id": debug_id}
    if isinstance(exc, InsufficientCreditsError):
        content["remaining"] = exc.remaining
    return JSONResponse(status_code=status_code, content=content)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Prompt-to-app generation with live sandbox previews",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    app.exception_handler(VibeforgeError)(vibeforge_exception_handler)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "vibeforge.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
