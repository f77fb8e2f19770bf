import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness check. Returns 503 while the app is shutting down."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "vibeforge"},
        )
    return {"status": "healthy", "service": "vibeforge"}


@router.get("/ready")
async def readiness_check():
    """Readiness check - verifies Redis and the sandbox pool.

    The archive database is optional, so its state is reported but never
    makes the service unready.
    """
    from vibeforge.db.base import archive_enabled, archive_session

    checks = {"redis": False, "sandbox_pool": False}
    archive = "disabled"

    if archive_enabled():
        try:
            async with archive_session() as session:
                await session.execute(text("SELECT 1"))
            archive = "ok"
        except Exception as e:
            archive = "unavailable"
            logger.warning(f"Archive database check failed: {e}")

    try:
        from vibeforge.db.redis import get_redis

        await get_redis().ping()
        checks["redis"] = True
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")

    try:
        from vibeforge.sandbox.pool import get_sandbox_pool

        get_sandbox_pool()
        checks["sandbox_pool"] = True
    except RuntimeError as e:
        logger.error(f"Sandbox pool check failed: {e}")

    all_healthy = all(checks.values())
    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks, "archive": archive},
    )
