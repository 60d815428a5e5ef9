"""Health check endpoints."""

from typing import Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from call_signaling.config import get_settings
from call_signaling.store.base import CallRecordStore
from call_signaling.utils.logging import get_logger

logger = get_logger("health")

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """
    Health check endpoint.

    Returns basic service health status. This endpoint does not check
    external dependencies and will always return healthy if the service is running.
    """
    settings = get_settings()
    logger.debug("Health check requested")
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "environment": settings.environment.value,
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check(request: Request):
    """
    Readiness check endpoint.

    Checks connectivity to the call record store (Redis, or the in-memory
    store in development). Returns 503 if it is unavailable.
    """
    settings = get_settings()
    logger.debug("Readiness check requested")

    checks = {"store": False}

    store: Optional[CallRecordStore] = getattr(request.app.state, "store", None)
    if store is not None:
        try:
            checks["store"] = await store.ping()
        except Exception as e:
            logger.warning(f"Store connection check failed: {e}")

    body = {
        "app_name": settings.app_name,
        "environment": settings.environment.value,
        "store_backend": settings.store_backend.value,
        "checks": checks,
    }

    if not all(checks.values()):
        logger.warning(f"Readiness check failed: {checks}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", **body},
        )

    logger.debug("Readiness check passed: all systems operational")
    return {"status": "ready", **body}
