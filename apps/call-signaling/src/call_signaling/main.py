"""FastAPI application entry point.

The HTTP/WebSocket surface is a thin adapter for clients that cannot talk to
the call record store directly. This module wires up:
- the call record store (Redis, or in-memory for local development) and the
  signaling service, created in the lifespan and kept on ``app.state``
- request context middleware
- exception handlers rendering every error as ``{"error": {...}}``
- the v1 routers and root-level /health and /ready probes
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import redis.asyncio as redis
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.asyncio import ConnectionPool
from starlette.exceptions import HTTPException as StarletteHTTPException

from call_signaling.api.v1 import health
from call_signaling.api.v1.router import router as v1_router
from call_signaling.config import StoreBackend, get_settings
from call_signaling.middleware import setup_middleware
from call_signaling.services.signaling_service import CallSignalingService
from call_signaling.store import create_redis_pool, create_store
from call_signaling.utils.errors import SignalingException
from call_signaling.utils.logging import get_logger, log_error, setup_logging

setup_logging()
logger = get_logger("main")

settings = get_settings()


async def _connect_redis() -> ConnectionPool:
    """Create the Redis pool and check that it answers.

    An unreachable Redis is fatal only in production; elsewhere the pool is
    returned anyway and the store reports unavailable until Redis comes up.
    """
    logger.info(f"Connecting to Redis at {settings.redis.url}")
    pool = create_redis_pool(settings)
    client = redis.Redis(connection_pool=pool)
    try:
        await client.ping()
    except Exception as e:
        logger.error(f"Redis is not reachable: {e}", exc_info=True)
        if settings.is_production:
            raise
    finally:
        await client.aclose()
    return pool


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the call record store and signaling service; close the store on shutdown."""
    logger.info("Starting Call Signaling service...")
    redis_pool = None
    if settings.store_backend == StoreBackend.REDIS:
        redis_pool = await _connect_redis()
    else:
        logger.warning(
            "Using the in-memory call record store; calls are not shared between processes"
        )

    store = create_store(settings, redis_pool=redis_pool)
    app.state.redis_pool = redis_pool
    app.state.store = store
    app.state.signaling_service = CallSignalingService(store)
    logger.info(f"Call Signaling service started (store={settings.store_backend.value})")

    try:
        yield
    finally:
        logger.info("Shutting down Call Signaling service...")
        try:
            await store.close()
        except Exception as e:
            logger.error(f"Error closing call record store: {e}", exc_info=True)


app = FastAPI(
    title="Call Signaling Service",
    description=(
        "Instant-call matching and call-state signaling: rings available "
        "counterparties in ranked order and keeps call records and media flags "
        "in sync between both participants."
    ),
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    debug=settings.debug,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "Health check and readiness endpoints"},
        {"name": "calls", "description": "Call records, transitions and live updates"},
        {"name": "candidates", "description": "Candidate ranking"},
    ],
)

setup_middleware(app)
app.include_router(v1_router)


# Root-level probes for Kubernetes/Docker; also served under /api/v1
@app.get("/health", tags=["health"], include_in_schema=False)
async def root_health_check():
    return await health.health_check()


@app.get("/ready", tags=["health"], include_in_schema=False)
async def root_readiness_check(request: Request):
    return await health.readiness_check(request)


def _error_response(
    status_code: int,
    message: str,
    code: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": message,
                "code": code,
                "status_code": status_code,
                "details": details or {},
            }
        },
    )


def _request_context(request: Request, **extra: Any) -> Dict[str, Any]:
    return {"method": request.method, "path": request.url.path, **extra}


@app.exception_handler(SignalingException)
async def signaling_exception_handler(
    request: Request, exc: SignalingException
) -> JSONResponse:
    """Render signaling errors; a lost race or bad input is logged as a warning only."""
    context = _request_context(request, status_code=exc.status_code, code=exc.code)
    if exc.status_code < 500:
        logger.warning(f"{exc.code}: {exc.message}", extra=context)
    else:
        log_error(exc, context=context)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    context = _request_context(request, status_code=exc.status_code)
    if exc.status_code == 404:
        logger.warning(f"404 Not Found: {request.method} {request.url.path}", extra=context)
    else:
        log_error(exc, context=context)
    return _error_response(exc.status_code, str(exc.detail), "HTTP_ERROR")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(loc) for loc in error.get("loc", [])),
            "message": error.get("msg"),
            "type": error.get("type"),
        }
        for error in exc.errors()
    ]
    logger.warning(
        f"Validation error: {request.method} {request.url.path}",
        extra=_request_context(request, validation_errors=errors),
    )
    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation failed",
        "VALIDATION_ERROR",
        {"validation_errors": errors},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log_error(exc, context=_request_context(request, unhandled=True))
    if settings.is_production:
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "An internal server error occurred",
            "INTERNAL_SERVER_ERROR",
        )
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        str(exc),
        "INTERNAL_SERVER_ERROR",
        {"exception_type": type(exc).__name__},
    )


def run() -> None:
    """Run the service with uvicorn."""
    import uvicorn

    uvicorn.run(
        "call_signaling.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.reload and settings.is_development,
    )


if __name__ == "__main__":
    run()
