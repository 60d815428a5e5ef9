"""API v1 router aggregation.

All v1 endpoints are prefixed with `/api/v1`.
"""

from fastapi import APIRouter

from call_signaling.api.v1 import calls, candidates, health

router = APIRouter(
    prefix="/api/v1",
    tags=["v1"],
    responses={
        404: {"description": "Not found"},
        409: {"description": "Invalid call state transition"},
        422: {"description": "Validation error"},
        503: {"description": "Call record store unavailable"},
    },
)

router.include_router(health.router)
router.include_router(calls.router)
router.include_router(candidates.router)


@router.get(
    "/",
    summary="API Information",
    description="Get API version and status information",
    tags=["v1"],
)
async def api_info():
    """Get API v1 information."""
    return {
        "version": "v1",
        "status": "active",
        "service": "call-signaling",
        "endpoints": {
            "health": "/api/v1/health",
            "ready": "/api/v1/ready",
            "calls": {
                "create": "/api/v1/calls",
                "call": "/api/v1/calls/{id}",
                "transitions": "/api/v1/calls/{id}/{ringing|accept|decline|cancel|end}",
                "media": "/api/v1/calls/{id}/media",
                "events": "ws /api/v1/calls/{id}/events",
                "incoming": "ws /api/v1/calls/incoming/{callee_id}",
            },
            "candidates": {"rank": "/api/v1/candidates/rank"},
        },
    }
