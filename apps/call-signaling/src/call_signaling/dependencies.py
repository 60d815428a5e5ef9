"""FastAPI dependencies for the Call Signaling service."""

from typing import Optional

from fastapi import Header, HTTPException, status
from starlette.requests import HTTPConnection

from call_signaling.services.signaling_service import CallSignalingService
from call_signaling.utils.logging import get_logger

logger = get_logger("dependencies")


async def get_actor_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID")
) -> Optional[str]:
    """
    Acting participant for this request.

    Authentication happens upstream; when the header is present, the
    signaling service enforces that the actor owns the field or status it writes.
    """
    return x_user_id


async def get_signaling_service(connection: HTTPConnection) -> CallSignalingService:
    """
    Get the CallSignalingService from app state.

    Raises:
        HTTPException: If the service was not initialized at startup.
    """
    service: Optional[CallSignalingService] = getattr(
        connection.app.state, "signaling_service", None
    )
    if service is None:
        logger.error("Signaling service not available in app state")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Signaling service is not available (store not initialized)",
        )
    return service
