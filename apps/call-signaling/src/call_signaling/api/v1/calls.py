"""Call signaling endpoints.

A thin HTTP/WebSocket adapter over the CallSignalingService for clients that
cannot reach the store directly.
"""

from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from call_signaling.dependencies import get_actor_id, get_signaling_service
from call_signaling.models.call import (
    CallRecord,
    CallType,
    DeclineReason,
    MediaState,
    Participant,
)
from call_signaling.services.signaling_service import CallSignalingService
from call_signaling.store.base import Subscription
from call_signaling.utils.errors import (
    CallNotFoundError,
    PermissionDeniedError,
    SignalingException,
    SubscriptionLostError,
    ValidationError,
)
from call_signaling.utils.logging import get_logger

logger = get_logger("api.calls")

router = APIRouter(prefix="/calls", tags=["calls"])


class _RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateCallRequest(_RequestModel):
    """Request body for creating a call."""

    caller_id: Optional[str] = Field(
        default=None, description="Caller user ID (defaults to X-User-ID)"
    )
    caller_name: Optional[str] = Field(default=None, description="Caller display name")
    caller_avatar: Optional[str] = Field(default=None, description="Caller avatar URL")
    callee_id: str = Field(..., description="Callee user ID")
    callee_name: Optional[str] = Field(default=None, description="Callee display name")
    callee_avatar: Optional[str] = Field(default=None, description="Callee avatar URL")
    type: CallType = Field(default=CallType.INSTANT, description="Instant or scheduled")
    channel_name: Optional[str] = Field(
        default=None, description="Media channel name (generated when omitted)"
    )
    appointment_id: Optional[str] = Field(default=None, description="Backing appointment")


class DeclineCallRequest(_RequestModel):
    """Request body for declining a call."""

    reason: DeclineReason = Field(
        default=DeclineReason.USER, description="user, busy, or timeout (recorded as missed)"
    )


@router.post("", response_model=CallRecord, status_code=status.HTTP_201_CREATED)
async def create_call(
    body: CreateCallRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: CallSignalingService = Depends(get_signaling_service),
) -> CallRecord:
    """Create a call record in ``dialing`` and notify the callee."""
    caller_id = body.caller_id or actor_id
    if caller_id is None:
        raise ValidationError(
            message="callerId or X-User-ID is required",
            errors={"callerId": "required"},
        )
    if actor_id is not None and caller_id != actor_id:
        raise PermissionDeniedError(
            message="Calls can only be created on behalf of the acting user",
            details={"actor_id": actor_id, "caller_id": caller_id},
        )

    return await service.create_call(
        Participant(id=caller_id, name=body.caller_name, avatar_url=body.caller_avatar),
        Participant(id=body.callee_id, name=body.callee_name, avatar_url=body.callee_avatar),
        call_type=body.type,
        channel_name=body.channel_name,
        appointment_id=body.appointment_id,
    )


@router.get("/{call_id}", response_model=CallRecord)
async def get_call(
    call_id: str,
    service: CallSignalingService = Depends(get_signaling_service),
) -> CallRecord:
    record = await service.get_call(call_id)
    if record is None:
        raise CallNotFoundError(call_id)
    return record


@router.post("/{call_id}/ringing", response_model=CallRecord)
async def mark_ringing(
    call_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: CallSignalingService = Depends(get_signaling_service),
) -> CallRecord:
    """Mark the call ringing on the callee's device. Idempotent."""
    return await service.update_ringing(call_id, actor_id=actor_id)


@router.post("/{call_id}/accept", response_model=CallRecord)
async def accept_call(
    call_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: CallSignalingService = Depends(get_signaling_service),
) -> CallRecord:
    return await service.accept_call(call_id, actor_id=actor_id)


@router.post("/{call_id}/decline", response_model=CallRecord)
async def decline_call(
    call_id: str,
    body: Optional[DeclineCallRequest] = None,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: CallSignalingService = Depends(get_signaling_service),
) -> CallRecord:
    reason = body.reason if body is not None else DeclineReason.USER
    return await service.decline_call(call_id, reason=reason, actor_id=actor_id)


@router.post("/{call_id}/cancel", response_model=CallRecord)
async def cancel_call(
    call_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: CallSignalingService = Depends(get_signaling_service),
) -> CallRecord:
    return await service.cancel_call(call_id, actor_id=actor_id)


@router.post("/{call_id}/end", response_model=CallRecord)
async def end_call(
    call_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: CallSignalingService = Depends(get_signaling_service),
) -> CallRecord:
    return await service.end_call(call_id, actor_id=actor_id)


@router.put("/{call_id}/media", response_model=CallRecord)
async def update_media_state(
    call_id: str,
    body: MediaState,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: CallSignalingService = Depends(get_signaling_service),
) -> CallRecord:
    """Publish the acting participant's own audio/video flags."""
    if actor_id is None:
        raise ValidationError(
            message="X-User-ID is required to update media state",
            errors={"X-User-ID": "required"},
        )
    return await service.update_media_state(call_id, actor_id, body)


async def _stream_records(websocket: WebSocket, open_subscription, event_type: str) -> None:
    """Forward subscription deliveries to a WebSocket until the client leaves."""
    await websocket.accept()

    async def forward(record: CallRecord) -> None:
        await websocket.send_json({"type": event_type, "data": record.to_wire()})

    async def lost(error: SubscriptionLostError) -> None:
        await websocket.send_json({"type": "subscription_lost", **error.to_dict()})
        await websocket.close(code=1011)

    subscription: Optional[Subscription] = None
    try:
        subscription = await open_subscription(forward, lost)
        await websocket.send_json({"type": "subscribed", "channel": subscription.channel})
        while True:
            # Clients only ever send keepalives; the read detects disconnects
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected")
    except SignalingException as e:
        logger.warning(f"WebSocket subscription failed: {e.message}")
        await websocket.send_json(e.to_dict())
        await websocket.close(code=1011)
    finally:
        if subscription is not None:
            await subscription.close()


@router.websocket("/incoming/{callee_id}")
async def incoming_calls_websocket(
    websocket: WebSocket,
    callee_id: str,
    service: CallSignalingService = Depends(get_signaling_service),
):
    """Stream each new ringing call for ``callee_id``."""
    await _stream_records(
        websocket,
        lambda on_new, on_lost: service.subscribe_to_incoming_calls(callee_id, on_new, on_lost),
        "incoming_call",
    )


@router.websocket("/{call_id}/events")
async def call_events_websocket(
    websocket: WebSocket,
    call_id: str,
    service: CallSignalingService = Depends(get_signaling_service),
):
    """Stream the current record and every change to it."""
    await _stream_records(
        websocket,
        lambda on_change, on_lost: service.subscribe_to_call(call_id, on_change, on_lost),
        "call_update",
    )
