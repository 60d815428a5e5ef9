"""Media State Synchronizer: share audio/video flags during a live call."""

from typing import Any, Awaitable, Callable, Optional

from call_signaling.clients.media_transport import MediaTransport
from call_signaling.models.call import CallRecord, MediaState
from call_signaling.services.signaling_service import CallSignalingService
from call_signaling.store.base import Subscription
from call_signaling.utils.errors import (
    InvalidTransitionError,
    SignalingException,
    SubscriptionLostError,
    ValidationError,
)
from call_signaling.utils.logging import get_logger

logger = get_logger("media_sync")

RemoteMediaHandler = Callable[[Optional[MediaState]], Awaitable[None]]
CallEndedHandler = Callable[[CallRecord], Awaitable[None]]


class MediaStateSynchronizer:
    """Keeps one participant's view of an accepted call in sync.

    Local toggles are written to the participant's own media field; the
    counterparty's flags arrive through the record subscription. Writes are
    last-writer-wins per field with no acknowledgement.
    """

    def __init__(
        self,
        signaling: CallSignalingService,
        call: CallRecord,
        participant_id: str,
        media_transport: Optional[MediaTransport] = None,
        media_handle: Any = None,
        on_remote_change: Optional[RemoteMediaHandler] = None,
        on_call_ended: Optional[CallEndedHandler] = None,
    ):
        role = call.role_of(participant_id)
        if role is None:
            raise ValidationError(
                message="Participant is not on this call",
                details={"call_id": call.id, "participant_id": participant_id},
            )
        self.signaling = signaling
        self.call = call
        self.participant_id = participant_id
        self.media_transport = media_transport
        self.media_handle = media_handle
        self._on_remote_change = on_remote_change
        self._on_call_ended = on_call_ended

        self.local_media = call.media_for(role) or MediaState()
        self._remote_media = call.remote_media_for(participant_id)
        self._subscription: Optional[Subscription] = None
        self._ended = False

    @property
    def remote_media(self) -> Optional[MediaState]:
        """Last known media flags of the other participant."""
        return self._remote_media

    @property
    def ended(self) -> bool:
        return self._ended

    async def start(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = await self.signaling.subscribe_to_call(
            self.call.id, self._handle_change, self._handle_lost
        )

    async def stop(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    async def set_local_media(
        self, audio: Optional[bool] = None, video: Optional[bool] = None
    ) -> CallRecord:
        """Publish local mute/camera flags; None leaves a flag unchanged."""
        state = MediaState(
            audio_enabled=self.local_media.audio_enabled if audio is None else audio,
            video_enabled=self.local_media.video_enabled if video is None else video,
        )
        record = await self.signaling.update_media_state(self.call.id, self.participant_id, state)
        self.local_media = state
        self.call = record
        return record

    async def end(self) -> None:
        """Hang up, leave the media session and unsubscribe."""
        self._ended = True
        try:
            await self.signaling.end_call(self.call.id, actor_id=self.participant_id)
        except InvalidTransitionError:
            logger.info(f"Call {self.call.id} was already ended by the other participant")
        except SignalingException as e:
            logger.warning(f"Failed to end call {self.call.id}: {e.message}")
        await self._leave()
        await self.stop()

    async def _leave(self) -> None:
        handle, self.media_handle = self.media_handle, None
        if self.media_transport is None or handle is None:
            return
        try:
            await self.media_transport.leave(handle)
        except Exception as e:
            logger.warning(f"Failed to leave media session for call {self.call.id}: {e}")

    async def _handle_change(self, record: CallRecord) -> None:
        self.call = record
        remote = record.remote_media_for(self.participant_id)
        if remote != self._remote_media:
            self._remote_media = remote
            if self._on_remote_change is not None:
                await self._on_remote_change(remote)

        if record.is_terminal and not self._ended:
            self._ended = True
            logger.info(
                f"Call {record.id} ended by the other participant",
                extra={"call_id": record.id, "status": record.status.value},
            )
            if self._on_call_ended is not None:
                await self._on_call_ended(record)

    async def _handle_lost(self, error: SubscriptionLostError) -> None:
        logger.warning(f"Lost media state updates for call {self.call.id}")
