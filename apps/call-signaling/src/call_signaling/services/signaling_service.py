"""Call Signaling Service: atomic operations on call records."""

from typing import Iterable, Optional, Union

from call_signaling.models.call import (
    STATUS_OWNERS,
    CallRecord,
    CallStatus,
    CallType,
    DeclineReason,
    MediaState,
    Participant,
    ParticipantRole,
    can_transition,
    utc_now,
)
from call_signaling.store.base import (
    CallRecordStore,
    LostHandler,
    RecordHandler,
    RecordMutator,
    Subscription,
)
from call_signaling.utils.errors import (
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from call_signaling.utils.ids import generate_call_id, generate_channel_name
from call_signaling.utils.logging import get_logger

logger = get_logger("signaling_service")

_ALL_BUT_DIALING = frozenset(status for status in CallStatus if status != CallStatus.DIALING)


def _as_participant(value: Union[str, Participant]) -> Participant:
    if isinstance(value, Participant):
        return value
    return Participant(id=value)


class CallSignalingService:
    """Service for creating and transitioning call records.

    Every mutating operation is one atomic update against the store: the
    transition is validated inside the store's atomic section, so when two
    parties race (accept vs. cancel) the first commit wins and the other
    gets :class:`InvalidTransitionError`.

    Mutating operations take an optional ``actor_id``. When given, the
    actor must be a participant and must own the status being written.
    """

    def __init__(self, store: CallRecordStore):
        self.store = store

    @staticmethod
    def _authorize(record: CallRecord, target: CallStatus, actor_id: Optional[str]) -> None:
        if actor_id is None:
            return
        role = record.role_of(actor_id)
        if role is None:
            raise PermissionDeniedError(
                message="Only call participants can change a call",
                details={"call_id": record.id, "actor_id": actor_id},
            )
        if role not in STATUS_OWNERS.get(target, frozenset()):
            raise PermissionDeniedError(
                message=f"The {role.value} cannot set status '{target.value}'",
                details={"call_id": record.id, "actor_id": actor_id, "status": target.value},
            )

    def _transition(
        self,
        target: CallStatus,
        actor_id: Optional[str] = None,
        noop_from: Iterable[CallStatus] = (),
    ) -> RecordMutator:
        noop_statuses = frozenset(noop_from)

        def mutate(record: CallRecord) -> Optional[CallRecord]:
            self._authorize(record, target, actor_id)
            if record.status in noop_statuses:
                return None
            if not can_transition(record.status, target):
                raise InvalidTransitionError(
                    call_id=record.id,
                    current=record.status.value,
                    attempted=target.value,
                )
            now = utc_now()
            record.status = target
            if target == CallStatus.ACCEPTED:
                record.answered_at = now
            if target.is_terminal:
                record.ended_at = now
            return record

        return mutate

    async def _apply_transition(
        self,
        call_id: str,
        target: CallStatus,
        actor_id: Optional[str] = None,
        noop_from: Iterable[CallStatus] = (),
    ) -> CallRecord:
        try:
            record = await self.store.update(call_id, self._transition(target, actor_id, noop_from))
        except InvalidTransitionError as e:
            logger.info(
                f"Rejected transition for call {call_id}: {e.current} -> {e.attempted}",
                extra={"call_id": call_id, "current_status": e.current, "attempted_status": e.attempted},
            )
            raise
        logger.info(
            f"Call {call_id} is now {record.status.value}",
            extra={"call_id": call_id, "status": record.status.value, "version": record.version},
        )
        return record

    async def create_call(
        self,
        caller: Union[str, Participant],
        callee: Union[str, Participant],
        call_type: CallType = CallType.INSTANT,
        channel_name: Optional[str] = None,
        appointment_id: Optional[str] = None,
    ) -> CallRecord:
        """Create a new call record in ``dialing``.

        Args:
            caller: Caller id or participant with display data.
            callee: Callee id or participant with display data.
            call_type: Instant or scheduled.
            channel_name: Media session token; generated when omitted.
            appointment_id: Appointment backing a scheduled call.

        Returns:
            The stored record.

        Raises:
            ValidationError: If caller and callee are the same participant.
            StoreUnavailableError: If the store cannot be reached.
        """
        caller = _as_participant(caller)
        callee = _as_participant(callee)
        if caller.id == callee.id:
            raise ValidationError(
                message="Caller and callee must be different participants",
                errors={"callee_id": "must differ from caller_id"},
            )

        record = CallRecord(
            id=generate_call_id(caller.id, callee.id),
            caller_id=caller.id,
            callee_id=callee.id,
            caller_name=caller.name or "User",
            caller_avatar=caller.avatar_url,
            callee_name=callee.name,
            callee_avatar=callee.avatar_url,
            channel_name=channel_name or generate_channel_name(caller.id, callee.id),
            type=call_type,
            appointment_id=appointment_id,
            status=CallStatus.DIALING,
        )
        created = await self.store.create(record)
        logger.info(
            f"Created call {created.id}",
            extra={
                "call_id": created.id,
                "caller_id": created.caller_id,
                "callee_id": created.callee_id,
                "call_type": created.type.value,
            },
        )
        return created

    async def update_ringing(self, call_id: str, actor_id: Optional[str] = None) -> CallRecord:
        """Mark a call ``ringing``. No write if it is already ringing or later."""
        return await self._apply_transition(
            call_id, CallStatus.RINGING, actor_id, noop_from=_ALL_BUT_DIALING
        )

    async def accept_call(self, call_id: str, actor_id: Optional[str] = None) -> CallRecord:
        """Accept a ringing call.

        Raises:
            InvalidTransitionError: If the call was already accepted, cancelled,
                declined, missed or ended.
        """
        return await self._apply_transition(call_id, CallStatus.ACCEPTED, actor_id)

    async def decline_call(
        self,
        call_id: str,
        reason: DeclineReason = DeclineReason.USER,
        actor_id: Optional[str] = None,
    ) -> CallRecord:
        """Decline a ringing call; a TIMEOUT decline is recorded as ``missed``."""
        target = CallStatus.MISSED if reason == DeclineReason.TIMEOUT else CallStatus.DECLINED
        return await self._apply_transition(call_id, target, actor_id)

    async def mark_missed(self, call_id: str, actor_id: Optional[str] = None) -> CallRecord:
        return await self.decline_call(call_id, DeclineReason.TIMEOUT, actor_id)

    async def cancel_call(self, call_id: str, actor_id: Optional[str] = None) -> CallRecord:
        """Cancel a call that has not been answered yet."""
        return await self._apply_transition(call_id, CallStatus.CANCELLED, actor_id)

    async def end_call(self, call_id: str, actor_id: Optional[str] = None) -> CallRecord:
        """End a live call. Either participant may end it."""
        return await self._apply_transition(call_id, CallStatus.ENDED, actor_id)

    async def update_media_state(
        self, call_id: str, participant_id: str, state: MediaState
    ) -> CallRecord:
        """Write ``participant_id``'s own media flags on a live call.

        Raises:
            PermissionDeniedError: If ``participant_id`` is not on the call.
            InvalidTransitionError: If the call is not ``accepted``.
        """

        def mutate(record: CallRecord) -> CallRecord:
            role = record.role_of(participant_id)
            if role is None:
                raise PermissionDeniedError(
                    message="Only call participants can update media state",
                    details={"call_id": record.id, "actor_id": participant_id},
                )
            if record.status != CallStatus.ACCEPTED:
                raise InvalidTransitionError(
                    call_id=record.id,
                    current=record.status.value,
                    attempted="media_update",
                    message=f"Media state can only change on a live call (status '{record.status.value}')",
                )
            if role == ParticipantRole.CALLER:
                record.caller_media = state.model_copy()
            else:
                record.callee_media = state.model_copy()
            return record

        record = await self.store.update(call_id, mutate)
        logger.debug(
            f"Media state updated on call {call_id}",
            extra={
                "call_id": call_id,
                "participant_id": participant_id,
                "audio_enabled": state.audio_enabled,
                "video_enabled": state.video_enabled,
            },
        )
        return record

    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        return await self.store.get(call_id)

    async def subscribe_to_call(
        self,
        call_id: str,
        on_change: RecordHandler,
        on_lost: Optional[LostHandler] = None,
    ) -> Subscription:
        """Receive the current record and then every committed change to it."""
        return await self.store.subscribe_record(call_id, on_change, on_lost)

    async def subscribe_to_incoming_calls(
        self,
        callee_id: str,
        on_new_call: RecordHandler,
        on_lost: Optional[LostHandler] = None,
    ) -> Subscription:
        """Receive each new ringing call for ``callee_id`` once."""
        return await self.store.subscribe_incoming(callee_id, on_new_call, on_lost)
