"""Call record models and the call status state machine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CallStatus(str, Enum):
    """Lifecycle status of one call attempt."""

    DIALING = "dialing"
    RINGING = "ringing"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    ENDED = "ended"
    MISSED = "missed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class CallType(str, Enum):
    """How the call was initiated."""

    INSTANT = "instant"
    SCHEDULED = "scheduled"


class ParticipantRole(str, Enum):
    """Which side of the call a participant is on."""

    CALLER = "caller"
    CALLEE = "callee"


class DeclineReason(str, Enum):
    """Why the callee declined; TIMEOUT is recorded as a missed call."""

    USER = "user"
    TIMEOUT = "timeout"
    BUSY = "busy"


TERMINAL_STATUSES: FrozenSet[CallStatus] = frozenset(
    {CallStatus.DECLINED, CallStatus.CANCELLED, CallStatus.ENDED, CallStatus.MISSED}
)

# dialing -> ringing -> {accepted, declined, cancelled, missed}; accepted -> ended.
# The callee may answer straight from dialing when its ringing mark never landed.
ALLOWED_TRANSITIONS: Dict[CallStatus, FrozenSet[CallStatus]] = {
    CallStatus.DIALING: frozenset(
        {
            CallStatus.RINGING,
            CallStatus.ACCEPTED,
            CallStatus.DECLINED,
            CallStatus.CANCELLED,
            CallStatus.MISSED,
        }
    ),
    CallStatus.RINGING: frozenset(
        {CallStatus.ACCEPTED, CallStatus.DECLINED, CallStatus.CANCELLED, CallStatus.MISSED}
    ),
    CallStatus.ACCEPTED: frozenset({CallStatus.ENDED}),
    CallStatus.DECLINED: frozenset(),
    CallStatus.CANCELLED: frozenset(),
    CallStatus.ENDED: frozenset(),
    CallStatus.MISSED: frozenset(),
}

# Which side owns each written status
STATUS_OWNERS: Dict[CallStatus, FrozenSet[ParticipantRole]] = {
    CallStatus.RINGING: frozenset({ParticipantRole.CALLEE}),
    CallStatus.ACCEPTED: frozenset({ParticipantRole.CALLEE}),
    CallStatus.DECLINED: frozenset({ParticipantRole.CALLEE}),
    CallStatus.MISSED: frozenset({ParticipantRole.CALLEE}),
    CallStatus.CANCELLED: frozenset({ParticipantRole.CALLER}),
    CallStatus.ENDED: frozenset({ParticipantRole.CALLER, ParticipantRole.CALLEE}),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: CallStatus, target: CallStatus) -> bool:
    """Return True if the state machine allows current -> target."""
    return target in ALLOWED_TRANSITIONS[current]


class _WireModel(BaseModel):
    """Base model serialising to the camelCase wire shape."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )

    def to_wire(self) -> Dict:
        return self.model_dump(mode="json", by_alias=True)


class MediaState(_WireModel):
    """Audio/video flags one participant publishes to the other."""

    audio_enabled: bool = Field(default=True, description="Microphone is live")
    video_enabled: bool = Field(default=True, description="Camera is live")


class Participant(_WireModel):
    """Identity and display data for one side of a call."""

    id: str = Field(..., description="User ID")
    name: Optional[str] = Field(default=None, description="Display name")
    avatar_url: Optional[str] = Field(default=None, description="Avatar URL")


class CallRecord(_WireModel):
    """The shared, store-persisted state of one ring attempt."""

    id: str = Field(..., description="Unique call identifier")
    caller_id: str = Field(..., description="Initiating participant")
    callee_id: str = Field(..., description="Participant being rung")
    caller_name: str = Field(default="User", description="Caller display name")
    caller_avatar: Optional[str] = Field(default=None, description="Caller avatar URL")
    callee_name: Optional[str] = Field(default=None, description="Callee display name")
    callee_avatar: Optional[str] = Field(default=None, description="Callee avatar URL")
    channel_name: str = Field(..., description="Media session token")
    type: CallType = Field(default=CallType.INSTANT, description="Instant or scheduled")
    appointment_id: Optional[str] = Field(
        default=None, description="Appointment backing a scheduled call"
    )
    status: CallStatus = Field(default=CallStatus.DIALING, description="Lifecycle status")
    caller_media: Optional[MediaState] = Field(default=None)
    callee_media: Optional[MediaState] = Field(default=None)
    created_at: Optional[datetime] = Field(default=None)
    updated_at: Optional[datetime] = Field(default=None)
    answered_at: Optional[datetime] = Field(default=None)
    ended_at: Optional[datetime] = Field(default=None)
    version: int = Field(default=0, description="Incremented by the store on every write")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_ringing(self) -> bool:
        return self.status in (CallStatus.DIALING, CallStatus.RINGING)

    def role_of(self, participant_id: str) -> Optional[ParticipantRole]:
        """Return the role of participant_id on this call, or None if not a participant."""
        if participant_id == self.caller_id:
            return ParticipantRole.CALLER
        if participant_id == self.callee_id:
            return ParticipantRole.CALLEE
        return None

    def media_for(self, role: ParticipantRole) -> Optional[MediaState]:
        if role == ParticipantRole.CALLER:
            return self.caller_media
        return self.callee_media

    def remote_media_for(self, participant_id: str) -> Optional[MediaState]:
        """Media flags of the counterparty of participant_id."""
        role = self.role_of(participant_id)
        if role == ParticipantRole.CALLER:
            return self.callee_media
        if role == ParticipantRole.CALLEE:
            return self.caller_media
        return None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str) -> "CallRecord":
        return cls.model_validate_json(data)
