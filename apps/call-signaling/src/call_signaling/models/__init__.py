"""Data models for call records and candidates."""

from call_signaling.models.call import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    CallRecord,
    CallStatus,
    CallType,
    DeclineReason,
    MediaState,
    Participant,
    ParticipantRole,
    can_transition,
)
from call_signaling.models.candidate import Candidate, RankRequest

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "CallRecord",
    "CallStatus",
    "CallType",
    "Candidate",
    "DeclineReason",
    "MediaState",
    "Participant",
    "ParticipantRole",
    "RankRequest",
    "can_transition",
]
