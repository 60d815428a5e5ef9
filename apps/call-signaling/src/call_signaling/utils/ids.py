"""Short identifiers for call records and media channels.

Media providers commonly cap channel names at 64 characters, so ids are built
from the tail of each participant id, a base36 millisecond timestamp and a
random suffix instead of concatenating full user ids.
"""

import secrets
import string
import time
from typing import Optional

_BASE36 = string.digits + string.ascii_lowercase
_PARTICIPANT_TAIL = 8
_SUFFIX_LENGTH = 6
MAX_CHANNEL_NAME_LENGTH = 64


def to_base36(value: int) -> str:
    """Encode a non-negative integer in lowercase base36."""
    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def _random_suffix(length: int = _SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def _short_id(prefix: str, caller_id: str, callee_id: str, now_ms: Optional[int] = None) -> str:
    timestamp = to_base36(now_ms if now_ms is not None else int(time.time() * 1000))
    parts = [
        prefix,
        caller_id[-_PARTICIPANT_TAIL:],
        callee_id[-_PARTICIPANT_TAIL:],
        timestamp,
        _random_suffix(),
    ]
    return "-".join(part for part in parts if part)


def generate_call_id(caller_id: str, callee_id: str, now_ms: Optional[int] = None) -> str:
    """Generate a new call record id; every attempt gets a fresh one."""
    return _short_id("call", caller_id, callee_id, now_ms)


def generate_channel_name(caller_id: str, callee_id: str, now_ms: Optional[int] = None) -> str:
    """Generate a media channel name that stays under MAX_CHANNEL_NAME_LENGTH."""
    name = _short_id("ch", caller_id, callee_id, now_ms)
    return name[:MAX_CHANNEL_NAME_LENGTH]
