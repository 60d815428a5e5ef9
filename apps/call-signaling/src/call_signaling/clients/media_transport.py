"""Media transport boundary.

The transport that carries audio/video is external. Call flows only hand it
a channel name once a record reaches ``accepted`` and release it on exit.
"""

from abc import ABC, abstractmethod
from typing import Any


class MediaTransport(ABC):
    """Opaque media session provider."""

    @abstractmethod
    async def join(self, channel_name: str, local_identity: str) -> Any:
        """Join ``channel_name`` as ``local_identity`` and return a session handle."""

    @abstractmethod
    async def leave(self, handle: Any) -> None:
        """Leave the session identified by ``handle``."""
