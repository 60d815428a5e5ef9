"""Pytest configuration and fixtures for call-signaling tests."""

import asyncio
import os
from typing import Any, Callable, List, Optional

import pytest

# Set environment variables before any imports that read settings
os.environ["ENVIRONMENT"] = "development"
os.environ["STORE_BACKEND"] = "memory"
os.environ["DEBUG"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ.pop("RING_TIMEOUT_SECONDS", None)
os.environ.pop("AUTO_DECLINE_SECONDS", None)

from call_signaling import config  # noqa: E402
from call_signaling.clients.availability_client import AvailabilitySource  # noqa: E402
from call_signaling.clients.media_transport import MediaTransport  # noqa: E402
from call_signaling.config import Settings  # noqa: E402
from call_signaling.models.call import Participant  # noqa: E402
from call_signaling.models.candidate import Candidate  # noqa: E402
from call_signaling.services.signaling_service import CallSignalingService  # noqa: E402
from call_signaling.store.memory_store import InMemoryCallRecordStore  # noqa: E402


class FakeMediaTransport(MediaTransport):
    """Records joins and leaves instead of opening media sessions."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.joined: List[dict] = []
        self.left: List[dict] = []

    async def join(self, channel_name: str, local_identity: str) -> Any:
        if self.fail:
            raise RuntimeError("media transport unavailable")
        handle = {"channel_name": channel_name, "identity": local_identity}
        self.joined.append(handle)
        return handle

    async def leave(self, handle: Any) -> None:
        self.left.append(handle)


class FakeAvailability(AvailabilitySource):
    """Availability source returning a fixed list, or raising."""

    def __init__(self, candidates: Optional[List[Candidate]] = None, error: Optional[Exception] = None):
        self.candidates = candidates or []
        self.error = error
        self.calls: List[Optional[str]] = []

    async def list_available(self, preference: Optional[str] = None) -> List[Candidate]:
        self.calls.append(preference)
        if self.error is not None:
            raise self.error
        return list(self.candidates)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture(autouse=True)
def reset_settings():
    """Make every test start from a freshly loaded settings object."""
    config._settings = None
    yield
    config._settings = None


@pytest.fixture
def settings():
    """Settings with fast subscription retries."""
    settings = Settings()
    settings.signaling.subscription_retry_attempts = 2
    settings.signaling.subscription_retry_base_delay = 0.01
    settings.signaling.subscription_retry_max_delay = 0.02
    return settings


@pytest.fixture
def store(settings):
    return InMemoryCallRecordStore(settings=settings)


@pytest.fixture
def signaling(store):
    return CallSignalingService(store)


@pytest.fixture
def media_transport():
    return FakeMediaTransport()


@pytest.fixture
def caller():
    return Participant(id="patient-0001", name="Pat", avatar_url="https://cdn.example.com/pat.png")


@pytest.fixture
def callee():
    return Participant(id="therapist-0001", name="Dr. Lee")
