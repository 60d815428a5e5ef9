"""Call record store interface and live subscriptions.

A store persists one document per call record and pushes every committed
write to subscribers. Backends only have to provide atomic read-modify-write
and a raw change stream; reconnect, backoff, catch-up and duplicate
suppression live in :class:`Subscription` so every backend behaves the same.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from call_signaling.config import Settings, get_settings
from call_signaling.models.call import CallRecord, utc_now
from call_signaling.utils.errors import (
    SignalingException,
    StoreUnavailableError,
    SubscriptionLostError,
)
from call_signaling.utils.logging import get_logger

logger = get_logger("store")

RecordHandler = Callable[[CallRecord], Awaitable[None]]
LostHandler = Callable[[SubscriptionLostError], Awaitable[None]]
# Applied to a copy of the current record inside the store's atomic section.
# Returns the updated record, or None to leave the record untouched.
RecordMutator = Callable[[CallRecord], Optional[CallRecord]]


class RecordStream(ABC):
    """Raw change feed for one channel, as opened by a backend."""

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[CallRecord]:
        """Yield records as they are published; raise when the connection drops."""

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying connection."""


StreamOpener = Callable[[], Awaitable[RecordStream]]
# Records committed while the feed was down, re-read after (re)subscribing
CatchUp = Callable[[], Awaitable[List[CallRecord]]]


class Subscription:
    """Handle for a live subscription; ``close()`` unsubscribes.

    Deliveries run on a background reader task. When the feed drops, the
    subscription reconnects with exponential backoff and runs ``catch_up``
    so no change committed during the outage is missed. With
    ``catch_up_on_start`` the same read also runs once after the first
    subscribe. After ``retry_attempts`` consecutive failures ``on_lost``
    receives a :class:`SubscriptionLostError` and the subscription closes
    itself.
    """

    def __init__(
        self,
        channel: str,
        open_stream: StreamOpener,
        handler: RecordHandler,
        on_lost: Optional[LostHandler] = None,
        catch_up: Optional[CatchUp] = None,
        catch_up_on_start: bool = True,
        retry_attempts: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
    ):
        self.channel = channel
        self._open_stream = open_stream
        self._handler = handler
        self._on_lost = on_lost
        self._catch_up = catch_up
        self._catch_up_on_start = catch_up_on_start
        self.retry_attempts = retry_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

        self._stream: Optional[RecordStream] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _should_deliver(self, record: CallRecord) -> bool:
        return True

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt number ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def start(self) -> "Subscription":
        """Open the feed and start delivering.

        Raises:
            StoreUnavailableError: If the initial subscribe fails.
        """
        try:
            self._stream = await self._open_stream()
        except SignalingException:
            raise
        except Exception as e:
            logger.error(
                f"Failed to subscribe to {self.channel}",
                extra={"channel": self.channel, "error": str(e)},
                exc_info=True,
            )
            raise StoreUnavailableError(
                message=f"Failed to subscribe: {str(e)}",
                operation="subscribe",
                details={"channel": self.channel},
            ) from e

        self._task = asyncio.create_task(self._run(), name=f"subscription:{self.channel}")
        logger.debug(f"Subscribed to {self.channel}")
        return self

    async def close(self) -> None:
        """Unsubscribe. Safe to call more than once, including from a handler."""
        if self._closed and self._task is None and self._stream is None:
            return
        self._closed = True

        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._close_stream()
        logger.debug(f"Unsubscribed from {self.channel}")

    async def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            await stream.close()
        except Exception as e:
            logger.debug(f"Error closing stream for {self.channel}: {e}")

    async def _run(self) -> None:
        failures = 0
        resubscribed = False
        while not self._closed:
            try:
                if self._stream is None:
                    self._stream = await self._open_stream()
                    resubscribed = True
                    logger.info(
                        f"Resubscribed to {self.channel}",
                        extra={"channel": self.channel, "attempt": failures},
                    )

                if self._catch_up is not None and (resubscribed or self._catch_up_on_start):
                    for current in await self._catch_up():
                        await self._deliver(current)
                        if self._closed:
                            return
                failures = 0

                async for record in self._stream:
                    await self._deliver(record)
                    if self._closed:
                        return

                if self._closed:
                    return
                raise ConnectionError(f"Change feed for {self.channel} ended")

            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._closed:
                    return
                await self._close_stream()
                failures += 1
                if failures > self.retry_attempts:
                    await self._report_lost(e)
                    return

                delay = self.backoff_delay(failures)
                logger.warning(
                    f"Subscription to {self.channel} dropped, retrying in {delay:.2f}s",
                    extra={
                        "channel": self.channel,
                        "attempt": failures,
                        "max_attempts": self.retry_attempts,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(delay)

    async def _deliver(self, record: CallRecord) -> None:
        if self._closed or not self._should_deliver(record):
            return
        try:
            await self._handler(record)
        except Exception as e:
            logger.error(
                f"Subscription handler failed for {self.channel}",
                extra={"channel": self.channel, "call_id": record.id, "error": str(e)},
                exc_info=True,
            )

    async def _report_lost(self, cause: Exception) -> None:
        self._closed = True
        self._task = None
        error = SubscriptionLostError(channel=self.channel, attempts=self.retry_attempts)
        logger.error(
            f"Subscription to {self.channel} lost",
            extra={"channel": self.channel, "error": str(cause)},
        )
        if self._on_lost is None:
            return
        try:
            await self._on_lost(error)
        except Exception as e:
            logger.error(
                f"on_lost handler failed for {self.channel}",
                extra={"channel": self.channel, "error": str(e)},
                exc_info=True,
            )


class RecordSubscription(Subscription):
    """Subscription to one call record; delivers each version at most once."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.last_version = 0

    def _should_deliver(self, record: CallRecord) -> bool:
        if record.version <= self.last_version:
            return False
        self.last_version = record.version
        return True


class IncomingCallSubscription(Subscription):
    """Subscription to new calls for one callee; one delivery per ringing call.

    Only the most recent ``max_seen`` call ids are remembered. A call older
    than that has long been settled by its ring timeout, so it is filtered
    out as not ringing anyway.
    """

    max_seen = 256

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def _should_deliver(self, record: CallRecord) -> bool:
        if record.id in self._seen or not record.is_ringing:
            return False
        self._seen[record.id] = None
        while len(self._seen) > self.max_seen:
            self._seen.popitem(last=False)
        return True


class CallRecordStore(ABC):
    """Persistence and change notification for call records."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.key_prefix = self.settings.redis.key_prefix

    def _get_key(self, call_id: str) -> str:
        return f"{self.key_prefix}:call:{call_id}"

    def _record_channel(self, call_id: str) -> str:
        return f"{self.key_prefix}:call:{call_id}:changes"

    def _incoming_channel(self, callee_id: str) -> str:
        return f"{self.key_prefix}:incoming:{callee_id}"

    @staticmethod
    def _stamp_new(record: CallRecord) -> CallRecord:
        now = utc_now()
        return record.model_copy(update={"created_at": now, "updated_at": now, "version": 1})

    @staticmethod
    def _apply(current: CallRecord, mutate: RecordMutator) -> Optional[CallRecord]:
        """Run a mutator against a copy of ``current`` and stamp the result."""
        updated = mutate(current.model_copy(deep=True))
        if updated is None:
            return None
        updated.version = current.version + 1
        updated.updated_at = utc_now()
        return updated

    def _retry_options(self) -> Dict[str, float]:
        signaling = self.settings.signaling
        return {
            "retry_attempts": signaling.subscription_retry_attempts,
            "base_delay": signaling.subscription_retry_base_delay,
            "max_delay": signaling.subscription_retry_max_delay,
        }

    @abstractmethod
    async def create(self, record: CallRecord) -> CallRecord:
        """Insert a new record and notify the callee's incoming channel.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """

    @abstractmethod
    async def get(self, call_id: str) -> Optional[CallRecord]:
        """Point read. Returns None if the record does not exist."""

    @abstractmethod
    async def update(self, call_id: str, mutate: RecordMutator) -> CallRecord:
        """Atomically apply ``mutate`` to the stored record and publish the result.

        Exceptions raised by ``mutate`` propagate unchanged and nothing is
        written. If ``mutate`` returns None the current record is returned
        and nothing is written or published.

        Raises:
            CallNotFoundError: If the record does not exist.
            StoreUnavailableError: If the store cannot be reached.
        """

    @abstractmethod
    async def list_ringing(self, callee_id: str) -> List[CallRecord]:
        """Records for ``callee_id`` still in dialing or ringing, oldest first.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """

    async def _current(self, call_id: str) -> List[CallRecord]:
        record = await self.get(call_id)
        return [record] if record is not None else []

    @abstractmethod
    async def _open_record_stream(self, call_id: str) -> RecordStream:
        """Subscribe to changes of one record."""

    @abstractmethod
    async def _open_incoming_stream(self, callee_id: str) -> RecordStream:
        """Subscribe to records created for one callee."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the store is reachable."""

    async def close(self) -> None:
        """Release backend resources."""

    async def subscribe_record(
        self,
        call_id: str,
        on_change: RecordHandler,
        on_lost: Optional[LostHandler] = None,
    ) -> Subscription:
        """Deliver the current record, then every committed change, in order."""
        subscription = RecordSubscription(
            channel=self._record_channel(call_id),
            open_stream=lambda: self._open_record_stream(call_id),
            handler=on_change,
            on_lost=on_lost,
            catch_up=lambda: self._current(call_id),
            **self._retry_options(),
        )
        return await subscription.start()

    async def subscribe_incoming(
        self,
        callee_id: str,
        on_new_call: RecordHandler,
        on_lost: Optional[LostHandler] = None,
    ) -> Subscription:
        """Deliver each newly created, still-ringing record for ``callee_id`` once.

        Calls created while the feed was reconnecting are picked up from
        :meth:`list_ringing` once it is back.
        """
        subscription = IncomingCallSubscription(
            channel=self._incoming_channel(callee_id),
            open_stream=lambda: self._open_incoming_stream(callee_id),
            handler=on_new_call,
            on_lost=on_lost,
            catch_up=lambda: self.list_ringing(callee_id),
            catch_up_on_start=False,
            **self._retry_options(),
        )
        return await subscription.start()
