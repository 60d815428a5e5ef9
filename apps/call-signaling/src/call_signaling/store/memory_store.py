"""In-process call record store for tests and local development."""

import asyncio
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional, Set

from call_signaling.config import Settings
from call_signaling.models.call import CallRecord
from call_signaling.store.base import CallRecordStore, RecordMutator, RecordStream
from call_signaling.utils.errors import CallNotFoundError, StoreUnavailableError, ValidationError
from call_signaling.utils.logging import get_logger

logger = get_logger("memory_store")

_DROP = object()


class _MemoryRecordStream(RecordStream):
    """Queue-backed change feed registered on one channel."""

    def __init__(self, store: "InMemoryCallRecordStore", channel: str):
        self._store = store
        self.channel = channel
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, item) -> None:
        self._queue.put_nowait(item)

    def __aiter__(self) -> AsyncIterator[CallRecord]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[CallRecord]:
        while True:
            item = await self._queue.get()
            if item is _DROP:
                raise ConnectionError(f"Connection to {self.channel} dropped")
            yield item

    async def close(self) -> None:
        self._store._unregister(self)


class InMemoryCallRecordStore(CallRecordStore):
    """Call record store holding records in a dict.

    Writes to one record are serialised by a per-record lock and fan out to
    every open stream on the record's channel in commit order. Setting
    ``available`` to False makes every operation fail the way an unreachable
    backend would.
    """

    def __init__(self, settings: Optional[Settings] = None):
        super().__init__(settings)
        self._records: Dict[str, CallRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._streams: Dict[str, Set[_MemoryRecordStream]] = defaultdict(set)
        self.available = True

    def _check_available(self, operation: str) -> None:
        if not self.available:
            raise StoreUnavailableError(operation=operation)

    def _lock_for(self, call_id: str) -> asyncio.Lock:
        lock = self._locks.get(call_id)
        if lock is None:
            lock = self._locks[call_id] = asyncio.Lock()
        return lock

    def _publish(self, channel: str, record: CallRecord) -> None:
        for stream in list(self._streams.get(channel, ())):
            stream.push(record.model_copy(deep=True))

    def _register(self, channel: str) -> _MemoryRecordStream:
        stream = _MemoryRecordStream(self, channel)
        self._streams[channel].add(stream)
        return stream

    def _unregister(self, stream: _MemoryRecordStream) -> None:
        streams = self._streams.get(stream.channel)
        if streams is not None:
            streams.discard(stream)
            if not streams:
                del self._streams[stream.channel]

    def subscriber_count(self, channel: Optional[str] = None) -> int:
        """Number of open streams, on one channel or in total."""
        if channel is not None:
            return len(self._streams.get(channel, ()))
        return sum(len(streams) for streams in self._streams.values())

    def drop_connections(self, channel: Optional[str] = None) -> None:
        """Break open streams, on one channel or all, as if the connection was lost."""
        if channel is not None:
            targets = [self._streams.get(channel, set())]
        else:
            targets = list(self._streams.values())
        for streams in targets:
            for stream in list(streams):
                stream.push(_DROP)

    async def create(self, record: CallRecord) -> CallRecord:
        self._check_available("create")
        async with self._lock_for(record.id):
            if record.id in self._records:
                raise ValidationError(
                    message=f"Call {record.id} already exists",
                    details={"call_id": record.id},
                )
            created = self._stamp_new(record)
            self._records[record.id] = created
            self._publish(self._record_channel(record.id), created)
            self._publish(self._incoming_channel(record.callee_id), created)

        logger.debug(f"Created call record: {record.id}")
        return created.model_copy(deep=True)

    async def get(self, call_id: str) -> Optional[CallRecord]:
        self._check_available("get")
        record = self._records.get(call_id)
        return record.model_copy(deep=True) if record is not None else None

    async def update(self, call_id: str, mutate: RecordMutator) -> CallRecord:
        self._check_available("update")
        async with self._lock_for(call_id):
            current = self._records.get(call_id)
            if current is None:
                raise CallNotFoundError(call_id)

            updated = self._apply(current, mutate)
            if updated is None:
                return current.model_copy(deep=True)

            self._records[call_id] = updated
            self._publish(self._record_channel(call_id), updated)
            # Nothing can be written to a terminal record, so its lock is no longer needed
            if updated.is_terminal:
                self._locks.pop(call_id, None)

        logger.debug(f"Updated call record: {call_id} (version {updated.version})")
        return updated.model_copy(deep=True)

    async def list_ringing(self, callee_id: str) -> List[CallRecord]:
        self._check_available("list_ringing")
        records = [
            record.model_copy(deep=True)
            for record in self._records.values()
            if record.callee_id == callee_id and record.is_ringing
        ]
        return sorted(records, key=lambda record: record.created_at)

    async def _open_record_stream(self, call_id: str) -> RecordStream:
        self._check_available("subscribe")
        return self._register(self._record_channel(call_id))

    async def _open_incoming_stream(self, callee_id: str) -> RecordStream:
        self._check_available("subscribe")
        return self._register(self._incoming_channel(callee_id))

    async def ping(self) -> bool:
        return self.available

    async def close(self) -> None:
        self.available = False
        self.drop_connections()
