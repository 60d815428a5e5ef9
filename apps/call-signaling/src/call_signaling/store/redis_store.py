"""Redis-backed call record store."""

import json
from typing import AsyncIterator, List, Optional

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError
from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.client import PubSub
from redis.exceptions import WatchError

from call_signaling.config import Settings
from call_signaling.models.call import CallRecord
from call_signaling.store.base import CallRecordStore, RecordMutator, RecordStream
from call_signaling.utils.errors import (
    CallNotFoundError,
    SignalingException,
    StoreUnavailableError,
    ValidationError,
)
from call_signaling.utils.logging import get_logger

logger = get_logger("redis_store")


def create_redis_pool(settings: Settings) -> ConnectionPool:
    """Create a Redis connection pool from settings."""
    return redis.ConnectionPool.from_url(
        settings.redis.url,
        password=settings.redis.password,
        decode_responses=settings.redis.decode_responses,
        socket_timeout=settings.redis.socket_timeout,
        socket_connect_timeout=settings.redis.socket_connect_timeout,
        max_connections=settings.redis.max_connections,
    )


class _RedisRecordStream(RecordStream):
    """Change feed over a Redis pub/sub connection."""

    def __init__(self, pubsub: PubSub, channel: str):
        self._pubsub = pubsub
        self.channel = channel

    def __aiter__(self) -> AsyncIterator[CallRecord]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[CallRecord]:
        async for message in self._pubsub.listen():
            if message["type"] != "message":
                continue
            try:
                yield CallRecord.from_json(message["data"])
            except PydanticValidationError as e:
                logger.error(
                    f"Discarding malformed call record on {self.channel}",
                    extra={"channel": self.channel, "error": str(e)},
                )

    async def close(self) -> None:
        try:
            await self._pubsub.unsubscribe()
        finally:
            await self._pubsub.aclose()


class RedisCallRecordStore(CallRecordStore):
    """Call record store on Redis.

    This store handles:
    - One JSON document per call record, expiring after ``call_ttl``
    - Atomic transitions with WATCH/MULTI optimistic transactions
    - Change fan-out over pub/sub: one channel per record, one per callee
    """

    def __init__(
        self,
        redis_pool: Optional[ConnectionPool] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize the store with a Redis connection.

        Args:
            redis_pool: Optional Redis connection pool. If not provided,
                       creates a new one from settings.
            settings: Optional settings override.
        """
        super().__init__(settings)
        self.redis_pool = redis_pool or create_redis_pool(self.settings)
        self.ttl = self.settings.redis.call_ttl

    def _get_redis_client(self) -> Redis:
        """Get a Redis client from the connection pool."""
        return redis.Redis(connection_pool=self.redis_pool)

    async def create(self, record: CallRecord) -> CallRecord:
        try:
            client = self._get_redis_client()
            created = self._stamp_new(record)
            payload = created.to_json()

            inserted = await client.set(self._get_key(created.id), payload, ex=self.ttl, nx=True)
            if not inserted:
                raise ValidationError(
                    message=f"Call {created.id} already exists",
                    details={"call_id": created.id},
                )

            async with client.pipeline(transaction=True) as pipe:
                pipe.publish(self._record_channel(created.id), payload)
                pipe.publish(self._incoming_channel(created.callee_id), payload)
                await pipe.execute()

            logger.debug(f"Created call record: {created.id}")
            return created

        except SignalingException:
            raise
        except Exception as e:
            logger.error(
                f"Failed to create call record: {record.id}",
                extra={"error": str(e), "call_id": record.id},
                exc_info=True,
            )
            raise StoreUnavailableError(
                message=f"Failed to create call record: {str(e)}",
                operation="create",
                details={"call_id": record.id},
            ) from e

    async def get(self, call_id: str) -> Optional[CallRecord]:
        try:
            client = self._get_redis_client()
            data = await client.get(self._get_key(call_id))
            if data is None:
                logger.debug(f"Call record not found: {call_id}")
                return None
            return CallRecord.from_json(data)

        except (json.JSONDecodeError, PydanticValidationError) as e:
            logger.error(
                f"Failed to parse call record JSON: {call_id}",
                extra={"error": str(e)},
            )
            raise StoreUnavailableError(
                message=f"Failed to parse call record: {str(e)}",
                operation="get",
                details={"call_id": call_id},
            ) from e
        except Exception as e:
            logger.error(
                f"Failed to retrieve call record: {call_id}",
                extra={"error": str(e), "call_id": call_id},
                exc_info=True,
            )
            raise StoreUnavailableError(
                message=f"Failed to retrieve call record: {str(e)}",
                operation="get",
                details={"call_id": call_id},
            ) from e

    async def update(self, call_id: str, mutate: RecordMutator) -> CallRecord:
        key = self._get_key(call_id)
        try:
            client = self._get_redis_client()
            async with client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        data = await pipe.get(key)
                        if data is None:
                            raise CallNotFoundError(call_id)

                        current = CallRecord.from_json(data)
                        updated = self._apply(current, mutate)
                        if updated is None:
                            await pipe.unwatch()
                            return current

                        payload = updated.to_json()
                        pipe.multi()
                        pipe.set(key, payload, ex=self.ttl)
                        pipe.publish(self._record_channel(call_id), payload)
                        await pipe.execute()

                        logger.debug(f"Updated call record: {call_id} (version {updated.version})")
                        return updated

                    except WatchError:
                        # Another writer committed first; re-read and re-validate
                        logger.debug(f"Concurrent write on {call_id}, retrying")
                        continue

        except SignalingException:
            raise
        except Exception as e:
            logger.error(
                f"Failed to update call record: {call_id}",
                extra={"error": str(e), "call_id": call_id},
                exc_info=True,
            )
            raise StoreUnavailableError(
                message=f"Failed to update call record: {str(e)}",
                operation="update",
                details={"call_id": call_id},
            ) from e

    async def list_ringing(self, callee_id: str) -> List[CallRecord]:
        """Scan call keys for open calls to ``callee_id``.

        Only used to catch up after an incoming-call feed reconnects; records
        expire after ``call_ttl`` so the keyspace stays small.
        """
        pattern = f"{self.key_prefix}:call:*"
        records: List[CallRecord] = []
        try:
            client = self._get_redis_client()
            cursor = 0
            while True:
                cursor, keys = await client.scan(cursor=cursor, match=pattern, count=100)
                if keys:
                    for data in await client.mget(keys):
                        if data is None:
                            continue
                        try:
                            record = CallRecord.from_json(data)
                        except PydanticValidationError:
                            logger.warning("Skipping unparseable call record during scan")
                            continue
                        if record.callee_id == callee_id and record.is_ringing:
                            records.append(record)
                if cursor == 0:
                    break

        except Exception as e:
            logger.error(
                f"Failed to list open calls for {callee_id}",
                extra={"error": str(e), "callee_id": callee_id},
                exc_info=True,
            )
            raise StoreUnavailableError(
                message=f"Failed to list open calls: {str(e)}",
                operation="list_ringing",
                details={"callee_id": callee_id},
            ) from e

        return sorted(records, key=lambda record: record.created_at)

    async def _open_stream(self, channel: str) -> RecordStream:
        pubsub = self._get_redis_client().pubsub()
        await pubsub.subscribe(channel)
        return _RedisRecordStream(pubsub, channel)

    async def _open_record_stream(self, call_id: str) -> RecordStream:
        return await self._open_stream(self._record_channel(call_id))

    async def _open_incoming_stream(self, callee_id: str) -> RecordStream:
        return await self._open_stream(self._incoming_channel(callee_id))

    async def ping(self) -> bool:
        try:
            client = self._get_redis_client()
            return bool(await client.ping())
        except Exception as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self.redis_pool.disconnect()
