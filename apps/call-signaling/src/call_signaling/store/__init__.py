"""Call record store backends."""

from typing import Optional

from redis.asyncio import ConnectionPool

from call_signaling.config import Settings, StoreBackend
from call_signaling.store.base import CallRecordStore, Subscription
from call_signaling.store.memory_store import InMemoryCallRecordStore
from call_signaling.store.redis_store import RedisCallRecordStore, create_redis_pool


def create_store(
    settings: Settings, redis_pool: Optional[ConnectionPool] = None
) -> CallRecordStore:
    """Build the store selected by ``STORE_BACKEND``."""
    if settings.store_backend == StoreBackend.MEMORY:
        return InMemoryCallRecordStore(settings=settings)
    return RedisCallRecordStore(redis_pool=redis_pool, settings=settings)


__all__ = [
    "CallRecordStore",
    "InMemoryCallRecordStore",
    "RedisCallRecordStore",
    "Subscription",
    "create_redis_pool",
    "create_store",
]
