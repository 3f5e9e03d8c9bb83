"""Shared Redis connection pool and key layout for queues and locks."""

import redis.asyncio as redis
from redis.asyncio import Redis

from taskreminder.core.config import Settings, get_settings

_pool: redis.ConnectionPool | None = None


async def init_redis_pool(settings: Settings | None = None) -> None:
    """Create the process-wide pool; a second call is a no-op."""
    global _pool
    if _pool is None:
        settings = settings or get_settings()
        _pool = redis.ConnectionPool.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=settings.redis_max_connections,
        )


async def close_redis_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.disconnect()
        _pool = None


def get_redis() -> Redis:
    """Return a client bound to the shared pool.

    Raises:
        RuntimeError: If ``init_redis_pool`` has not been awaited.
    """
    if _pool is None:
        raise RuntimeError("Redis pool not initialized. Call init_redis_pool() first.")
    return redis.Redis(connection_pool=_pool)


class RedisKeys:
    """Key layout under a per-deployment prefix.

    A queue owns three keys: the ready list, a sorted set of delayed envelopes
    scored by visibility time, and a sorted set of leased envelopes scored by
    lease expiry.
    """

    PREFIX = "taskreminder"

    QUEUE = "{prefix}:queues:{queue}"
    QUEUE_DELAYED = "{prefix}:queues:{queue}:delayed"
    QUEUE_RESERVED = "{prefix}:queues:{queue}:reserved"
    UNIQUE_LOCK = "{prefix}:unique:{key}"

    def __init__(self, prefix: str | None = None):
        self.prefix = prefix or self.PREFIX

    def queue(self, queue: str) -> str:
        return self.QUEUE.format(prefix=self.prefix, queue=queue)

    def delayed(self, queue: str) -> str:
        return self.QUEUE_DELAYED.format(prefix=self.prefix, queue=queue)

    def reserved(self, queue: str) -> str:
        return self.QUEUE_RESERVED.format(prefix=self.prefix, queue=queue)

    def unique_lock(self, key: str) -> str:
        return self.UNIQUE_LOCK.format(prefix=self.prefix, key=key)
