"""Idempotency locks for unique jobs."""

from redis.asyncio import Redis
from redis.exceptions import WatchError

from taskreminder.core.config import get_settings
from taskreminder.storage.redis_client import RedisKeys, get_redis


class UniqueJobLock:
    """Enqueue-time lock that keeps logically identical jobs out of the broker.

    The lock is taken with ``SET NX EX`` before enqueue, storing the id of the
    job that owns it, and released by the job runner once that job reaches a
    terminal outcome.
    """

    def __init__(self, redis: Redis | None = None, ttl_seconds: int | None = None, prefix: str | None = None):
        self._redis = redis
        settings = get_settings()
        self._ttl = ttl_seconds or settings.unique_lock_ttl_seconds
        self._keys = RedisKeys(prefix or settings.queue_prefix)

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def acquire(self, key: str, owner: str) -> bool:
        """Take the lock for a unique key.

        Args:
            key: Idempotency key
            owner: Job id stored under the lock

        Returns:
            True if newly acquired, False if another job already holds it
        """
        result = await self.redis.set(self._keys.unique_lock(key), owner, nx=True, ex=self._ttl)
        return bool(result)

    async def release(self, key: str, owner: str) -> bool:
        """Release a lock if ``owner`` still holds it.

        A job re-enqueued by an operator after its lock expired, or a lock
        re-taken by a newer job, is left untouched.

        Returns:
            True if the lock was deleted
        """
        name = self._keys.unique_lock(key)
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(name)
                if await pipe.get(name) != owner:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(name)
                await pipe.execute()
            except WatchError:
                # Changed hands between the read and the delete
                return False
        return True

    async def is_locked(self, key: str) -> bool:
        """Check whether a key is currently held."""
        return await self.redis.exists(self._keys.unique_lock(key)) > 0
