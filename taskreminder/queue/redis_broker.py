"""Redis queue backend."""

import time
from typing import Callable

from redis.asyncio import Redis

from taskreminder.core.config import QueueConfig
from taskreminder.core.logging import get_logger
from taskreminder.queue.base import Broker, JobEnvelope
from taskreminder.storage.redis_client import RedisKeys, get_redis

logger = get_logger(__name__)


class RedisBroker(Broker):
    """Queue backend on Redis lists and sorted sets.

    Each queue owns three keys: a ready list (LPUSH in, RPOP out), a delayed
    sorted set scored by the time the job becomes visible, and a reserved
    sorted set scored by lease expiry. Moving a member between keys only
    happens after a successful ZREM, so concurrent consumers never both
    migrate the same member.
    """

    def __init__(
        self,
        queues: dict[str, QueueConfig],
        redis: Redis | None = None,
        prefix: str = RedisKeys.PREFIX,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(queues)
        self._redis = redis
        self._keys = RedisKeys(prefix)
        self._clock = clock
        # Serialized form of each envelope as stored in the reserved set
        self._leases: dict[str, str] = {}

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def push(self, envelope: JobEnvelope, delay: float = 0) -> str:
        """Push an envelope onto its queue."""
        payload = envelope.model_dump_json()
        if delay > 0:
            await self.redis.zadd(
                self._keys.delayed(envelope.queue),
                {payload: self._clock() + delay},
            )
        else:
            await self.redis.lpush(self._keys.queue(envelope.queue), payload)

        logger.debug(
            "Job pushed",
            job_id=envelope.id,
            job_type=envelope.job_type,
            queue=envelope.queue,
            delay=delay,
        )
        return envelope.id

    async def reserve(self, queue: str) -> JobEnvelope | None:
        """Lease the next ready envelope.

        Args:
            queue: Queue to read from

        Returns:
            Leased envelope with its attempt count incremented, or None
        """
        now = self._clock()
        await self._migrate(self._keys.delayed(queue), queue, now)
        await self._migrate(self._keys.reserved(queue), queue, now)

        raw = await self.redis.rpop(self._keys.queue(queue))
        if raw is None:
            return None

        envelope = JobEnvelope.model_validate_json(raw)
        envelope.attempts += 1
        leased = envelope.model_dump_json()
        retry_after = self.queue_config(queue).retry_after
        await self.redis.zadd(self._keys.reserved(queue), {leased: now + retry_after})
        self._leases[envelope.id] = leased
        return envelope

    async def ack(self, envelope: JobEnvelope) -> None:
        """Delete a leased envelope."""
        leased = self._leases.pop(envelope.id, None)
        if leased is not None:
            await self.redis.zrem(self._keys.reserved(envelope.queue), leased)

    async def release(self, envelope: JobEnvelope, delay: float = 0, count_attempt: bool = True) -> None:
        """Put a leased envelope back, visible after ``delay`` seconds."""
        leased = self._leases.pop(envelope.id, None)
        if not count_attempt:
            envelope.attempts = max(0, envelope.attempts - 1)

        payload = envelope.model_dump_json()
        async with self.redis.pipeline(transaction=True) as pipe:
            if leased is not None:
                pipe.zrem(self._keys.reserved(envelope.queue), leased)
            if delay > 0:
                pipe.zadd(self._keys.delayed(envelope.queue), {payload: self._clock() + delay})
            else:
                pipe.lpush(self._keys.queue(envelope.queue), payload)
            await pipe.execute()

    async def pending_count(self, queue: str) -> int:
        """Ready plus delayed jobs."""
        ready = await self.redis.llen(self._keys.queue(queue))
        delayed = await self.redis.zcard(self._keys.delayed(queue))
        return int(ready) + int(delayed)

    async def reserved_count(self, queue: str) -> int:
        """Leased jobs."""
        return int(await self.redis.zcard(self._keys.reserved(queue)))

    async def delayed_until(self, queue: str) -> dict[str, float]:
        """Map job id to the time it becomes visible, for delayed jobs."""
        members = await self.redis.zrange(self._keys.delayed(queue), 0, -1, withscores=True)
        return {
            JobEnvelope.model_validate_json(raw).id: score
            for raw, score in members
        }

    async def _migrate(self, source: str, queue: str, now: float) -> None:
        """Move members whose score has passed from a sorted set to the ready list."""
        due = await self.redis.zrangebyscore(source, "-inf", now)
        for raw in due:
            if await self.redis.zrem(source, raw):
                await self.redis.lpush(self._keys.queue(queue), raw)

