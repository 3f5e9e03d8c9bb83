"""RabbitMQ queue backend."""

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)

from taskreminder.core.config import QueueConfig, get_settings
from taskreminder.core.logging import get_logger
from taskreminder.queue.base import Broker, JobEnvelope

logger = get_logger(__name__)

# Holding queue TTLs in seconds
DELAY_TIERS: tuple[int, ...] = (1, 5, 10, 30, 60, 300, 900, 1800, 3600)

REMAINING_DELAY_HEADER = "x-remaining-delay-ms"


def plan_delay(delay: float) -> tuple[int, int]:
    """Split a delay into a holding tier and the part left after it.

    Returns:
        ``(tier_seconds, remaining_ms)``; the tier is the largest one not
        exceeding the delay, or the smallest tier for sub-second delays
    """
    tier = DELAY_TIERS[0]
    for candidate in DELAY_TIERS:
        if candidate <= delay:
            tier = candidate
    return tier, max(0, int(round((delay - tier) * 1000)))


class RabbitMQBroker(Broker):
    """Queue backend on RabbitMQ.

    Delays go through a fixed set of holding queues per work queue, one per
    entry of ``DELAY_TIERS``, whose message TTL dead-letters expired messages
    into the work queue. A delay that no single tier matches hops: the
    remainder travels in a message header and ``reserve`` sends the message
    back through the tiers until it is spent. The holding queue names are
    therefore known up front and ``pending_count`` covers all of them.

    Leases are unacked deliveries; RabbitMQ redelivers them when the
    consumer's channel closes, so ``retry_after`` is not used by this
    backend. RabbitMQ does not expose who holds a delivery, so
    ``reserved_count`` only sees this process and the queue monitor takes
    processing counts from the job ledger instead.
    """

    tracks_leases = False

    def __init__(self, queues: dict[str, QueueConfig], url: str | None = None, prefix: str | None = None):
        super().__init__(queues)
        settings = get_settings()
        self._url = url or settings.rabbitmq_url
        self._prefix = prefix or settings.queue_prefix
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._declared: dict[str, AbstractQueue] = {}
        self._leases: dict[str, AbstractIncomingMessage] = {}

    async def connect(self) -> None:
        """Connect to RabbitMQ."""
        if self._connection is None:
            self._connection = await aio_pika.connect_robust(self._url, reconnect_interval=5)
            self._channel = await self._connection.channel()
            await self._channel.set_qos(prefetch_count=10)
            logger.info("Connected to RabbitMQ")

    async def close(self) -> None:
        """Disconnect from RabbitMQ."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            self._channel = None
            self._declared.clear()
            logger.info("Disconnected from RabbitMQ")

    def work_queue_name(self, queue: str) -> str:
        return f"{self._prefix}.{queue}"

    def delay_queue_name(self, queue: str, tier: int) -> str:
        return f"{self._prefix}.{queue}.delay.{tier}s"

    def delay_queue_names(self, queue: str) -> list[str]:
        """Every holding queue that can hold messages for ``queue``."""
        return [self.delay_queue_name(queue, tier) for tier in DELAY_TIERS]

    async def _get_channel(self) -> AbstractChannel:
        await self.connect()
        assert self._channel is not None
        return self._channel

    async def _declare_work(self, channel: AbstractChannel, queue: str) -> AbstractQueue:
        return await channel.declare_queue(self.work_queue_name(queue), durable=True)

    async def _declare_delay(self, channel: AbstractChannel, queue: str, tier: int) -> AbstractQueue:
        return await channel.declare_queue(
            self.delay_queue_name(queue, tier),
            durable=True,
            arguments={
                "x-message-ttl": tier * 1000,
                "x-dead-letter-exchange": "",
                "x-dead-letter-routing-key": self.work_queue_name(queue),
            },
        )

    async def _declare(self, queue: str) -> AbstractQueue:
        name = self.work_queue_name(queue)
        if name not in self._declared:
            self._declared[name] = await self._declare_work(await self._get_channel(), queue)
        return self._declared[name]

    async def push(self, envelope: JobEnvelope, delay: float = 0) -> str:
        """Publish an envelope, through a holding queue when delayed."""
        channel = await self._get_channel()
        await self._declare(envelope.queue)

        headers = {}
        if delay > 0:
            tier, remaining_ms = plan_delay(delay)
            name = self.delay_queue_name(envelope.queue, tier)
            if name not in self._declared:
                self._declared[name] = await self._declare_delay(channel, envelope.queue, tier)
            routing_key = name
            if remaining_ms:
                headers[REMAINING_DELAY_HEADER] = remaining_ms
        else:
            routing_key = self.work_queue_name(envelope.queue)

        await channel.default_exchange.publish(
            Message(
                body=envelope.model_dump_json().encode(),
                content_type="application/json",
                delivery_mode=DeliveryMode.PERSISTENT,
                message_id=envelope.id,
                headers=headers,
            ),
            routing_key=routing_key,
        )
        logger.debug("Job published", job_id=envelope.id, queue=envelope.queue, delay=delay)
        return envelope.id

    async def reserve(self, queue: str) -> JobEnvelope | None:
        """Fetch one unacked message from the work queue."""
        work_queue = await self._declare(queue)
        while True:
            message = await work_queue.get(no_ack=False, fail=False)
            if message is None:
                return None

            envelope = JobEnvelope.model_validate_json(message.body)
            remaining_ms = int((message.headers or {}).get(REMAINING_DELAY_HEADER) or 0)
            if remaining_ms > 0:
                # Not visible yet, send it through the next tier
                await self.push(envelope, delay=remaining_ms / 1000)
                await message.ack()
                continue

            envelope.attempts += 1
            self._leases[envelope.id] = message
            return envelope

    async def ack(self, envelope: JobEnvelope) -> None:
        """Acknowledge the delivery."""
        message = self._leases.pop(envelope.id, None)
        if message is not None:
            await message.ack()

    async def release(self, envelope: JobEnvelope, delay: float = 0, count_attempt: bool = True) -> None:
        """Republish the envelope with its attempt count, then ack the delivery."""
        if not count_attempt:
            envelope.attempts = max(0, envelope.attempts - 1)
        await self.push(envelope, delay=delay)
        await self.ack(envelope)

    async def pending_count(self, queue: str) -> int:
        """Ready messages in the work queue plus every holding queue."""
        channel = await self._get_channel()
        declared = [await self._declare_work(channel, queue)]
        for tier in DELAY_TIERS:
            declared.append(await self._declare_delay(channel, queue, tier))
        return sum(q.declaration_result.message_count or 0 for q in declared)

    async def reserved_count(self, queue: str) -> int:
        """Unacked deliveries held by this process."""
        return sum(1 for message in self._leases.values() if message.routing_key == self.work_queue_name(queue))
