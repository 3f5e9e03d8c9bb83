"""Broker construction from settings."""

from redis.asyncio import Redis

from taskreminder.core.config import Settings
from taskreminder.queue.base import Broker
from taskreminder.queue.rabbitmq_broker import RabbitMQBroker
from taskreminder.queue.redis_broker import RedisBroker


def create_broker(settings: Settings, redis: Redis | None = None) -> Broker:
    """Create the configured broker backend.

    Args:
        settings: Application settings (backend choice and queue table)
        redis: Redis client for the Redis backend (pool client when omitted)

    Returns:
        Broker instance
    """
    if settings.queue_backend == "rabbitmq":
        return RabbitMQBroker(settings.queues, url=settings.rabbitmq_url, prefix=settings.queue_prefix)
    return RedisBroker(settings.queues, redis=redis, prefix=settings.queue_prefix)
