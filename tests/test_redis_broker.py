"""Tests for the Redis queue backend."""

import pytest

from taskreminder.core.config import QueueConfig, Settings
from taskreminder.queue.factory import create_broker
from taskreminder.queue.rabbitmq_broker import RabbitMQBroker
from taskreminder.queue.redis_broker import RedisBroker


@pytest.mark.asyncio
async def test_reserve_counts_attempt_and_leases(broker) -> None:
    job_id = await broker.enqueue("default", "noop", {"value": 1})

    envelope = await broker.reserve("default")

    assert envelope is not None
    assert envelope.id == job_id
    assert envelope.attempts == 1
    assert envelope.data == {"value": 1}
    assert await broker.pending_count("default") == 0
    assert await broker.reserved_count("default") == 1
    assert await broker.reserve("default") is None


@pytest.mark.asyncio
async def test_explicit_job_id_and_unique_id_travel_with_envelope(broker) -> None:
    job_id = await broker.enqueue("default", "noop", job_id="job_fixed", unique_id="key-1")

    envelope = await broker.reserve("default")

    assert job_id == "job_fixed"
    assert envelope.id == "job_fixed"
    assert envelope.unique_id == "key-1"


@pytest.mark.asyncio
async def test_delayed_job_invisible_until_due(broker, clock) -> None:
    await broker.enqueue("default", "noop", delay=30)

    assert await broker.pending_count("default") == 1
    assert await broker.reserve("default") is None

    clock.advance(29)
    assert await broker.reserve("default") is None

    clock.advance(1)
    envelope = await broker.reserve("default")
    assert envelope is not None
    assert envelope.attempts == 1


@pytest.mark.asyncio
async def test_ack_removes_lease(broker) -> None:
    await broker.enqueue("default", "noop")
    envelope = await broker.reserve("default")

    await broker.ack(envelope)

    assert await broker.size("default") == 0


@pytest.mark.asyncio
async def test_release_with_delay_keeps_attempt_count(broker, clock) -> None:
    await broker.enqueue("default", "noop")
    envelope = await broker.reserve("default")

    await broker.release(envelope, delay=60)

    delayed = await broker.delayed_until("default")
    assert delayed == {envelope.id: clock.now + 60}
    assert await broker.reserved_count("default") == 0

    clock.advance(60)
    again = await broker.reserve("default")
    assert again.attempts == 2


@pytest.mark.asyncio
async def test_release_without_counting_attempt(broker) -> None:
    await broker.enqueue("default", "noop")
    envelope = await broker.reserve("default")

    await broker.release(envelope, count_attempt=False)

    again = await broker.reserve("default")
    assert again.attempts == 1


@pytest.mark.asyncio
async def test_expired_lease_is_redelivered(broker, clock) -> None:
    await broker.enqueue("default", "noop")
    first = await broker.reserve("default")

    clock.advance(broker.queue_config("default").retry_after - 1)
    assert await broker.reserve("default") is None

    clock.advance(1)
    second = await broker.reserve("default")
    assert second.id == first.id
    assert second.attempts == 2


@pytest.mark.asyncio
async def test_queues_are_isolated(broker) -> None:
    await broker.enqueue("emails", "noop")

    assert await broker.reserve("default") is None
    assert await broker.pending_count("emails") == 1


def test_unknown_queue_falls_back_to_default_config() -> None:
    broker = RedisBroker({"default": QueueConfig(timeout=42)})

    assert broker.queue_config("missing").timeout == 42


def test_factory_selects_backend() -> None:
    assert isinstance(create_broker(Settings(queue_backend="redis")), RedisBroker)
    assert isinstance(create_broker(Settings(queue_backend="rabbitmq")), RabbitMQBroker)
