"""Wiring of brokers, ledger, runner and services for one process."""

from dataclasses import dataclass

from redis.asyncio import Redis

from taskreminder.core.config import Settings
from taskreminder.jobs.base import JobResources
from taskreminder.jobs.dispatch import JobDispatcher
from taskreminder.jobs.ledger import JobLedger
from taskreminder.jobs.registry import JobRegistry, default_registry
from taskreminder.jobs.runner import JobRunner
from taskreminder.monitoring.queue_monitor import QueueMonitor
from taskreminder.notification.channels.base import NotificationSender
from taskreminder.notification.registry import default_senders
from taskreminder.queue.base import Broker
from taskreminder.queue.factory import create_broker
from taskreminder.reminders.service import ReminderService
from taskreminder.storage.database import SessionFactory
from taskreminder.storage.idempotency import UniqueJobLock


@dataclass
class AppServices:
    settings: Settings
    broker: Broker
    ledger: JobLedger
    lock: UniqueJobLock
    registry: JobRegistry
    resources: JobResources
    dispatcher: JobDispatcher
    runner: JobRunner
    reminders: ReminderService
    monitor: QueueMonitor

    async def close(self) -> None:
        for sender in self.resources.senders.values():
            await sender.close()
        await self.broker.close()


def build_services(
    settings: Settings,
    session_factory: SessionFactory,
    redis: Redis | None = None,
    broker: Broker | None = None,
    senders: dict[str, NotificationSender] | None = None,
    registry: JobRegistry | None = None,
) -> AppServices:
    """Assemble the object graph shared by the worker and the API.

    Args:
        settings: Application settings
        session_factory: Database session factory
        redis: Redis client for locks and the Redis broker (pool client when omitted)
        broker: Broker override; built from settings when omitted
        senders: Channel senders override
        registry: Job registry override

    Returns:
        Wired services
    """
    broker = broker or create_broker(settings, redis=redis)
    ledger = JobLedger(session_factory)
    lock = UniqueJobLock(redis, ttl_seconds=settings.unique_lock_ttl_seconds, prefix=settings.queue_prefix)
    registry = registry or default_registry()
    resources = JobResources(
        session_factory=session_factory,
        settings=settings,
        senders=senders if senders is not None else default_senders(settings),
    )
    dispatcher = JobDispatcher(broker, ledger, lock)
    return AppServices(
        settings=settings,
        broker=broker,
        ledger=ledger,
        lock=lock,
        registry=registry,
        resources=resources,
        dispatcher=dispatcher,
        runner=JobRunner(broker, ledger, registry, lock, resources),
        reminders=ReminderService(session_factory, dispatcher, settings),
        monitor=QueueMonitor(broker, ledger, session_factory, settings),
    )
