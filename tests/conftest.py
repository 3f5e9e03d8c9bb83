"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime, timedelta
from typing import Any, AsyncIterator

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis

from taskreminder.core.config import Settings
from taskreminder.core.exceptions import DeliveryError
from taskreminder.jobs.registry import JobRegistry, default_registry
from taskreminder.notification.channels.base import NotificationSender
from taskreminder.notification.message import ReminderMessage
from taskreminder.queue.redis_broker import RedisBroker
from taskreminder.services import AppServices, build_services
from taskreminder.storage.database import SessionFactory, create_engine, create_schema, create_session_factory
from taskreminder.storage.tables import NotificationLog, NotificationRule, Task, User, utcnow


class FakeClock:
    """Controllable wall clock for the Redis broker."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSender(NotificationSender):
    """Sender that records messages and optionally fails."""

    def __init__(self, channel: str, error: str | None = None, delay: float = 0):
        self._channel = channel
        self.error = error
        self.delay = delay
        self.sent: list[ReminderMessage] = []

    @property
    def channel_type(self) -> str:
        return self._channel

    async def send(self, message: ReminderMessage) -> dict[str, Any]:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise DeliveryError(self._channel, self.error)
        self.sent.append(message)
        return {"provider_id": f"{self._channel}-{len(self.sent)}"}


class Seeder:
    """Inserts users, tasks, rules and delivery logs."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory
        self._counter = 0

    async def _add(self, obj: Any) -> Any:
        async with self._session_factory() as session:
            session.add(obj)
            await session.commit()
            await session.refresh(obj)
        return obj

    async def user(self, name: str = "Ada") -> User:
        self._counter += 1
        return await self._add(User(email=f"user{self._counter}@example.com", name=name))

    async def task(
        self,
        user: User,
        due_in: timedelta | None = timedelta(minutes=30),
        title: str = "Write report",
        now: datetime | None = None,
    ) -> Task:
        due_date = (now or utcnow()) + due_in if due_in is not None else None
        return await self._add(Task(user_id=user.id, title=title, due_date=due_date))

    async def rule(
        self,
        task: Task,
        channel: str = "email",
        offset: int = 30,
        unit: str = "minutes",
        enabled: bool = True,
        last_sent_at: datetime | None = None,
    ) -> NotificationRule:
        return await self._add(
            NotificationRule(
                user_id=task.user_id,
                task_id=task.id,
                channel=channel,
                reminder_offset=offset,
                reminder_unit=unit,
                is_enabled=enabled,
                last_sent_at=last_sent_at,
            )
        )

    async def log(
        self,
        rule: NotificationRule,
        status: str = "sent",
        sent_at: datetime | None = None,
        channel: str | None = None,
    ) -> NotificationLog:
        return await self._add(
            NotificationLog(
                notification_rule_id=rule.id,
                user_id=rule.user_id,
                task_id=rule.task_id,
                channel=channel or rule.channel,
                status=status,
                sent_at=sent_at,
                details={},
            )
        )


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite database."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'taskreminder.db'}",
        queue_prefix="test",
        worker_poll_interval=0.01,
        heavy_chunk_size=2,
        heavy_memory_limit_mb=512,
        heavy_memory_release_delay=60,
    )


@pytest_asyncio.fixture
async def redis_client() -> AsyncIterator[FakeAsyncRedis]:
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def session_factory(settings: Settings) -> AsyncIterator[SessionFactory]:
    engine = create_engine(settings.database_url)
    await create_schema(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def broker(settings: Settings, redis_client: FakeAsyncRedis, clock: FakeClock) -> RedisBroker:
    return RedisBroker(settings.queues, redis=redis_client, prefix=settings.queue_prefix, clock=clock)


@pytest.fixture
def senders() -> dict[str, FakeSender]:
    return {"email": FakeSender("email"), "in_app": FakeSender("in_app")}


@pytest.fixture
def registry() -> JobRegistry:
    return default_registry()


@pytest.fixture
def services(
    settings: Settings,
    session_factory: SessionFactory,
    redis_client: FakeAsyncRedis,
    broker: RedisBroker,
    senders: dict[str, FakeSender],
    registry: JobRegistry,
) -> AppServices:
    return build_services(
        settings,
        session_factory,
        redis=redis_client,
        broker=broker,
        senders=senders,
        registry=registry,
    )


@pytest.fixture
def seed(session_factory: SessionFactory) -> Seeder:
    return Seeder(session_factory)
