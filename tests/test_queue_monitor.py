"""Tests for queue monitoring and failed-job remediation."""

from datetime import timedelta
from typing import Any, ClassVar

import pytest
from sqlalchemy import update

from taskreminder.jobs.base import Job, JobExecutionContext
from taskreminder.jobs.registry import JobRegistry
from taskreminder.models.job import JobOutcome, JobStatus
from taskreminder.storage.tables import FailedJob, JobStatusRecord, utcnow


class BrokenJob(Job):
    job_type: ClassVar[str] = "broken"
    max_attempts: ClassVar[int | None] = 1

    def to_payload(self) -> dict[str, Any]:
        return {}

    async def execute(self, ctx: JobExecutionContext) -> dict[str, Any] | None:
        raise RuntimeError("always broken")


class QuickJob(Job):
    job_type: ClassVar[str] = "quick"

    def to_payload(self) -> dict[str, Any]:
        return {}

    async def execute(self, ctx: JobExecutionContext) -> dict[str, Any] | None:
        return {"ok": True}


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry(BrokenJob, QuickJob)


async def fail_one(services) -> str:
    job_id = await services.dispatcher.dispatch(BrokenJob())
    outcome = await services.runner.run(await services.broker.reserve("default"))
    assert outcome == JobOutcome.FAILED
    return job_id


@pytest.mark.asyncio
async def test_queue_status_counts_pending_and_processing(services) -> None:
    await services.dispatcher.dispatch(QuickJob())
    await services.dispatcher.dispatch(QuickJob())
    await services.broker.reserve("default")

    status = await services.monitor.queue_status()

    assert status["default"] == {"pending": 1, "processing": 1}
    assert status["emails"] == {"pending": 0, "processing": 0}
    assert status["total"] == {"pending": 1, "processing": 1}
    assert await services.monitor.total_depth() == 1


@pytest.mark.asyncio
async def test_processing_from_ledger_when_broker_cannot_see_leases(services) -> None:
    services.broker.tracks_leases = False
    job_id = await services.dispatcher.dispatch(QuickJob())
    await services.dispatcher.dispatch(QuickJob())
    await services.ledger.mark_processing(job_id)

    status = await services.monitor.queue_status()

    assert status["default"] == {"pending": 2, "processing": 1}
    assert status["emails"] == {"pending": 0, "processing": 0}


@pytest.mark.asyncio
async def test_job_status_stats_and_stuck_detection(services, session_factory) -> None:
    job_id = await services.dispatcher.dispatch(QuickJob())
    await services.ledger.mark_processing(job_id)

    assert await services.monitor.is_healthy() is True

    async with session_factory() as session:
        await session.execute(
            update(JobStatusRecord)
            .where(JobStatusRecord.job_id == job_id)
            .values(started_at=utcnow() - timedelta(hours=2))
        )
        await session.commit()

    stats = await services.monitor.job_status_stats()
    assert stats["processing"] == 1
    assert stats["completed"] == 0
    assert stats["stuck"] == 1
    assert await services.monitor.is_healthy() is False


@pytest.mark.asyncio
async def test_failed_job_retry_resets_attempts(services) -> None:
    job_id = await fail_one(services)
    assert (await services.monitor.failed_job_stats())["total"] == 1

    assert await services.monitor.retry_failed_job(job_id) is True

    record = await services.ledger.get(job_id)
    assert record.status == JobStatus.PENDING
    assert record.attempts == 0
    assert (await services.monitor.failed_job_stats())["total"] == 0
    envelope = await services.broker.reserve("default")
    assert envelope.id == job_id
    assert envelope.attempts == 1
    assert await services.monitor.retry_failed_job("job_missing") is False


@pytest.mark.asyncio
async def test_retry_all_respects_window(services, session_factory) -> None:
    recent = await fail_one(services)
    old = await fail_one(services)
    async with session_factory() as session:
        await session.execute(
            update(FailedJob).where(FailedJob.uuid == old).values(failed_at=utcnow() - timedelta(hours=30))
        )
        await session.commit()

    assert await services.monitor.retry_all_failed_jobs(since_hours=24) == 1
    assert (await services.ledger.get(recent)).status == JobStatus.PENDING
    assert (await services.ledger.get(old)).status == JobStatus.FAILED

    assert await services.monitor.retry_all_failed_jobs(since_hours=0) == 1
    assert (await services.ledger.get(old)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_clear_old_failed_jobs(services, session_factory) -> None:
    await fail_one(services)
    old = await fail_one(services)
    async with session_factory() as session:
        await session.execute(
            update(FailedJob).where(FailedJob.uuid == old).values(failed_at=utcnow() - timedelta(hours=48))
        )
        await session.commit()

    assert await services.monitor.clear_old_failed_jobs(hours=24) == 1
    stats = await services.monitor.failed_job_stats()
    assert stats == {"total": 1, "last_24h": 1, "last_1h": 1}


@pytest.mark.asyncio
async def test_performance_metrics(services) -> None:
    assert (await services.monitor.performance_metrics())["count"] == 0

    await services.dispatcher.dispatch(QuickJob())
    await services.runner.run(await services.broker.reserve("default"))

    metrics = await services.monitor.performance_metrics()
    assert metrics["count"] == 1
    assert metrics["min"] <= metrics["median"] <= metrics["max"]


@pytest.mark.asyncio
async def test_monitor_and_alert_snapshot(services, settings) -> None:
    settings.pending_alert_threshold = 0
    await services.dispatcher.dispatch(QuickJob())

    snapshot = await services.monitor.monitor_and_alert()

    assert snapshot["healthy"] is True
    assert snapshot["queues"]["total"]["pending"] == 1
    assert set(snapshot) == {"timestamp", "queues", "job_stats", "failed_jobs", "performance", "healthy"}
