"""Tests for the job ledger."""

import pytest
from sqlalchemy import func, select

from taskreminder.jobs.ledger import JobLedger
from taskreminder.models.job import JobStatus
from taskreminder.queue.base import JobEnvelope
from taskreminder.storage.tables import FailedJob


@pytest.fixture
def ledger(session_factory) -> JobLedger:
    return JobLedger(session_factory)


@pytest.mark.asyncio
async def test_create_is_idempotent(ledger) -> None:
    first = await ledger.create("noop", "default", {"a": 1}, job_id="job_1", max_attempts=4)
    second = await ledger.create("noop", "default", {"a": 2}, job_id="job_1")

    record = await ledger.get("job_1")

    assert first == second == "job_1"
    assert record.status == JobStatus.PENDING
    assert record.payload == {"a": 1}
    assert record.max_attempts == 4
    assert record.attempts == 0
    assert record.progress == 0


@pytest.mark.asyncio
async def test_get_unknown_job_returns_none(ledger) -> None:
    assert await ledger.get("job_missing") is None


@pytest.mark.asyncio
async def test_processing_records_attempt_and_start(ledger) -> None:
    await ledger.create("noop", "default", job_id="job_1")

    await ledger.mark_processing("job_1", attempts=2)
    record = await ledger.get("job_1")

    assert record.status == JobStatus.PROCESSING
    assert record.attempts == 2
    assert record.started_at is not None
    assert record.duration_seconds is not None


@pytest.mark.asyncio
async def test_progress_never_decreases(ledger) -> None:
    await ledger.create("noop", "default", job_id="job_1")

    await ledger.update_progress("job_1", 60)
    await ledger.update_progress("job_1", 40)

    assert (await ledger.get("job_1")).progress == 60


@pytest.mark.asyncio
@pytest.mark.parametrize("percent", [-1, 101])
async def test_progress_out_of_range_rejected(ledger, percent) -> None:
    await ledger.create("noop", "default", job_id="job_1")

    with pytest.raises(ValueError):
        await ledger.update_progress("job_1", percent)


@pytest.mark.asyncio
async def test_completion_sets_full_progress_and_result(ledger) -> None:
    await ledger.create("noop", "default", job_id="job_1")
    await ledger.mark_processing("job_1")

    await ledger.mark_completed("job_1", {"sent": 3})
    record = await ledger.get("job_1")

    assert record.status == JobStatus.COMPLETED
    assert record.progress == 100
    assert record.result == {"sent": 3}
    assert record.finished_at is not None


@pytest.mark.asyncio
async def test_terminal_record_is_not_rewritten(ledger) -> None:
    await ledger.create("noop", "default", job_id="job_1")
    await ledger.mark_completed("job_1", {"ok": True})

    await ledger.mark_failed("job_1", "late failure")
    await ledger.mark_processing("job_1")
    cancelled = await ledger.cancel("job_1")
    record = await ledger.get("job_1")

    assert cancelled is False
    assert record.status == JobStatus.COMPLETED
    assert record.error_message is None


@pytest.mark.asyncio
async def test_retry_and_release_schedule_next_attempt(ledger) -> None:
    await ledger.create("noop", "default", job_id="job_1")
    await ledger.create("noop", "default", job_id="job_2")

    await ledger.mark_for_retry("job_1", 300, message="boom")
    await ledger.mark_released("job_2", 60)
    retrying = await ledger.get("job_1")
    released = await ledger.get("job_2")

    assert retrying.status == JobStatus.RETRYING
    assert retrying.error_message == "boom"
    assert retrying.next_retry_at is not None
    assert released.status == JobStatus.PENDING
    assert released.next_retry_at < retrying.next_retry_at


@pytest.mark.asyncio
async def test_cancel_and_can_retry(ledger) -> None:
    await ledger.create("noop", "default", job_id="job_1", max_attempts=2)
    await ledger.mark_processing("job_1", attempts=1)

    assert await ledger.can_retry("job_1") is True
    assert await ledger.cancel("job_1") is True
    assert (await ledger.get("job_1")).status == JobStatus.CANCELLED
    assert await ledger.can_retry("job_1") is False
    assert await ledger.can_retry("job_missing") is False


@pytest.mark.asyncio
async def test_checkpoint_round_trip(ledger) -> None:
    await ledger.create("heavy", "heavy", job_id="job_1")

    assert await ledger.get_checkpoint("job_1") is None
    await ledger.save_checkpoint("job_1", {"offset": 200, "chunk_index": 2, "results": [1, 2]})

    assert await ledger.get_checkpoint("job_1") == {"offset": 200, "chunk_index": 2, "results": [1, 2]}


@pytest.mark.asyncio
async def test_failure_record_and_reset_for_retry(ledger, session_factory) -> None:
    envelope = JobEnvelope(id="job_1", job_type="noop", queue="default", attempts=3)
    await ledger.create("noop", "default", job_id="job_1")
    try:
        raise RuntimeError("smtp down")
    except RuntimeError as e:
        await ledger.mark_failed("job_1", str(e))
        await ledger.record_failure(envelope, e)
    await ledger.record_failure(envelope, "second failure")

    async with session_factory() as session:
        failed = (await session.scalars(select(FailedJob))).all()
    assert len(failed) == 1
    assert failed[0].exception == "second failure"
    assert failed[0].payload["job_type"] == "noop"

    assert await ledger.reset_for_retry("job_1") is True
    record = await ledger.get("job_1")
    assert record.status == JobStatus.PENDING
    assert record.attempts == 0
    assert record.error_message is None
    async with session_factory() as session:
        assert await session.scalar(select(func.count(FailedJob.id))) == 0
