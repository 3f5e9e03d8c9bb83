"""Tests for memory-bounded chunked execution."""

from typing import Any

import pytest

from taskreminder.jobs import chunked
from taskreminder.jobs.base import ContextAction, JobExecutionContext, JobResources
from taskreminder.jobs.chunked import ChunkedJobEngine, ChunkedProcessor, HeavyJob
from taskreminder.jobs.ledger import JobLedger
from taskreminder.jobs.report import build_processor
from taskreminder.models.job import JobOutcome, JobStatus
from taskreminder.queue.base import JobEnvelope


class Sampler:
    def __init__(self, value: float):
        self.value = value
        self.calls = 0

    def __call__(self) -> float:
        self.calls += 1
        return self.value


class ListProcessor(ChunkedProcessor):
    """Sums fixed-size chunks of an in-memory list."""

    def __init__(self, items: list[int], on_chunk: Any = None):
        self.items = items
        self.seen: list[list[int]] = []
        self.on_chunk = on_chunk

    async def total_item_count(self) -> int:
        return len(self.items)

    async def fetch_items(self, offset: int, limit: int) -> list[int]:
        return self.items[offset:offset + limit]

    async def process_chunk(self, items: list[int]) -> list[int]:
        self.seen.append(list(items))
        if self.on_chunk:
            self.on_chunk(len(self.seen))
        return [sum(items)]

    async def summarize(self, results: list[int]) -> int:
        return sum(results)


@pytest.fixture
def ledger(session_factory) -> JobLedger:
    return JobLedger(session_factory)


async def make_context(ledger, session_factory, settings, job_id: str = "job_heavy") -> JobExecutionContext:
    envelope = JobEnvelope(id=job_id, job_type="heavy", queue="heavy", attempts=1)
    await ledger.create("heavy", "heavy", job_id=job_id)
    return JobExecutionContext(envelope, ledger, JobResources(session_factory=session_factory, settings=settings))


@pytest.mark.asyncio
async def test_processes_all_chunks_with_progress(ledger, session_factory, settings) -> None:
    ctx = await make_context(ledger, session_factory, settings)
    processor = ListProcessor(list(range(1, 11)))

    result = await ChunkedJobEngine(processor, ctx, chunk_size=3, memory_sampler=Sampler(100)).run()

    assert processor.seen == [[1, 2, 3], [4, 5, 6], [7, 8, 9], [10]]
    assert result["total_items"] == 10
    assert result["processed_items"] == 10
    assert result["results"] == [6, 15, 24, 10]
    assert result["summary"] == 55
    assert result["memory_peak_mb"] == 100
    assert (await ledger.get("job_heavy")).progress == 100
    assert (await ledger.get_checkpoint("job_heavy"))["offset"] == 10


@pytest.mark.asyncio
async def test_empty_workload_completes(ledger, session_factory, settings) -> None:
    ctx = await make_context(ledger, session_factory, settings)

    result = await ChunkedJobEngine(ListProcessor([]), ctx, memory_sampler=Sampler(100)).run()

    assert result["processed_items"] == 0
    assert result["summary"] == 0


@pytest.mark.asyncio
async def test_memory_pressure_collects_then_yields(ledger, session_factory, settings, monkeypatch) -> None:
    collected = []
    monkeypatch.setattr(chunked.gc, "collect", lambda: collected.append(True) or 0)
    ctx = await make_context(ledger, session_factory, settings)
    sampler = Sampler(520)
    processor = ListProcessor(list(range(10)))

    result = await ChunkedJobEngine(
        processor, ctx, chunk_size=2, memory_limit_mb=512, release_delay=60, memory_sampler=sampler
    ).run()

    assert result is None
    assert collected == [True]
    assert sampler.calls == 2
    assert processor.seen == []
    assert ctx.action == ContextAction.RELEASE
    assert ctx.delay == 60
    assert (await ledger.get_checkpoint("job_heavy"))["offset"] == 0


@pytest.mark.asyncio
async def test_garbage_collection_can_avert_yield(ledger, session_factory, settings, monkeypatch) -> None:
    samples = iter([600, 300, 300, 300])
    monkeypatch.setattr(chunked.gc, "collect", lambda: 0)
    ctx = await make_context(ledger, session_factory, settings)

    result = await ChunkedJobEngine(
        ListProcessor([1, 2]), ctx, chunk_size=2, memory_limit_mb=512, memory_sampler=lambda: next(samples)
    ).run()

    assert result["processed_items"] == 2
    assert result["memory_peak_mb"] == 600
    assert ctx.action is None


@pytest.mark.asyncio
async def test_resumes_from_checkpoint_after_yield(ledger, session_factory, settings) -> None:
    sampler = Sampler(100)

    def pressure_after_second_chunk(chunks_done: int) -> None:
        if chunks_done == 2:
            sampler.value = 600

    first_ctx = await make_context(ledger, session_factory, settings)
    first = ListProcessor(list(range(1, 11)), on_chunk=pressure_after_second_chunk)
    assert await ChunkedJobEngine(first, first_ctx, chunk_size=2, memory_sampler=sampler).run() is None

    checkpoint = await ledger.get_checkpoint("job_heavy")
    assert checkpoint["offset"] == 4
    assert checkpoint["chunk_index"] == 2
    assert checkpoint["results"] == [3, 7]
    assert (await ledger.get("job_heavy")).progress == 40

    sampler.value = 100
    second_ctx = await make_context(ledger, session_factory, settings)
    second = ListProcessor(list(range(1, 11)))
    result = await ChunkedJobEngine(second, second_ctx, chunk_size=2, memory_sampler=sampler).run()

    assert second.seen[0] == [5, 6]
    assert result["processed_items"] == 10
    assert result["results"] == [3, 7, 11, 15, 19]
    assert result["summary"] == 55
    assert result["memory_peak_mb"] == 600


@pytest.mark.asyncio
async def test_heavy_job_yield_is_not_a_failure(services, seed, clock) -> None:
    services.resources.memory_sampler = lambda: 520.0
    user = await seed.user()
    await seed.log(await seed.rule(await seed.task(user)))
    job_id = await services.dispatcher.dispatch(HeavyJob("delivery_report"))

    envelope = await services.broker.reserve("heavy")
    outcome = await services.runner.run(envelope)
    record = await services.ledger.get(job_id)

    assert outcome == JobOutcome.RELEASED
    assert record.status == JobStatus.PENDING
    assert record.error_message is None
    assert await services.broker.delayed_until("heavy") == {job_id: clock.now + 60}

    clock.advance(60)
    again = await services.broker.reserve("heavy")
    assert again.attempts == 1


@pytest.mark.asyncio
async def test_delivery_report_job_summarizes_logs(services, seed) -> None:
    services.resources.memory_sampler = lambda: 100.0
    user = await seed.user()
    task = await seed.task(user)
    rule = await seed.rule(task)
    await seed.log(rule, status="sent")
    await seed.log(rule, status="sent")
    await seed.log(rule, status="failed")
    await seed.log(rule, status="sent", channel="in_app")
    job_id = await services.dispatcher.dispatch(HeavyJob("delivery_report", {"user_id": user.id}))

    outcome = await services.runner.run(await services.broker.reserve("heavy"))
    record = await services.ledger.get(job_id)

    assert outcome == JobOutcome.COMPLETED
    assert record.result["total_items"] == 4
    assert record.result["summary"] == {"email": {"failed": 1, "sent": 2}, "in_app": {"sent": 1}}


def test_unknown_processor_rejected() -> None:
    with pytest.raises(ValueError):
        build_processor("nope", {}, None)


@pytest.mark.asyncio
async def test_report_checkpoint_stays_one_row_per_pair(services, seed) -> None:
    services.resources.memory_sampler = lambda: 100.0
    user = await seed.user()
    rule = await seed.rule(await seed.task(user))
    for _ in range(7):
        await seed.log(rule, status="sent")
    job_id = await services.dispatcher.dispatch(HeavyJob("delivery_report", {"user_id": user.id}))

    outcome = await services.runner.run(await services.broker.reserve("heavy"))
    checkpoint = await services.ledger.get_checkpoint(job_id)

    assert outcome == JobOutcome.COMPLETED
    assert checkpoint["chunk_index"] == 4
    assert checkpoint["results"] == [{"channel": "email", "status": "sent", "count": 7}]
    assert (await services.ledger.get(job_id)).result["summary"] == {"email": {"sent": 7}}
