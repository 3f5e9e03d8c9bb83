"""Job runner: executes one reserved envelope and settles it."""

import asyncio
import time

from taskreminder.core.exceptions import UnknownJobTypeError
from taskreminder.core.logging import get_logger
from taskreminder.jobs.base import ContextAction, Job, JobExecutionContext, JobResources
from taskreminder.jobs.ledger import JobLedger, format_trace
from taskreminder.jobs.registry import JobRegistry
from taskreminder.models.job import JobOutcome, JobStatus
from taskreminder.observability.metrics import JOB_DURATION, JOB_RETRIES, JOBS_PROCESSED
from taskreminder.observability.tracing import JobLogContext
from taskreminder.queue.base import Broker, JobEnvelope
from taskreminder.storage.idempotency import UniqueJobLock

logger = get_logger(__name__)


class JobRunner:
    """Boundary between the broker and job code.

    ``run`` never raises for anything the job does: exceptions and timeouts
    are logged and turned into a retry or a terminal failure.
    """

    def __init__(
        self,
        broker: Broker,
        ledger: JobLedger,
        registry: JobRegistry,
        lock: UniqueJobLock,
        resources: JobResources,
    ):
        self._broker = broker
        self._ledger = ledger
        self._registry = registry
        self._lock = lock
        self._resources = resources

    async def run(self, envelope: JobEnvelope) -> JobOutcome:
        """Execute a reserved envelope and ack or release it.

        Args:
            envelope: Envelope leased from the broker

        Returns:
            What happened to the job
        """
        try:
            job = self._registry.build(envelope)
        except (UnknownJobTypeError, TypeError, ValueError) as e:
            logger.error("Cannot build job", job_id=envelope.id, job_type=envelope.job_type, error=str(e))
            await self._ledger.create(envelope.job_type, envelope.queue, envelope.data, job_id=envelope.id)
            await self._ledger.mark_failed(envelope.id, str(e), format_trace(e))
            await self._ledger.record_failure(envelope, e)
            await self._broker.ack(envelope)
            await self._release_lock(envelope)
            self._count(envelope, JobOutcome.FAILED)
            return JobOutcome.FAILED

        queue_config = self._broker.queue_config(envelope.queue)
        max_attempts = job.max_attempts or queue_config.max_attempts
        timeout = min(job.timeout_seconds, queue_config.timeout)

        await self._ledger.create(
            envelope.job_type,
            envelope.queue,
            envelope.data,
            job_id=envelope.id,
            max_attempts=max_attempts,
        )
        record = await self._ledger.get(envelope.id)
        if record is not None and record.status.is_terminal:
            logger.info("Skipping settled job", job_id=envelope.id, status=record.status.value)
            await self._broker.ack(envelope)
            await self._release_lock(envelope)
            self._count(envelope, JobOutcome.SKIPPED)
            return JobOutcome.SKIPPED

        with JobLogContext(envelope.id, envelope.job_type, envelope.queue, envelope.attempts):
            ctx = JobExecutionContext(envelope, self._ledger, self._resources)
            await ctx.start()
            logger.info("Job started", max_attempts=max_attempts, timeout=timeout)

            started = time.monotonic()
            error: BaseException | None = None
            result = None
            try:
                result = await asyncio.wait_for(job.execute(ctx), timeout=timeout)
            except asyncio.TimeoutError:
                error = TimeoutError(f"Job exceeded timeout of {timeout}s")
            except Exception as e:
                error = e
            duration = time.monotonic() - started
            JOB_DURATION.labels(job_class=envelope.job_type, queue=envelope.queue).observe(duration)

            if error is not None:
                outcome = await self._handle_failure(envelope, job, max_attempts, error, duration)
            elif ctx.action == ContextAction.RELEASE:
                await self._ledger.mark_released(envelope.id, ctx.delay)
                await self._broker.release(envelope, delay=ctx.delay, count_attempt=False)
                logger.info("Job released", delay=ctx.delay, duration=round(duration, 3))
                outcome = JobOutcome.RELEASED
            elif ctx.action == ContextAction.FAIL:
                outcome = await self._fail(envelope, ctx.error or "Job failed", None, duration)
            elif ctx.action == ContextAction.RETRY:
                outcome = await self._handle_failure(
                    envelope, job, max_attempts, RuntimeError(ctx.error or "Retry requested"), duration
                )
            else:
                final = ctx.result if ctx.action == ContextAction.COMPLETE else result
                await self._ledger.mark_completed(envelope.id, final)
                await self._broker.ack(envelope)
                await self._release_lock(envelope)
                logger.info("Job completed", duration=round(duration, 3))
                outcome = JobOutcome.COMPLETED

        self._count(envelope, outcome)
        return outcome

    async def _handle_failure(
        self,
        envelope: JobEnvelope,
        job: Job,
        max_attempts: int,
        error: BaseException,
        duration: float,
    ) -> JobOutcome:
        # Attempts come from the broker; the ledger may be unreachable
        attempt = envelope.attempts
        record = await self._ledger.get(envelope.id)
        if record is not None and record.status == JobStatus.CANCELLED:
            logger.info("Job cancelled while running, not retrying", error=str(error), attempts=attempt)
            await self._broker.ack(envelope)
            await self._release_lock(envelope)
            return JobOutcome.SKIPPED

        if attempt < max_attempts:
            delay = job.retry_delay(attempt)
            logger.warning(
                "Job attempt failed, retrying",
                error=str(error),
                error_type=type(error).__name__,
                attempts=attempt,
                max_attempts=max_attempts,
                retry_in=delay,
                duration=round(duration, 3),
            )
            await self._ledger.mark_for_retry(envelope.id, delay, message=str(error))
            await self._broker.release(envelope, delay=delay)
            JOB_RETRIES.labels(job_class=envelope.job_type, queue=envelope.queue).inc()
            return JobOutcome.RETRYING

        return await self._fail(envelope, str(error), error, duration)

    async def _fail(
        self,
        envelope: JobEnvelope,
        message: str,
        error: BaseException | None,
        duration: float,
    ) -> JobOutcome:
        logger.error(
            "Job failed permanently",
            error=message,
            attempts=envelope.attempts,
            duration=round(duration, 3),
            exc_info=error,
        )
        await self._ledger.mark_failed(envelope.id, message, format_trace(error) if error else None)
        await self._ledger.record_failure(envelope, error if error is not None else message)
        await self._broker.ack(envelope)
        await self._release_lock(envelope)
        return JobOutcome.FAILED

    async def _release_lock(self, envelope: JobEnvelope) -> None:
        if envelope.unique_id:
            await self._lock.release(envelope.unique_id, owner=envelope.id)

    @staticmethod
    def _count(envelope: JobEnvelope, outcome: JobOutcome) -> None:
        JOBS_PROCESSED.labels(job_class=envelope.job_type, queue=envelope.queue, status=outcome.value).inc()
