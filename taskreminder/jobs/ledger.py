"""Durable job ledger backed by the job_statuses and failed_jobs tables."""

import traceback
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from taskreminder.core.logging import get_logger
from taskreminder.models.job import TERMINAL_STATUSES, JobRecord, JobStatus
from taskreminder.observability.tracing import generate_job_id
from taskreminder.queue.base import JobEnvelope
from taskreminder.storage.database import SessionFactory
from taskreminder.storage.tables import FailedJob, JobStatusRecord, utcnow

logger = get_logger(__name__)

_TERMINAL_VALUES = [status.value for status in TERMINAL_STATUSES]


class JobLedger:
    """Lifecycle tracking for job executions.

    Every write is keyed by ``job_id`` and safe to repeat. A database error is
    logged as a warning and swallowed so that bookkeeping never fails the job
    it describes.
    """

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def create(
        self,
        job_type: str,
        queue: str,
        payload: dict[str, Any] | None = None,
        *,
        job_id: str | None = None,
        max_attempts: int = 3,
    ) -> str:
        """Insert a pending record.

        Args:
            job_type: Registered job type tag
            queue: Queue the job runs on
            payload: Job payload kept for inspection and operator retry
            job_id: Explicit id (the broker envelope id); generated when omitted
            max_attempts: Attempt ceiling

        Returns:
            Job id. An id that is already recorded is returned unchanged.
        """
        job_id = job_id or generate_job_id()
        try:
            async with self._session_factory() as session:
                existing = await session.scalar(
                    select(JobStatusRecord.id).where(JobStatusRecord.job_id == job_id)
                )
                if existing is not None:
                    return job_id
                session.add(
                    JobStatusRecord(
                        job_id=job_id,
                        job_class=job_type,
                        queue=queue,
                        status=JobStatus.PENDING.value,
                        attempts=0,
                        max_attempts=max_attempts,
                        progress=0,
                        payload=payload,
                    )
                )
                await session.commit()
        except IntegrityError:
            # Concurrent create of the same id
            pass
        except SQLAlchemyError as e:
            logger.warning("Failed to create job status", job_id=job_id, error=str(e))
        return job_id

    async def get(self, job_id: str) -> JobRecord | None:
        """Get a job record by id."""
        try:
            async with self._session_factory() as session:
                row = await session.scalar(select(JobStatusRecord).where(JobStatusRecord.job_id == job_id))
                return JobRecord.model_validate(row) if row else None
        except SQLAlchemyError as e:
            logger.warning("Failed to read job status", job_id=job_id, error=str(e))
            return None

    async def mark_processing(self, job_id: str, attempts: int | None = None) -> None:
        """Move a job to processing.

        Args:
            job_id: Job id
            attempts: Attempt count reported by the broker; incremented by one
                when omitted
        """
        values: dict[str, Any] = {
            "status": JobStatus.PROCESSING.value,
            "started_at": utcnow(),
            "finished_at": None,
            "next_retry_at": None,
            "attempts": attempts if attempts is not None else JobStatusRecord.attempts + 1,
        }
        await self._update(job_id, values, "processing")

    async def update_progress(self, job_id: str, percent: int) -> None:
        """Record progress. A value below the stored one is ignored.

        Raises:
            ValueError: If percent is outside 0..100
        """
        if not 0 <= percent <= 100:
            raise ValueError(f"Progress must be between 0 and 100, got {percent}")
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(JobStatusRecord)
                    .where(JobStatusRecord.job_id == job_id, JobStatusRecord.progress < percent)
                    .values(progress=percent)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning("Failed to update job progress", job_id=job_id, progress=percent, error=str(e))

    async def mark_completed(self, job_id: str, result: dict[str, Any] | None = None) -> None:
        await self._update(
            job_id,
            {
                "status": JobStatus.COMPLETED.value,
                "progress": 100,
                "finished_at": utcnow(),
                "result": result,
                "error_message": None,
                "error_trace": None,
            },
            "completed",
        )

    async def mark_failed(self, job_id: str, message: str, trace: str | None = None) -> None:
        await self._update(
            job_id,
            {
                "status": JobStatus.FAILED.value,
                "finished_at": utcnow(),
                "error_message": message,
                "error_trace": trace,
            },
            "failed",
        )

    async def mark_for_retry(self, job_id: str, delay: float, message: str | None = None) -> None:
        """Move a job to retrying; it becomes visible again after ``delay`` seconds."""
        values: dict[str, Any] = {
            "status": JobStatus.RETRYING.value,
            "next_retry_at": utcnow() + timedelta(seconds=delay),
        }
        if message is not None:
            values["error_message"] = message
        await self._update(job_id, values, "retrying")

    async def mark_released(self, job_id: str, delay: float) -> None:
        """Cooperative yield: back to pending until ``delay`` seconds have passed."""
        await self._update(
            job_id,
            {
                "status": JobStatus.PENDING.value,
                "next_retry_at": utcnow() + timedelta(seconds=delay),
            },
            "released",
        )

    async def cancel(self, job_id: str) -> bool:
        """Cancel a job. Terminal records are left untouched.

        Returns:
            True if the record was cancelled by this call
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(JobStatusRecord)
                    .where(
                        JobStatusRecord.job_id == job_id,
                        JobStatusRecord.status.not_in(_TERMINAL_VALUES),
                    )
                    .values(status=JobStatus.CANCELLED.value, finished_at=utcnow())
                )
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.warning("Failed to cancel job", job_id=job_id, error=str(e))
            return False

    async def can_retry(self, job_id: str) -> bool:
        """Whether another attempt is allowed, as reported to operators.

        The runner does not call this: it counts attempts on the broker
        envelope, which stays correct when the ledger is unreachable, and only
        reads the record to honour a cancellation.
        """
        record = await self.get(job_id)
        return record is not None and record.can_retry

    async def save_checkpoint(self, job_id: str, checkpoint: dict[str, Any]) -> None:
        """Store the resume position of a chunked job."""
        await self._update(job_id, {"checkpoint": checkpoint}, "checkpoint")

    async def get_checkpoint(self, job_id: str) -> dict[str, Any] | None:
        try:
            async with self._session_factory() as session:
                return await session.scalar(
                    select(JobStatusRecord.checkpoint).where(JobStatusRecord.job_id == job_id)
                )
        except SQLAlchemyError as e:
            logger.warning("Failed to read job checkpoint", job_id=job_id, error=str(e))
            return None

    async def record_failure(self, envelope: JobEnvelope, error: BaseException | str) -> None:
        """Write a terminally failed job to the failed-job store."""
        trace = format_trace(error) if isinstance(error, BaseException) else error
        try:
            async with self._session_factory() as session:
                existing = await session.scalar(select(FailedJob).where(FailedJob.uuid == envelope.id))
                if existing is not None:
                    existing.exception = trace
                    existing.payload = envelope.model_dump(mode="json")
                    existing.failed_at = utcnow()
                else:
                    session.add(
                        FailedJob(
                            uuid=envelope.id,
                            job_id=envelope.id,
                            queue=envelope.queue,
                            payload=envelope.model_dump(mode="json"),
                            exception=trace,
                        )
                    )
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning("Failed to record failed job", job_id=envelope.id, error=str(e))

    async def reset_for_retry(self, job_id: str) -> bool:
        """Operator retry: reset a record to pending and drop its failed-job entry.

        Returns:
            True if a record was reset
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(JobStatusRecord)
                    .where(JobStatusRecord.job_id == job_id)
                    .values(
                        status=JobStatus.PENDING.value,
                        attempts=0,
                        progress=0,
                        error_message=None,
                        error_trace=None,
                        checkpoint=None,
                        result=None,
                        started_at=None,
                        finished_at=None,
                        next_retry_at=None,
                    )
                )
                await session.execute(delete(FailedJob).where(FailedJob.job_id == job_id))
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.warning("Failed to reset job for retry", job_id=job_id, error=str(e))
            return False

    async def _update(self, job_id: str, values: dict[str, Any], transition: str) -> None:
        # Terminal records only change through reset_for_retry
        stmt = (
            update(JobStatusRecord)
            .where(JobStatusRecord.job_id == job_id, JobStatusRecord.status.not_in(_TERMINAL_VALUES))
            .values(**values)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                if result.rowcount == 0:
                    logger.debug("No open job status record to update", job_id=job_id, transition=transition)
        except SQLAlchemyError as e:
            logger.warning("Failed to update job status", job_id=job_id, transition=transition, error=str(e))


def format_trace(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

