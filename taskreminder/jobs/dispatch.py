"""Enqueueing jobs with ledger registration and unique locks."""

from taskreminder.core.logging import get_logger
from taskreminder.jobs.base import Job
from taskreminder.jobs.ledger import JobLedger
from taskreminder.observability.tracing import generate_job_id
from taskreminder.queue.base import Broker
from taskreminder.storage.idempotency import UniqueJobLock

logger = get_logger(__name__)


class JobDispatcher:
    """Puts jobs on the broker.

    A job with a ``unique_id`` is only enqueued when its lock can be taken;
    the runner releases the lock once the job reaches a terminal outcome.
    """

    def __init__(self, broker: Broker, ledger: JobLedger, lock: UniqueJobLock):
        self._broker = broker
        self._ledger = ledger
        self._lock = lock

    def max_attempts_for(self, job: Job) -> int:
        return job.max_attempts or self._broker.queue_config(job.get_queue()).max_attempts

    async def dispatch(self, job: Job, delay: float = 0) -> str | None:
        """Enqueue a job.

        Args:
            job: Job to enqueue
            delay: Seconds before the job becomes visible

        Returns:
            Job id, or None when an identical unique job is already queued
        """
        job_id = generate_job_id()
        unique_id = job.unique_id()
        if unique_id is not None and not await self._lock.acquire(unique_id, owner=job_id):
            logger.debug("Unique job already queued", job_type=job.job_type, unique_id=unique_id)
            return None

        payload = job.to_payload()
        queue = job.get_queue()
        try:
            await self._ledger.create(
                job.job_type,
                queue,
                payload,
                job_id=job_id,
                max_attempts=self.max_attempts_for(job),
            )
            await self._broker.enqueue(
                queue,
                job.job_type,
                payload,
                delay=delay,
                unique_id=unique_id,
                job_id=job_id,
            )
        except Exception:
            if unique_id is not None:
                await self._lock.release(unique_id, owner=job_id)
            raise

        logger.info("Job dispatched", job_id=job_id, job_type=job.job_type, queue=queue, delay=delay)
        return job_id
