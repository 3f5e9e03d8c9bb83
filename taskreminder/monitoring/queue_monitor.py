"""Queue health monitoring and failed-job remediation."""

import statistics
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select

from taskreminder.core.config import Settings, get_settings
from taskreminder.core.logging import get_alert_logger, get_logger
from taskreminder.jobs.ledger import JobLedger
from taskreminder.models.job import JobStatus
from taskreminder.observability.metrics import QUEUE_HEALTHY, QUEUE_PENDING, QUEUE_PROCESSING, STUCK_JOBS
from taskreminder.queue.base import Broker, JobEnvelope
from taskreminder.storage.database import SessionFactory
from taskreminder.storage.tables import FailedJob, JobStatusRecord, utcnow

logger = get_logger(__name__)
alerts = get_alert_logger()


class QueueMonitor:
    """Read-only health view over the broker and the job ledger, plus retry tools."""

    def __init__(
        self,
        broker: Broker,
        ledger: JobLedger,
        session_factory: SessionFactory,
        settings: Settings | None = None,
    ):
        self._broker = broker
        self._ledger = ledger
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    async def queue_depth(self, queue: str) -> int:
        """Jobs waiting in a queue."""
        return await self._broker.pending_count(queue)

    async def total_depth(self) -> int:
        total = 0
        for queue in self._broker.queue_names:
            total += await self.queue_depth(queue)
        return total

    async def processing_count(self, queue: str) -> int:
        """Jobs being worked on, from the broker when it sees every lease, else from the ledger."""
        if self._broker.tracks_leases:
            return await self._broker.reserved_count(queue)
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count(JobStatusRecord.id)).where(
                    JobStatusRecord.queue == queue,
                    JobStatusRecord.status == JobStatus.PROCESSING.value,
                )
            )
        return count or 0

    async def queue_status(self) -> dict[str, dict[str, int]]:
        """Pending and processing counts per queue, plus a ``total`` entry."""
        status: dict[str, dict[str, int]] = {}
        for queue in self._broker.queue_names:
            status[queue] = {
                "pending": await self._broker.pending_count(queue),
                "processing": await self.processing_count(queue),
            }
        status["total"] = {
            "pending": sum(entry["pending"] for entry in status.values()),
            "processing": sum(entry["processing"] for entry in status.values()),
        }
        return status

    async def failed_job_stats(self) -> dict[str, int]:
        now = utcnow()
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count(FailedJob.id)))
            last_24h = await session.scalar(
                select(func.count(FailedJob.id)).where(FailedJob.failed_at > now - timedelta(hours=24))
            )
            last_1h = await session.scalar(
                select(func.count(FailedJob.id)).where(FailedJob.failed_at > now - timedelta(hours=1))
            )
        return {"total": total or 0, "last_24h": last_24h or 0, "last_1h": last_1h or 0}

    async def job_status_stats(self) -> dict[str, int]:
        """Ledger record counts per status, plus ``stuck`` processing jobs."""
        stuck_before = utcnow() - timedelta(seconds=self._settings.stuck_job_threshold_seconds)
        async with self._session_factory() as session:
            rows = await session.execute(
                select(JobStatusRecord.status, func.count(JobStatusRecord.id)).group_by(JobStatusRecord.status)
            )
            counts = {status: count for status, count in rows}
            stuck = await session.scalar(
                select(func.count(JobStatusRecord.id)).where(
                    JobStatusRecord.status == JobStatus.PROCESSING.value,
                    JobStatusRecord.started_at < stuck_before,
                )
            )
        stats = {status.value: counts.get(status.value, 0) for status in JobStatus}
        stats["stuck"] = stuck or 0
        return stats

    async def is_healthy(self) -> bool:
        """Healthy when no job is stuck and recent failures stay under the threshold."""
        stats = await self.job_status_stats()
        if stats["stuck"] > 0:
            logger.warning("Found stuck jobs", stuck=stats["stuck"])
            return False
        failed = await self.failed_job_stats()
        if failed["last_1h"] > self._settings.failed_jobs_alert_threshold:
            logger.warning("High failed job rate", failed_last_hour=failed["last_1h"])
            return False
        return True

    async def retry_failed_job(self, failed_id: str) -> bool:
        """Re-enqueue one failed job with a fresh attempt count.

        Args:
            failed_id: Failed job uuid (the job id)

        Returns:
            True if the job was re-enqueued
        """
        async with self._session_factory() as session:
            failed = await session.scalar(select(FailedJob).where(FailedJob.uuid == failed_id))
            if failed is None:
                return False
            payload = dict(failed.payload)

        try:
            envelope = JobEnvelope.model_validate(payload)
        except ValueError as e:
            logger.error("Failed job payload is not a valid envelope", failed_id=failed_id, error=str(e))
            return False

        envelope.attempts = 0
        await self._ledger.reset_for_retry(envelope.id)
        await self._broker.push(envelope)
        logger.info("Failed job re-enqueued", job_id=envelope.id, queue=envelope.queue)
        return True

    async def retry_all_failed_jobs(self, since_hours: int = 24) -> int:
        """Re-enqueue failed jobs from the last ``since_hours`` hours (0 for all).

        Returns:
            Number of jobs re-enqueued
        """
        stmt = select(FailedJob.uuid).order_by(FailedJob.failed_at)
        if since_hours > 0:
            stmt = stmt.where(FailedJob.failed_at > utcnow() - timedelta(hours=since_hours))
        async with self._session_factory() as session:
            ids = list(await session.scalars(stmt))

        retried = 0
        for failed_id in ids:
            if await self.retry_failed_job(failed_id):
                retried += 1
        return retried

    async def clear_old_failed_jobs(self, hours: int = 24) -> int:
        """Delete failed-job entries older than ``hours``."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(FailedJob).where(FailedJob.failed_at < utcnow() - timedelta(hours=hours))
            )
            await session.commit()
            return result.rowcount

    async def performance_metrics(self) -> dict[str, float | int]:
        """Duration statistics of jobs completed in the last 24 hours."""
        async with self._session_factory() as session:
            rows = await session.execute(
                select(JobStatusRecord.started_at, JobStatusRecord.finished_at).where(
                    JobStatusRecord.status == JobStatus.COMPLETED.value,
                    JobStatusRecord.finished_at > utcnow() - timedelta(hours=24),
                )
            )
            durations = [
                (finished - started).total_seconds() for started, finished in rows if started and finished
            ]
        if not durations:
            return {"count": 0, "avg": 0.0, "min": 0.0, "max": 0.0, "median": 0.0}
        return {
            "count": len(durations),
            "avg": round(statistics.fmean(durations), 3),
            "min": round(min(durations), 3),
            "max": round(max(durations), 3),
            "median": round(statistics.median(durations), 3),
        }

    async def monitor_and_alert(self) -> dict[str, Any]:
        """Collect a health snapshot, log it, raise alerts and refresh gauges.

        Returns:
            The snapshot
        """
        queues = await self.queue_status()
        jobs = await self.job_status_stats()
        failed = await self.failed_job_stats()
        performance = await self.performance_metrics()
        healthy = jobs["stuck"] == 0 and failed["last_1h"] <= self._settings.failed_jobs_alert_threshold

        snapshot = {
            "timestamp": utcnow().isoformat(),
            "queues": queues,
            "job_stats": jobs,
            "failed_jobs": failed,
            "performance": performance,
            "healthy": healthy,
        }
        logger.info("Queue health check", **snapshot)

        if not healthy:
            alerts.error("Queue health check failed", job_stats=jobs, failed_jobs=failed, queue_status=queues)
        pending = queues["total"]["pending"]
        if pending > self._settings.pending_alert_threshold:
            alerts.warning(
                "Queue backup detected",
                pending_jobs=pending,
                threshold=self._settings.pending_alert_threshold,
            )

        for queue, counts in queues.items():
            if queue == "total":
                continue
            QUEUE_PENDING.labels(queue=queue).set(counts["pending"])
            QUEUE_PROCESSING.labels(queue=queue).set(counts["processing"])
        STUCK_JOBS.set(jobs["stuck"])
        QUEUE_HEALTHY.set(1 if healthy else 0)
        return snapshot
