"""Queue health, remediation and reminder scan routes."""

from typing import Any

from fastapi import APIRouter, Query

from taskreminder.api.deps import QueueMonitorDep, ReminderServiceDep
from taskreminder.schemas.common import APIResponse
from taskreminder.schemas.job import RetryFailedRequest, RetryFailedResponse
from taskreminder.schemas.rule import DispatchResponse

router = APIRouter(tags=["queues"])


@router.get("/queues/status", response_model=APIResponse[dict[str, Any]])
async def queue_status(monitor: QueueMonitorDep) -> APIResponse[dict[str, Any]]:
    """Queue depths, job counts per status and failed-job counts."""
    return APIResponse(
        data={
            "queues": await monitor.queue_status(),
            "job_stats": await monitor.job_status_stats(),
            "failed_jobs": await monitor.failed_job_stats(),
        }
    )


@router.get("/queues/health", response_model=APIResponse[dict[str, bool]])
async def queue_health(monitor: QueueMonitorDep) -> APIResponse[dict[str, bool]]:
    return APIResponse(data={"healthy": await monitor.is_healthy()})


@router.get("/queues/performance", response_model=APIResponse[dict[str, float]])
async def queue_performance(monitor: QueueMonitorDep) -> APIResponse[dict[str, float]]:
    """Duration statistics of jobs completed in the last 24 hours."""
    return APIResponse(data=await monitor.performance_metrics())


@router.post("/queues/failed/retry", response_model=APIResponse[RetryFailedResponse])
async def retry_failed_jobs(data: RetryFailedRequest, monitor: QueueMonitorDep) -> APIResponse[RetryFailedResponse]:
    """Re-enqueue failed jobs, either one by id or all within a time window."""
    if data.job_id:
        retried = 1 if await monitor.retry_failed_job(data.job_id) else 0
    else:
        retried = await monitor.retry_all_failed_jobs(since_hours=data.since_hours)
    return APIResponse(data=RetryFailedResponse(retried=retried))


@router.delete("/queues/failed", response_model=APIResponse[int])
async def clear_failed_jobs(
    monitor: QueueMonitorDep,
    older_than_hours: int = Query(default=24, ge=1),
) -> APIResponse[int]:
    return APIResponse(data=await monitor.clear_old_failed_jobs(older_than_hours))


@router.post("/reminders/dispatch", response_model=APIResponse[DispatchResponse])
async def dispatch_due_notifications(
    reminders: ReminderServiceDep,
    dry_run: bool = Query(default=False, description="Count due reminders without enqueueing"),
) -> APIResponse[DispatchResponse]:
    """Run a reminder scan now."""
    dispatched = await reminders.dispatch_due_notifications(dry_run=dry_run)
    return APIResponse(data=DispatchResponse(dispatched=dispatched, dry_run=dry_run))
