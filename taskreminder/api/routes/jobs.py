"""Job status and enqueue API routes."""

from fastapi import APIRouter

from taskreminder.api.deps import JobDispatcherDep, JobLedgerDep, ReminderServiceDep
from taskreminder.core.exceptions import JobNotFoundError
from taskreminder.jobs.chunked import HeavyJob
from taskreminder.models.job import JobRecord
from taskreminder.schemas.common import APIResponse
from taskreminder.schemas.job import DeliveryReportRequest, EnqueueResponse, JobStatusResponse

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _to_response(record: JobRecord) -> JobStatusResponse:
    return JobStatusResponse(
        **record.model_dump(exclude={"payload"}),
        status_label=record.status.label,
        can_retry=record.can_retry,
    )


@router.get("/{job_id}", response_model=APIResponse[JobStatusResponse])
async def get_job_status(job_id: str, ledger: JobLedgerDep) -> APIResponse[JobStatusResponse]:
    """Get the lifecycle state of a job."""
    record = await ledger.get(job_id)
    if record is None:
        raise JobNotFoundError(job_id)
    return APIResponse(data=_to_response(record))


@router.post("/{job_id}/cancel", response_model=APIResponse[JobStatusResponse])
async def cancel_job(job_id: str, ledger: JobLedgerDep) -> APIResponse[JobStatusResponse]:
    """Cancel a job that has not settled yet. Settled jobs are returned unchanged."""
    record = await ledger.get(job_id)
    if record is None:
        raise JobNotFoundError(job_id)
    await ledger.cancel(job_id)
    record = await ledger.get(job_id) or record
    return APIResponse(data=_to_response(record))


@router.post("/delivery-report", response_model=APIResponse[EnqueueResponse], status_code=202)
async def enqueue_delivery_report(
    data: DeliveryReportRequest,
    dispatcher: JobDispatcherDep,
) -> APIResponse[EnqueueResponse]:
    """Queue a heavy job that aggregates delivery logs by channel and status."""
    params = data.model_dump(mode="json", exclude_none=True)
    job_id = await dispatcher.dispatch(HeavyJob("delivery_report", params))
    return APIResponse(data=EnqueueResponse(job_id=job_id, queued=job_id is not None))


@router.post("/deliveries/{rule_id}", response_model=APIResponse[EnqueueResponse], status_code=202)
async def enqueue_delivery(rule_id: int, reminders: ReminderServiceDep) -> APIResponse[EnqueueResponse]:
    """Queue the delivery of a rule's reminder now."""
    rule = await reminders.get_rule(rule_id)
    job_id = await reminders.enqueue_delivery(rule)
    return APIResponse(data=EnqueueResponse(job_id=job_id, queued=job_id is not None))
