"""Job and queue API schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from taskreminder.models.job import JobStatus


class JobStatusResponse(BaseModel):
    """Job status as exposed to API users. Traces are never included."""

    job_id: str
    job_class: str
    queue: str
    status: JobStatus
    status_label: str
    attempts: int
    max_attempts: int
    progress: int
    result: dict[str, Any] | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    next_retry_at: datetime | None = None
    created_at: datetime | None = None
    duration_seconds: float | None = None
    can_retry: bool = False


class EnqueueResponse(BaseModel):
    job_id: str | None = Field(default=None, description="None when an identical job is already queued")
    queued: bool


class DeliveryReportRequest(BaseModel):
    """Parameters of a delivery report heavy job."""

    start: datetime | None = None
    end: datetime | None = None
    user_id: int | None = None


class RetryFailedRequest(BaseModel):
    """Failed-job retry filter: one job by id, or every job newer than ``since_hours`` (0 = all)."""

    job_id: str | None = None
    since_hours: int = Field(default=24, ge=0)


class RetryFailedResponse(BaseModel):
    retried: int = Field(..., ge=0)
