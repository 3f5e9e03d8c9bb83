"""Job domain models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Job lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def label(self) -> str:
        return self.value.capitalize()


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobOutcome(str, Enum):
    """What the runner did with one delivery of a job."""

    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    RELEASED = "released"  # Cooperative yield, attempt not consumed
    SKIPPED = "skipped"  # Cancelled before execution


class JobRecord(BaseModel):
    """Read model of a job status record."""

    model_config = ConfigDict(from_attributes=True)

    job_id: str
    job_class: str
    queue: str
    status: JobStatus
    attempts: int = Field(ge=0)
    max_attempts: int = Field(ge=1)
    progress: int = Field(ge=0, le=100)
    payload: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    next_retry_at: datetime | None = None
    created_at: datetime | None = None
    duration_seconds: float | None = None

    @property
    def can_retry(self) -> bool:
        """Whether the record still allows another attempt."""
        return self.status != JobStatus.CANCELLED and self.attempts < self.max_attempts
