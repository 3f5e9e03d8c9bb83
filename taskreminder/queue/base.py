"""Message broker abstraction."""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from taskreminder.core.config import QueueConfig
from taskreminder.observability.tracing import generate_job_id


class JobEnvelope(BaseModel):
    """Serialized job as it travels through the broker."""

    id: str = Field(default_factory=generate_job_id, description="Job identifier, shared with the ledger")
    job_type: str = Field(..., description="Registered job type tag")
    queue: str = Field(..., description="Target queue name")
    data: dict[str, Any] = Field(default_factory=dict, description="Job constructor payload")
    attempts: int = Field(default=0, ge=0, description="Deliveries counted so far")
    unique_id: str | None = Field(default=None, description="Idempotency key, if the job is unique")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Broker(ABC):
    """Abstract base class for queue backends.

    Reserving an envelope leases it to one consumer and counts an attempt.
    The consumer must ``ack`` it or ``release`` it back with a delay; a lease
    that is never settled becomes visible again after the queue's
    ``retry_after``.
    """

    # Whether reserved_count sees leases held by every consumer
    tracks_leases = True

    def __init__(self, queues: dict[str, QueueConfig]):
        self._queues = queues

    @property
    def queue_names(self) -> list[str]:
        """Configured queue names."""
        return list(self._queues)

    def queue_config(self, queue: str) -> QueueConfig:
        """Get configuration for a queue."""
        return self._queues.get(queue) or self._queues.get("default") or QueueConfig()

    @abstractmethod
    async def push(self, envelope: JobEnvelope, delay: float = 0) -> str:
        """Push a prepared envelope, optionally delayed by ``delay`` seconds."""

    async def enqueue(
        self,
        queue: str,
        job_type: str,
        data: dict[str, Any] | None = None,
        delay: float = 0,
        unique_id: str | None = None,
        job_id: str | None = None,
    ) -> str:
        """Enqueue a new job.

        Args:
            queue: Target queue
            job_type: Registered job type tag
            data: Job payload
            delay: Seconds before the job becomes visible
            unique_id: Idempotency key carried with the envelope
            job_id: Explicit job id (generated when omitted)

        Returns:
            Job id
        """
        envelope = JobEnvelope(
            job_type=job_type,
            queue=queue,
            data=data or {},
            unique_id=unique_id,
        )
        if job_id:
            envelope.id = job_id
        return await self.push(envelope, delay=delay)

    @abstractmethod
    async def reserve(self, queue: str) -> JobEnvelope | None:
        """Lease the next ready envelope, incrementing its attempt count."""

    @abstractmethod
    async def ack(self, envelope: JobEnvelope) -> None:
        """Remove a leased envelope for good."""

    @abstractmethod
    async def release(self, envelope: JobEnvelope, delay: float = 0, count_attempt: bool = True) -> None:
        """Return a leased envelope to its queue after ``delay`` seconds.

        Args:
            envelope: Leased envelope
            delay: Seconds before it becomes visible again
            count_attempt: False when the release is a cooperative yield that
                must not consume an attempt
        """

    @abstractmethod
    async def pending_count(self, queue: str) -> int:
        """Jobs waiting in a queue, ready or delayed."""

    @abstractmethod
    async def reserved_count(self, queue: str) -> int:
        """Jobs currently leased from a queue."""

    async def size(self, queue: str) -> int:
        """Total jobs owned by a queue."""
        return await self.pending_count(queue) + await self.reserved_count(queue)

    async def close(self) -> None:
        """Clean up resources. Override if needed."""
        pass
