"""Job execution contract."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, ClassVar

from taskreminder.core.config import Settings
from taskreminder.queue.base import JobEnvelope
from taskreminder.storage.database import SessionFactory

if TYPE_CHECKING:
    from taskreminder.jobs.ledger import JobLedger
    from taskreminder.notification.channels.base import NotificationSender


@dataclass
class JobResources:
    """Shared services handed to every job execution."""

    session_factory: SessionFactory
    settings: Settings
    senders: dict[str, "NotificationSender"] = field(default_factory=dict)
    # Returns resident memory in MB; psutil-backed when None
    memory_sampler: Callable[[], float] | None = None


class ContextAction(str, Enum):
    """Settlement a job requested through its context."""

    COMPLETE = "complete"
    FAIL = "fail"
    RETRY = "retry"
    RELEASE = "release"


class JobExecutionContext:
    """One execution of one job.

    Wraps the ledger for the job's record and collects how the job wants its
    delivery settled. The runner applies the settlement after ``execute``
    returns.
    """

    def __init__(self, envelope: JobEnvelope, ledger: "JobLedger", resources: JobResources):
        self.envelope = envelope
        self.resources = resources
        self._ledger = ledger
        self.action: ContextAction | None = None
        self.result: dict[str, Any] | None = None
        self.error: str | None = None
        self.delay: float = 0

    @property
    def job_id(self) -> str:
        return self.envelope.id

    @property
    def attempt(self) -> int:
        return self.envelope.attempts

    async def start(self) -> None:
        await self._ledger.mark_processing(self.job_id, attempts=self.envelope.attempts)

    async def update_progress(self, percent: int) -> None:
        """Report progress (0..100). Lower values than the stored one are ignored."""
        await self._ledger.update_progress(self.job_id, percent)

    def complete(self, result: dict[str, Any] | None = None) -> None:
        """Finish successfully with an explicit result."""
        self.action = ContextAction.COMPLETE
        self.result = result

    def fail(self, message: str) -> None:
        """Fail terminally; no further attempts are made."""
        self.action = ContextAction.FAIL
        self.error = message

    def retry(self, message: str = "Retry requested") -> None:
        """Fail this attempt and retry per the job's backoff schedule."""
        self.action = ContextAction.RETRY
        self.error = message

    async def release(self, delay: float) -> None:
        """Yield: put the job back after ``delay`` seconds without consuming an attempt."""
        self.action = ContextAction.RELEASE
        self.delay = delay

    async def checkpoint(self, state: dict[str, Any]) -> None:
        await self._ledger.save_checkpoint(self.job_id, state)

    async def load_checkpoint(self) -> dict[str, Any] | None:
        return await self._ledger.get_checkpoint(self.job_id)


class Job(ABC):
    """Unit of background work.

    Subclasses set ``job_type`` (the registry tag), ``queue`` and optionally
    ``max_attempts`` (falls back to the queue's value), ``timeout_seconds``
    (capped by the queue's timeout) and ``backoff``.
    """

    job_type: ClassVar[str]
    queue: ClassVar[str] = "default"
    max_attempts: ClassVar[int | None] = None
    timeout_seconds: ClassVar[int] = 60
    backoff: ClassVar[tuple[int, ...]] = (60, 300, 900)

    def get_queue(self) -> str:
        return self.queue

    def backoff_schedule(self) -> list[int]:
        return list(self.backoff)

    def retry_delay(self, attempt: int) -> int:
        """Delay before the next attempt after ``attempt`` failed.

        Args:
            attempt: 1-based number of the attempt that failed

        Returns:
            Seconds; attempts past the schedule reuse its last entry
        """
        schedule = self.backoff_schedule()
        if not schedule:
            return 0
        index = min(max(attempt, 1), len(schedule)) - 1
        return schedule[index]

    def unique_id(self) -> str | None:
        """Idempotency key; None for jobs that may be queued more than once."""
        return None

    @abstractmethod
    def to_payload(self) -> dict[str, Any]:
        """Serialize constructor arguments for the broker."""

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "Job":
        return cls(**data)

    @abstractmethod
    async def execute(self, ctx: JobExecutionContext) -> dict[str, Any] | None:
        """Run the job.

        Returning completes the job with the returned result unless the job
        settled through ``ctx``. Raising fails the attempt.
        """
