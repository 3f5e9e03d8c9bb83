"""Job type registry."""

from taskreminder.core.exceptions import UnknownJobTypeError
from taskreminder.jobs.base import Job
from taskreminder.jobs.chunked import HeavyJob
from taskreminder.jobs.delivery import DeliverNotificationJob
from taskreminder.jobs.email import SendEmailJob
from taskreminder.queue.base import JobEnvelope


class JobRegistry:
    """Maps the ``job_type`` tag carried by an envelope to its job class."""

    def __init__(self, *job_classes: type[Job]):
        self._classes: dict[str, type[Job]] = {}
        for job_cls in job_classes:
            self.register(job_cls)

    def register(self, job_cls: type[Job]) -> type[Job]:
        """Register a job class. Usable as a decorator."""
        self._classes[job_cls.job_type] = job_cls
        return job_cls

    def resolve(self, job_type: str) -> type[Job]:
        """Get the class for a tag.

        Raises:
            UnknownJobTypeError: If the tag is not registered
        """
        try:
            return self._classes[job_type]
        except KeyError:
            raise UnknownJobTypeError(job_type) from None

    def build(self, envelope: JobEnvelope) -> Job:
        """Instantiate the job an envelope describes."""
        return self.resolve(envelope.job_type).from_payload(envelope.data)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._classes

    @property
    def job_types(self) -> list[str]:
        return sorted(self._classes)


def default_registry() -> JobRegistry:
    """Registry with every job shipped by the application."""
    return JobRegistry(DeliverNotificationJob, HeavyJob, SendEmailJob)
