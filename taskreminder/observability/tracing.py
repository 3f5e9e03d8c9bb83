"""Per-execution log context support."""

import uuid
from typing import Any

import structlog

JOB_CONTEXT_KEYS = ("job_id", "job_class", "queue", "attempt")


def generate_job_id() -> str:
    """Generate a new job ID."""
    return f"job_{uuid.uuid4().hex}"


class JobLogContext:
    """Context manager binding job identity to every log line of one execution."""

    def __init__(self, job_id: str, job_class: str, queue: str, attempt: int):
        self._values: dict[str, Any] = {
            "job_id": job_id,
            "job_class": job_class,
            "queue": queue,
            "attempt": attempt,
        }
        self._tokens: Any = None

    def __enter__(self) -> dict[str, Any]:
        """Bind job identity into structlog contextvars."""
        self._tokens = structlog.contextvars.bind_contextvars(**self._values)
        return self._values

    def __exit__(self, *args: Any) -> None:
        """Restore the previous context."""
        if self._tokens is not None:
            structlog.contextvars.reset_contextvars(**self._tokens)
        else:
            structlog.contextvars.unbind_contextvars(*JOB_CONTEXT_KEYS)
