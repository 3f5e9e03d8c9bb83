"""Transactional email job."""

import re
from typing import Any, ClassVar

from taskreminder.core.logging import get_logger
from taskreminder.jobs.base import Job, JobExecutionContext
from taskreminder.notification.channels.email import EmailSender
from taskreminder.storage.tables import utcnow

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class SendEmailJob(Job):
    """Send one email through the email sender. An invalid address fails without retry."""

    job_type: ClassVar[str] = "send_email"
    queue: ClassVar[str] = "emails"
    max_attempts: ClassVar[int | None] = 5
    timeout_seconds: ClassVar[int] = 60

    def __init__(
        self,
        to: str,
        subject: str,
        text: str = "",
        html: str | None = None,
        to_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        self.to = to
        self.subject = subject
        self.text = text
        self.html = html
        self.to_name = to_name
        self.metadata = metadata or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "to": self.to,
            "subject": self.subject,
            "text": self.text,
            "html": self.html,
            "to_name": self.to_name,
            "metadata": self.metadata,
        }

    async def execute(self, ctx: JobExecutionContext) -> dict[str, Any] | None:
        if not _EMAIL_RE.match(self.to):
            ctx.fail(f"Invalid email address: {self.to}")
            return None

        sender = ctx.resources.senders.get("email")
        if not isinstance(sender, EmailSender):
            sender = EmailSender(ctx.resources.settings)
        await sender.send_email(
            to=self.to,
            subject=self.subject,
            text=self.text,
            html=self.html,
            to_name=self.to_name,
        )
        return {"to": self.to, "subject": self.subject, "sent_at": utcnow().isoformat(), **self.metadata}
