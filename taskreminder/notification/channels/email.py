"""Email notification channel."""

from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Any

import aiosmtplib

from taskreminder.core.config import Settings, get_settings
from taskreminder.core.exceptions import DeliveryError
from taskreminder.core.logging import get_logger
from taskreminder.notification.channels.base import NotificationSender
from taskreminder.notification.message import ReminderMessage

logger = get_logger(__name__)


class EmailSender(NotificationSender):
    """Email delivery over SMTP."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()

    @property
    def channel_type(self) -> str:
        return "email"

    async def send(self, message: ReminderMessage) -> dict[str, Any]:
        await self.send_email(
            to=message.recipient_email,
            to_name=message.recipient_name,
            subject=message.subject,
            text=message.text,
            html=message.html,
        )
        return {"recipient": message.recipient_email, "subject": message.subject}

    async def send_email(
        self,
        to: str,
        subject: str,
        text: str,
        html: str | None = None,
        to_name: str | None = None,
    ) -> None:
        """Send one message.

        Raises:
            DeliveryError: If SMTP is not configured or the server rejects the message
        """
        if not self._settings.smtp_host:
            raise DeliveryError(self.channel_type, "SMTP not configured")

        sender = self._settings.smtp_from or self._settings.smtp_user
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((self._settings.smtp_from_name, sender))
        msg["To"] = formataddr((to_name or "", to))
        msg.attach(MIMEText(text, "plain", "utf-8"))
        if html:
            msg.attach(MIMEText(html, "html", "utf-8"))

        try:
            await aiosmtplib.send(
                msg,
                hostname=self._settings.smtp_host,
                port=self._settings.smtp_port,
                username=self._settings.smtp_user or None,
                password=self._settings.smtp_password or None,
                use_tls=not self._settings.smtp_use_tls,
                start_tls=self._settings.smtp_use_tls,
            )
        except aiosmtplib.SMTPException as e:
            raise DeliveryError(self.channel_type, str(e)) from e

        logger.info("Email sent", recipient=to, subject=subject)
