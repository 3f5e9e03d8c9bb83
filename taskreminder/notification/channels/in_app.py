"""In-app inbox channel."""

from typing import Any

from taskreminder.notification.channels.base import NotificationSender
from taskreminder.notification.message import ReminderMessage


class InAppSender(NotificationSender):
    """Inbox delivery. The delivery log row is the inbox entry; ``read_at`` marks it read."""

    @property
    def channel_type(self) -> str:
        return "in_app"

    async def send(self, message: ReminderMessage) -> dict[str, Any]:
        return {
            "inbox": True,
            "title": message.subject,
            "body": message.text,
            "task_url": message.task_url,
        }
