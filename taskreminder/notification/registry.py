"""Channel name to sender table."""

from taskreminder.core.config import Settings
from taskreminder.notification.channels.base import NotificationSender
from taskreminder.notification.channels.email import EmailSender
from taskreminder.notification.channels.in_app import InAppSender


def default_senders(settings: Settings | None = None) -> dict[str, NotificationSender]:
    """Senders for the channels that can deliver. SMS and push have none."""
    senders: list[NotificationSender] = [EmailSender(settings), InAppSender()]
    return {sender.channel_type: sender for sender in senders}
