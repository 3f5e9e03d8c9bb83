"""Base class for notification senders."""

from abc import ABC, abstractmethod
from typing import Any

from taskreminder.notification.message import ReminderMessage


class NotificationSender(ABC):
    """Abstract base class for delivery channels."""

    @property
    @abstractmethod
    def channel_type(self) -> str:
        """Return channel type identifier."""
        pass

    @abstractmethod
    async def send(self, message: ReminderMessage) -> dict[str, Any]:
        """Deliver a reminder.

        Args:
            message: Rendered reminder

        Returns:
            Delivery details merged into the delivery log metadata

        Raises:
            DeliveryError: If the channel could not deliver
        """
        pass

    async def close(self) -> None:
        """Clean up resources. Override if needed."""
        pass
