"""Delivery log domain models."""

from enum import Enum


class DeliveryStatus(str, Enum):
    """Delivery log status. Only pending moves, and only to a terminal state."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"

