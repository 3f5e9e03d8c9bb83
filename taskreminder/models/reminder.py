"""Reminder rule domain models."""

from datetime import datetime, timedelta
from enum import Enum


class Channel(str, Enum):
    """Notification delivery channel."""

    EMAIL = "email"
    IN_APP = "in_app"
    SMS = "sms"
    PUSH = "push"


class ReminderUnit(str, Enum):
    """Unit of a reminder offset."""

    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"

    def to_timedelta(self, offset: int) -> timedelta:
        """Convert an offset in this unit to a timedelta."""
        return timedelta(**{self.value: offset})


def reminder_due_at(due_date: datetime | None, offset: int, unit: str) -> datetime | None:
    """Compute when a reminder fires: task due date minus the rule's offset.

    Args:
        due_date: Task due date
        offset: Reminder offset
        unit: Offset unit (minutes, hours, days)

    Returns:
        Reminder time, or None when the task has no due date or the unit is unknown
    """
    if due_date is None:
        return None
    try:
        delta = ReminderUnit(unit).to_timedelta(offset)
    except ValueError:
        return None
    return due_date - delta

