"""Due-rule selection."""

from datetime import datetime, timedelta

from sqlalchemy import Select, exists, or_, select

from taskreminder.models.notification import DeliveryStatus
from taskreminder.models.reminder import reminder_due_at
from taskreminder.storage.tables import NotificationLog, NotificationRule, Task, User


def due_rules_query(now: datetime, window_seconds: int, limit: int) -> Select[tuple[NotificationRule]]:
    """One page of candidate rules for a reminder scan.

    Covers every due condition except the offset arithmetic, which differs
    per unit and is checked by ``is_due``. A page can therefore hold rules
    that are not due yet, so callers page with ``.offset()`` until a batch of
    due rules is filled or the candidates run out. The stable ordering keeps
    pages disjoint.
    """
    cutoff = now - timedelta(seconds=window_seconds)
    sent_recently = exists().where(
        NotificationLog.notification_rule_id == NotificationRule.id,
        NotificationLog.status == DeliveryStatus.SENT.value,
        NotificationLog.sent_at >= cutoff,
    )
    return (
        select(NotificationRule)
        .join(Task, Task.id == NotificationRule.task_id)
        .join(User, User.id == NotificationRule.user_id)
        .where(
            NotificationRule.is_enabled.is_(True),
            Task.due_date.is_not(None),
            or_(NotificationRule.last_sent_at.is_(None), NotificationRule.last_sent_at < cutoff),
            ~sent_recently,
        )
        .order_by(Task.due_date, NotificationRule.id)
        .limit(limit)
    )


def is_due(rule: NotificationRule, now: datetime) -> bool:
    """Whether the reminder time of a loaded rule has been reached."""
    if rule.task is None:
        return False
    fire_at = reminder_due_at(rule.task.due_date, rule.reminder_offset, rule.reminder_unit)
    return fire_at is not None and now >= fire_at
