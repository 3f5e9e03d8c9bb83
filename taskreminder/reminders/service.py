"""Reminder rules, user settings and delivery scheduling."""

from datetime import datetime

from sqlalchemy import delete, func, select, update

from taskreminder.core.config import Settings, get_settings
from taskreminder.core.exceptions import RuleNotFoundError, TaskNotFoundError, UserNotFoundError
from taskreminder.core.logging import get_logger
from taskreminder.jobs.delivery import DeliverNotificationJob, delivery_key
from taskreminder.jobs.dispatch import JobDispatcher
from taskreminder.models.notification import DeliveryStatus
from taskreminder.models.reminder import Channel
from taskreminder.observability.metrics import NOTIFICATIONS_DISPATCHED, REMINDER_SCANS
from taskreminder.reminders.schedule import due_rules_query, is_due
from taskreminder.schemas.rule import RuleCreate, RuleUpdate, UserSettingsUpdate
from taskreminder.storage.database import SessionFactory
from taskreminder.storage.tables import (
    NotificationLog,
    NotificationRule,
    Task,
    User,
    UserNotificationSetting,
    utcnow,
)

logger = get_logger(__name__)

CANCELLED_MESSAGE = "Task deleted or notification cancelled"


def channel_enabled(settings: UserNotificationSetting | None, channel: str) -> bool:
    """Whether a user's settings allow delivery on a channel."""
    if settings is None:
        return True
    if channel == Channel.EMAIL.value:
        return settings.email_notifications_enabled
    if channel == Channel.IN_APP.value:
        return settings.in_app_notifications_enabled
    return True


class ReminderService:
    """Reminder rule engine.

    Owns the notification rules and user notification settings, decides
    which rules are due and enqueues exactly one delivery job per due window.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        dispatcher: JobDispatcher,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._settings = settings or get_settings()

    # Rules

    async def create_rule(self, data: RuleCreate) -> NotificationRule:
        """Create a rule.

        Raises:
            TaskNotFoundError: If the task does not exist
            UserNotFoundError: If the user does not exist
        """
        async with self._session_factory() as session:
            if await session.get(Task, data.task_id) is None:
                raise TaskNotFoundError(data.task_id)
            if await session.get(User, data.user_id) is None:
                raise UserNotFoundError(data.user_id)
            rule = NotificationRule(
                user_id=data.user_id,
                task_id=data.task_id,
                channel=data.channel.value,
                reminder_offset=data.reminder_offset,
                reminder_unit=data.reminder_unit.value,
                is_enabled=data.is_enabled,
            )
            session.add(rule)
            await session.commit()
            await session.refresh(rule)
        logger.info("Reminder rule created", rule_id=rule.id, task_id=rule.task_id, channel=rule.channel)
        return rule

    async def get_rule(self, rule_id: int) -> NotificationRule:
        """Get a rule.

        Raises:
            RuleNotFoundError: If the rule does not exist
        """
        async with self._session_factory() as session:
            rule = await session.get(NotificationRule, rule_id)
            if rule is None:
                raise RuleNotFoundError(rule_id)
            return rule

    async def update_rule(self, rule_id: int, data: RuleUpdate) -> NotificationRule:
        """Update offset, unit or enabled flag; unset fields keep their value."""
        changes = data.model_dump(exclude_unset=True, exclude_none=True, mode="json")
        async with self._session_factory() as session:
            rule = await session.get(NotificationRule, rule_id)
            if rule is None:
                raise RuleNotFoundError(rule_id)
            for field, value in changes.items():
                setattr(rule, field, value)
            await session.commit()
            await session.refresh(rule)
        return rule

    async def delete_rule(self, rule_id: int) -> None:
        async with self._session_factory() as session:
            result = await session.execute(delete(NotificationRule).where(NotificationRule.id == rule_id))
            await session.commit()
        if result.rowcount == 0:
            raise RuleNotFoundError(rule_id)
        logger.info("Reminder rule deleted", rule_id=rule_id)

    async def toggle_rule(self, rule_id: int) -> NotificationRule:
        """Flip a rule's enabled flag."""
        async with self._session_factory() as session:
            rule = await session.get(NotificationRule, rule_id)
            if rule is None:
                raise RuleNotFoundError(rule_id)
            rule.is_enabled = not rule.is_enabled
            await session.commit()
            await session.refresh(rule)
        return rule

    async def get_task_rules(self, task_id: int, user_id: int | None = None) -> list[NotificationRule]:
        stmt = select(NotificationRule).where(NotificationRule.task_id == task_id)
        if user_id is not None:
            stmt = stmt.where(NotificationRule.user_id == user_id)
        async with self._session_factory() as session:
            result = await session.scalars(stmt.order_by(NotificationRule.id))
            return list(result)

    async def create_default_rule_for_task(self, task_id: int) -> NotificationRule:
        """Create the email rule a new task gets from its owner's defaults."""
        async with self._session_factory() as session:
            task = await session.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            user_id = task.user_id
        user_settings = await self.get_user_settings(user_id)
        return await self.create_rule(
            RuleCreate(
                user_id=user_id,
                task_id=task_id,
                channel=Channel.EMAIL,
                reminder_offset=user_settings.default_reminder_offset,
                reminder_unit=user_settings.default_reminder_unit,
                is_enabled=True,
            )
        )

    # User settings

    async def get_user_settings(self, user_id: int) -> UserNotificationSetting:
        """Get a user's notification settings, creating the defaults on first use."""
        async with self._session_factory() as session:
            stmt = select(UserNotificationSetting).where(UserNotificationSetting.user_id == user_id)
            user_settings = await session.scalar(stmt)
            if user_settings is None:
                if await session.get(User, user_id) is None:
                    raise UserNotFoundError(user_id)
                user_settings = UserNotificationSetting(user_id=user_id)
                session.add(user_settings)
                await session.commit()
                await session.refresh(user_settings)
            return user_settings

    async def update_user_settings(self, user_id: int, data: UserSettingsUpdate) -> UserNotificationSetting:
        changes = data.model_dump(exclude_unset=True, exclude_none=True, mode="json")
        current = await self.get_user_settings(user_id)
        async with self._session_factory() as session:
            user_settings = await session.get(UserNotificationSetting, current.id)
            for field, value in changes.items():
                setattr(user_settings, field, value)
            await session.commit()
            await session.refresh(user_settings)
        return user_settings

    # Scheduling

    async def get_due_rules(self, now: datetime | None = None) -> list[NotificationRule]:
        """Rules whose reminder should be delivered now.

        Args:
            now: Evaluation time (defaults to the current UTC time)

        Returns:
            Due rules with their task and user loaded
        """
        now = now or utcnow()
        batch_size = self._settings.dispatch_batch_size
        stmt = due_rules_query(now, self._settings.dedup_window_seconds, batch_size)
        due: list[NotificationRule] = []
        offset = 0
        async with self._session_factory() as session:
            # Page past candidates whose reminder time is still ahead
            while len(due) < batch_size:
                page = (await session.scalars(stmt.offset(offset))).all()
                due.extend(rule for rule in page if is_due(rule, now))
                if len(page) < batch_size:
                    break
                offset += batch_size
        return due[:batch_size]

    async def enqueue_delivery(self, rule: NotificationRule) -> str | None:
        """Enqueue the delivery job for a rule's current window.

        Returns:
            Job id, or None when this window's delivery is already queued
        """
        return await self._dispatcher.dispatch(DeliverNotificationJob(rule.id, key=delivery_key(rule)))

    async def dispatch_due_notifications(self, dry_run: bool = False, now: datetime | None = None) -> int:
        """Enqueue one delivery job per due rule.

        Args:
            dry_run: Count due rules without locking or enqueueing
            now: Evaluation time

        Returns:
            Number of delivery jobs enqueued (or that would be, on dry run)
        """
        REMINDER_SCANS.inc()
        rules = await self.get_due_rules(now)
        if not rules:
            return 0

        user_ids = {rule.user_id for rule in rules}
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(UserNotificationSetting).where(UserNotificationSetting.user_id.in_(user_ids))
            )
            settings_by_user = {row.user_id: row for row in rows}

        dispatched = 0
        for rule in rules:
            if not channel_enabled(settings_by_user.get(rule.user_id), rule.channel):
                continue
            if dry_run:
                dispatched += 1
                continue
            job_id = await self.enqueue_delivery(rule)
            if job_id is None:
                continue
            dispatched += 1
            NOTIFICATIONS_DISPATCHED.labels(channel=rule.channel).inc()

        logger.info("Reminder scan finished", due=len(rules), dispatched=dispatched, dry_run=dry_run)
        return dispatched

    # Delivery logs

    async def get_user_logs(self, user_id: int, limit: int = 50, offset: int = 0) -> list[NotificationLog]:
        async with self._session_factory() as session:
            result = await session.scalars(
                select(NotificationLog)
                .where(NotificationLog.user_id == user_id)
                .order_by(NotificationLog.created_at.desc(), NotificationLog.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(result)

    async def count_user_logs(self, user_id: int) -> int:
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count(NotificationLog.id)).where(NotificationLog.user_id == user_id)
            )
            return int(count or 0)

    async def get_task_logs(self, task_id: int) -> list[NotificationLog]:
        async with self._session_factory() as session:
            result = await session.scalars(
                select(NotificationLog)
                .where(NotificationLog.task_id == task_id)
                .order_by(NotificationLog.created_at.desc(), NotificationLog.id.desc())
            )
            return list(result)

    async def cancel_task_notifications(self, task_id: int) -> int:
        """Fail every pending delivery log of a task.

        Returns:
            Number of logs cancelled
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(NotificationLog)
                .where(
                    NotificationLog.task_id == task_id,
                    NotificationLog.status == DeliveryStatus.PENDING.value,
                )
                .values(status=DeliveryStatus.FAILED.value, error_message=CANCELLED_MESSAGE)
            )
            await session.commit()
            return result.rowcount

    async def mark_log_read(self, log_id: int, user_id: int) -> NotificationLog | None:
        async with self._session_factory() as session:
            entry = await session.scalar(
                select(NotificationLog).where(NotificationLog.id == log_id, NotificationLog.user_id == user_id)
            )
            if entry is None:
                return None
            if entry.read_at is None:
                entry.read_at = utcnow()
                await session.commit()
            return entry

    async def mark_all_logs_read(self, user_id: int) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                update(NotificationLog)
                .where(NotificationLog.user_id == user_id, NotificationLog.read_at.is_(None))
                .values(read_at=utcnow())
            )
            await session.commit()
            return result.rowcount

    async def unread_count(self, user_id: int) -> int:
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count(NotificationLog.id)).where(
                    NotificationLog.user_id == user_id, NotificationLog.read_at.is_(None)
                )
            )
            return int(count or 0)

    async def delete_log(self, log_id: int, user_id: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(NotificationLog).where(NotificationLog.id == log_id, NotificationLog.user_id == user_id)
            )
            await session.commit()
            return result.rowcount > 0
