"""Reminder delivery job."""

import asyncio
from datetime import timedelta
from typing import Any, ClassVar

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskreminder.core.exceptions import UnsupportedChannelError
from taskreminder.core.logging import get_logger
from taskreminder.jobs.base import Job, JobExecutionContext
from taskreminder.models.notification import DeliveryStatus
from taskreminder.notification.message import compose_reminder
from taskreminder.observability.metrics import NOTIFICATIONS_SENT
from taskreminder.storage.database import SessionFactory
from taskreminder.storage.tables import NotificationLog, NotificationRule, utcnow

logger = get_logger(__name__)

INTERRUPTED_MESSAGE = "Delivery interrupted before the sender returned"


def delivery_key(rule: NotificationRule) -> str:
    """Idempotency key of the delivery due for a rule in its current window."""
    stamp = str(int(rule.last_sent_at.timestamp())) if rule.last_sent_at else "pending"
    return f"notification-{rule.id}-{stamp}"


async def has_recent_sent_log(session: AsyncSession, rule_id: int, window_seconds: int) -> bool:
    """Whether a sent delivery log exists for the rule inside the dedup window."""
    since = utcnow() - timedelta(seconds=window_seconds)
    found = await session.scalar(
        select(NotificationLog.id)
        .where(
            NotificationLog.notification_rule_id == rule_id,
            NotificationLog.status == DeliveryStatus.SENT.value,
            NotificationLog.sent_at >= since,
        )
        .limit(1)
    )
    return found is not None


class DeliverNotificationJob(Job):
    """Deliver one reminder for one rule.

    State is re-read at execution time, so a rule that was disabled, deleted
    or already notified since the job was queued is skipped.
    """

    job_type: ClassVar[str] = "deliver_notification"
    queue: ClassVar[str] = "notifications"
    max_attempts: ClassVar[int | None] = 3
    timeout_seconds: ClassVar[int] = 60
    backoff: ClassVar[tuple[int, ...]] = (60,)

    def __init__(self, rule_id: int, key: str | None = None):
        self.rule_id = rule_id
        self.key = key

    def unique_id(self) -> str | None:
        return self.key

    def to_payload(self) -> dict[str, Any]:
        return {"rule_id": self.rule_id, "key": self.key}

    async def execute(self, ctx: JobExecutionContext) -> dict[str, Any] | None:
        resources = ctx.resources
        settings = resources.settings
        log = logger.bind(rule_id=self.rule_id)

        async with resources.session_factory() as session:
            rule = await session.get(NotificationRule, self.rule_id)
            if rule is None or not rule.is_enabled:
                log.info("Rule missing or disabled, skipping delivery")
                return {"skipped": "rule_unavailable"}
            task, user = rule.task, rule.user
            if task is None or user is None:
                log.info("Task or user missing, skipping delivery")
                return {"skipped": "task_unavailable"}

            if await has_recent_sent_log(session, rule.id, settings.dedup_window_seconds):
                log.info("Reminder already sent in window, skipping delivery")
                return {"skipped": "already_sent"}

            message = compose_reminder(rule, task, user, settings.app_url)
            entry = NotificationLog(
                notification_rule_id=rule.id,
                user_id=user.id,
                task_id=task.id,
                channel=rule.channel,
                status=DeliveryStatus.PENDING.value,
                details=dict(message.metadata),
            )
            session.add(entry)
            await session.commit()
            log_id = entry.id
            channel = rule.channel
            await ctx.update_progress(50)

            sender = resources.senders.get(channel)
            if sender is None:
                error = UnsupportedChannelError(channel)
                await self._settle(session, log_id, DeliveryStatus.FAILED, {NotificationLog.error_message: str(error)})
                await session.commit()
                NOTIFICATIONS_SENT.labels(channel=channel, status=DeliveryStatus.FAILED.value).inc()
                log.warning("No sender for channel", channel=channel)
                return {"log_id": log_id, "status": DeliveryStatus.FAILED.value, "error": str(error)}

            try:
                details = await sender.send(message)
            except asyncio.CancelledError:
                # Timeout or shutdown; the pending log is settled before unwinding
                await asyncio.shield(self._abandon(resources.session_factory, log_id))
                NOTIFICATIONS_SENT.labels(channel=channel, status=DeliveryStatus.FAILED.value).inc()
                log.warning("Delivery interrupted", channel=channel, log_id=log_id)
                raise
            except Exception as e:
                await self._settle(session, log_id, DeliveryStatus.FAILED, {NotificationLog.error_message: str(e)})
                await session.commit()
                NOTIFICATIONS_SENT.labels(channel=channel, status=DeliveryStatus.FAILED.value).inc()
                raise

            sent_at = utcnow()
            await self._settle(
                session,
                log_id,
                DeliveryStatus.SENT,
                {NotificationLog.sent_at: sent_at, NotificationLog.details: {**entry.details, **details}},
            )
            await session.execute(
                update(NotificationRule).where(NotificationRule.id == rule.id).values(last_sent_at=sent_at)
            )
            await session.commit()

        NOTIFICATIONS_SENT.labels(channel=channel, status=DeliveryStatus.SENT.value).inc()
        log.info("Reminder delivered", channel=channel, log_id=log_id)
        return {"log_id": log_id, "status": DeliveryStatus.SENT.value, "channel": channel}

    @staticmethod
    async def _settle(
        session: AsyncSession, log_id: int, status: DeliveryStatus, values: dict[Any, Any]
    ) -> None:
        # Only a pending log may move, and only once
        await session.execute(
            update(NotificationLog)
            .where(NotificationLog.id == log_id, NotificationLog.status == DeliveryStatus.PENDING.value)
            .values({NotificationLog.status: status.value, **values})
        )

    @classmethod
    async def _abandon(cls, session_factory: SessionFactory, log_id: int) -> None:
        async with session_factory() as session:
            await cls._settle(
                session, log_id, DeliveryStatus.FAILED, {NotificationLog.error_message: INTERRUPTED_MESSAGE}
            )
            await session.commit()
