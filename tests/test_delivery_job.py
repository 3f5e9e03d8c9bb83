"""Tests for reminder delivery jobs."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from taskreminder.jobs.delivery import INTERRUPTED_MESSAGE, DeliverNotificationJob, delivery_key
from taskreminder.models.job import JobOutcome, JobStatus
from taskreminder.storage.tables import NotificationLog, NotificationRule, utcnow


async def deliver(services, rule) -> tuple[str, JobOutcome]:
    job_id = await services.dispatcher.dispatch(DeliverNotificationJob(rule.id, key=delivery_key(rule)))
    envelope = await services.broker.reserve("notifications")
    return job_id, await services.runner.run(envelope)


async def logs_for(session_factory, rule_id: int) -> list[NotificationLog]:
    async with session_factory() as session:
        result = await session.scalars(
            select(NotificationLog)
            .where(NotificationLog.notification_rule_id == rule_id)
            .order_by(NotificationLog.id)
        )
        return list(result)


def test_delivery_key_tracks_last_send() -> None:
    rule = NotificationRule(id=7, last_sent_at=None)
    assert delivery_key(rule) == "notification-7-pending"

    rule.last_sent_at = utcnow().replace(microsecond=0)
    assert delivery_key(rule) == f"notification-7-{int(rule.last_sent_at.timestamp())}"


@pytest.mark.asyncio
async def test_email_reminder_sent(services, seed, senders, session_factory) -> None:
    user = await seed.user(name="Ada")
    task = await seed.task(user, title="Write report")
    rule = await seed.rule(task, offset=30, unit="minutes")

    job_id, outcome = await deliver(services, rule)

    assert outcome == JobOutcome.COMPLETED
    [message] = senders["email"].sent
    assert message.recipient_email == user.email
    assert message.subject == "Reminder: Task 'Write report' is due in 30 minutes"
    assert message.task_url.endswith(f"/tasks/{task.id}")

    [entry] = await logs_for(session_factory, rule.id)
    assert entry.status == "sent"
    assert entry.sent_at is not None
    assert entry.details["reminder_offset"] == 30
    assert entry.details["provider_id"] == "email-1"

    async with session_factory() as session:
        stored = await session.get(NotificationRule, rule.id)
    assert stored.last_sent_at == entry.sent_at

    record = await services.ledger.get(job_id)
    assert record.status == JobStatus.COMPLETED
    assert record.result == {"log_id": entry.id, "status": "sent", "channel": "email"}
    assert not await services.lock.is_locked(delivery_key(rule))


@pytest.mark.asyncio
async def test_in_app_reminder_uses_inbox_sender(services, seed, senders, session_factory) -> None:
    user = await seed.user()
    rule = await seed.rule(await seed.task(user), channel="in_app", offset=1, unit="hours")

    _, outcome = await deliver(services, rule)

    assert outcome == JobOutcome.COMPLETED
    assert senders["in_app"].sent[0].subject.endswith("is due in 1 hour")
    assert senders["email"].sent == []


@pytest.mark.asyncio
async def test_disabled_rule_skipped(services, seed, senders, session_factory) -> None:
    user = await seed.user()
    rule = await seed.rule(await seed.task(user), enabled=False)

    job_id, outcome = await deliver(services, rule)

    assert outcome == JobOutcome.COMPLETED
    assert (await services.ledger.get(job_id)).result == {"skipped": "rule_unavailable"}
    assert await logs_for(session_factory, rule.id) == []
    assert senders["email"].sent == []


@pytest.mark.asyncio
async def test_recent_send_skipped(services, seed, senders, session_factory) -> None:
    user = await seed.user()
    rule = await seed.rule(await seed.task(user))
    await seed.log(rule, status="sent", sent_at=utcnow() - timedelta(minutes=10))

    job_id, _ = await deliver(services, rule)

    assert (await services.ledger.get(job_id)).result == {"skipped": "already_sent"}
    assert senders["email"].sent == []
    assert len(await logs_for(session_factory, rule.id)) == 1


@pytest.mark.asyncio
async def test_channel_without_sender_logs_failure(services, seed, session_factory) -> None:
    user = await seed.user()
    rule = await seed.rule(await seed.task(user), channel="sms")

    job_id, outcome = await deliver(services, rule)

    assert outcome == JobOutcome.COMPLETED
    [entry] = await logs_for(session_factory, rule.id)
    assert entry.status == "failed"
    assert entry.error_message == "Unknown channel: sms"
    assert (await services.ledger.get(job_id)).result["status"] == "failed"


@pytest.mark.asyncio
async def test_sender_failure_retries_then_fails(services, seed, senders, clock, session_factory) -> None:
    senders["email"].error = "connection refused"
    user = await seed.user()
    rule = await seed.rule(await seed.task(user))
    key = delivery_key(rule)

    job_id, outcome = await deliver(services, rule)
    assert outcome == JobOutcome.RETRYING
    assert await services.lock.is_locked(key)

    for _ in range(2):
        clock.advance(60)
        outcome = await services.runner.run(await services.broker.reserve("notifications"))

    assert outcome == JobOutcome.FAILED
    record = await services.ledger.get(job_id)
    assert record.status == JobStatus.FAILED
    assert record.attempts == 3
    assert record.error_message == "email: connection refused"
    assert not await services.lock.is_locked(key)

    entries = await logs_for(session_factory, rule.id)
    assert [entry.status for entry in entries] == ["failed", "failed", "failed"]
    assert entries[0].error_message == "email: connection refused"
    async with session_factory() as session:
        assert (await session.get(NotificationRule, rule.id)).last_sent_at is None


@pytest.mark.asyncio
async def test_retry_after_transient_failure_sends_once(services, seed, senders, clock, session_factory) -> None:
    senders["email"].error = "timeout"
    user = await seed.user()
    rule = await seed.rule(await seed.task(user))

    _, outcome = await deliver(services, rule)
    assert outcome == JobOutcome.RETRYING

    senders["email"].error = None
    clock.advance(60)
    outcome = await services.runner.run(await services.broker.reserve("notifications"))

    assert outcome == JobOutcome.COMPLETED
    assert len(senders["email"].sent) == 1
    assert [entry.status for entry in await logs_for(session_factory, rule.id)] == ["failed", "sent"]


@pytest.mark.asyncio
async def test_timed_out_send_settles_pending_log(services, seed, senders, settings, session_factory) -> None:
    settings.queues["notifications"].timeout = 1
    senders["email"].delay = 5
    user = await seed.user()
    rule = await seed.rule(await seed.task(user))

    job_id, outcome = await deliver(services, rule)

    assert outcome == JobOutcome.RETRYING
    assert "timeout" in (await services.ledger.get(job_id)).error_message
    [entry] = await logs_for(session_factory, rule.id)
    assert entry.status == "failed"
    assert entry.error_message == INTERRUPTED_MESSAGE
    async with session_factory() as session:
        assert (await session.get(NotificationRule, rule.id)).last_sent_at is None
