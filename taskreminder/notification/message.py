"""Reminder message composition."""

from datetime import datetime
from html import escape

from pydantic import BaseModel, Field

from taskreminder.storage.tables import NotificationRule, Task, User

_UNIT_WORDS = {"minutes": "minute", "hours": "hour", "days": "day"}


class ReminderMessage(BaseModel):
    """Channel-neutral rendering of one reminder."""

    recipient_email: str
    recipient_name: str = ""
    subject: str
    text: str
    html: str
    task_id: int
    task_url: str
    due_date: datetime | None = None
    metadata: dict[str, str | int | None] = Field(default_factory=dict)


def reminder_text(offset: int, unit: str) -> str:
    """Human phrase for a reminder offset, e.g. ``in 2 hours``."""
    word = _UNIT_WORDS.get(unit, "minute")
    return f"in {offset} {word}{'s' if offset > 1 else ''}"


def compose_reminder(rule: NotificationRule, task: Task, user: User, app_url: str) -> ReminderMessage:
    """Render the reminder for a rule.

    Args:
        rule: Rule being delivered
        task: Rule's task
        user: Recipient
        app_url: Frontend base URL used for the task link

    Returns:
        Message ready for any sender
    """
    when = reminder_text(rule.reminder_offset, rule.reminder_unit)
    task_url = f"{app_url.rstrip('/')}/tasks/{task.id}"
    due = task.due_date.strftime("%Y-%m-%d %H:%M UTC") if task.due_date else "no due date"

    lines = [f"Hi {user.name or user.email},", "", f"Your task \"{task.title}\" is due {when} ({due})."]
    if task.description:
        lines += ["", task.description]
    lines += ["", f"Open the task: {task_url}"]
    text = "\n".join(lines)

    html = (
        "<html><body>"
        + "<br>".join(escape(line) for line in lines[:-1])
        + f"<br><a href=\"{escape(task_url)}\">Open the task</a>"
        + "</body></html>"
    )

    return ReminderMessage(
        recipient_email=user.email,
        recipient_name=user.name,
        subject=f"Reminder: Task '{task.title}' is due {when}",
        text=text,
        html=html,
        task_id=task.id,
        task_url=task_url,
        due_date=task.due_date,
        metadata={
            "reminder_offset": rule.reminder_offset,
            "reminder_unit": rule.reminder_unit,
            "due_date": task.due_date.isoformat() if task.due_date else None,
        },
    )
