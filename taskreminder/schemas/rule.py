"""Reminder rule API schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from taskreminder.models.notification import DeliveryStatus
from taskreminder.models.reminder import Channel, ReminderUnit


class RuleCreate(BaseModel):
    """Schema for creating a reminder rule."""

    user_id: int = Field(..., description="Owner user ID")
    task_id: int = Field(..., description="Task the reminder belongs to")
    channel: Channel = Field(default=Channel.EMAIL, description="Delivery channel")
    reminder_offset: int = Field(default=30, ge=0, description="Offset before the due date")
    reminder_unit: ReminderUnit = Field(default=ReminderUnit.MINUTES, description="Offset unit")
    is_enabled: bool = Field(default=True, description="Whether the rule is enabled")


class RuleUpdate(BaseModel):
    """Schema for updating an existing rule."""

    reminder_offset: int | None = Field(default=None, ge=0)
    reminder_unit: ReminderUnit | None = None
    is_enabled: bool | None = None


class RuleResponse(BaseModel):
    """Schema for rule response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    task_id: int
    channel: str
    reminder_offset: int
    reminder_unit: str
    is_enabled: bool
    last_sent_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class UserSettingsUpdate(BaseModel):
    """Schema for updating a user's notification settings."""

    email_notifications_enabled: bool | None = None
    in_app_notifications_enabled: bool | None = None
    timezone: str | None = Field(default=None, max_length=64)
    default_reminder_offset: int | None = Field(default=None, ge=0)
    default_reminder_unit: ReminderUnit | None = None


class UserSettingsResponse(BaseModel):
    """Schema for a user's notification settings."""

    model_config = ConfigDict(from_attributes=True)

    user_id: int
    email_notifications_enabled: bool
    in_app_notifications_enabled: bool
    timezone: str
    default_reminder_offset: int
    default_reminder_unit: str


class DeliveryLogResponse(BaseModel):
    """Schema for delivery log response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    notification_rule_id: int
    task_id: int
    user_id: int
    channel: str
    status: DeliveryStatus
    sent_at: datetime | None = None
    read_at: datetime | None = None
    error_message: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class DispatchResponse(BaseModel):
    """Schema for a reminder scan result."""

    dispatched: int = Field(..., ge=0, description="Delivery jobs enqueued (or that would be, on dry run)")
    dry_run: bool = Field(default=False)
