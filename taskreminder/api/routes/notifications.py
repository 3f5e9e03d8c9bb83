"""Delivery log inbox and user notification settings routes."""

from fastapi import APIRouter, HTTPException

from taskreminder.api.deps import PaginationDep, ReminderServiceDep
from taskreminder.schemas.common import APIResponse, PaginatedResponse
from taskreminder.schemas.rule import DeliveryLogResponse, UserSettingsResponse, UserSettingsUpdate

router = APIRouter(prefix="/users/{user_id}", tags=["notifications"])


@router.get("/notifications", response_model=PaginatedResponse[DeliveryLogResponse])
async def list_notifications(
    user_id: int,
    reminders: ReminderServiceDep,
    pagination: PaginationDep,
) -> PaginatedResponse[DeliveryLogResponse]:
    """List a user's delivery logs, newest first."""
    logs = await reminders.get_user_logs(user_id, limit=pagination.limit, offset=pagination.offset)
    return PaginatedResponse(
        data=[DeliveryLogResponse.model_validate(entry) for entry in logs],
        total=await reminders.count_user_logs(user_id),
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.get("/notifications/unread-count", response_model=APIResponse[int])
async def unread_count(user_id: int, reminders: ReminderServiceDep) -> APIResponse[int]:
    return APIResponse(data=await reminders.unread_count(user_id))


@router.post("/notifications/{log_id}/read", response_model=APIResponse[DeliveryLogResponse])
async def mark_read(user_id: int, log_id: int, reminders: ReminderServiceDep) -> APIResponse[DeliveryLogResponse]:
    entry = await reminders.mark_log_read(log_id, user_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Notification {log_id} not found")
    return APIResponse(data=DeliveryLogResponse.model_validate(entry))


@router.post("/notifications/read-all", response_model=APIResponse[int])
async def mark_all_read(user_id: int, reminders: ReminderServiceDep) -> APIResponse[int]:
    """Mark every unread log of the user as read; returns how many changed."""
    return APIResponse(data=await reminders.mark_all_logs_read(user_id))


@router.delete("/notifications/{log_id}", response_model=APIResponse)
async def delete_notification(user_id: int, log_id: int, reminders: ReminderServiceDep) -> APIResponse:
    if not await reminders.delete_log(log_id, user_id):
        raise HTTPException(status_code=404, detail=f"Notification {log_id} not found")
    return APIResponse(message=f"Notification {log_id} deleted")


@router.get("/notification-settings", response_model=APIResponse[UserSettingsResponse])
async def get_settings(user_id: int, reminders: ReminderServiceDep) -> APIResponse[UserSettingsResponse]:
    settings = await reminders.get_user_settings(user_id)
    return APIResponse(data=UserSettingsResponse.model_validate(settings))


@router.patch("/notification-settings", response_model=APIResponse[UserSettingsResponse])
async def update_settings(
    user_id: int,
    data: UserSettingsUpdate,
    reminders: ReminderServiceDep,
) -> APIResponse[UserSettingsResponse]:
    settings = await reminders.update_user_settings(user_id, data)
    return APIResponse(data=UserSettingsResponse.model_validate(settings))
