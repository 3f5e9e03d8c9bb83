"""Reminder rule API routes."""

from fastapi import APIRouter

from taskreminder.api.deps import ReminderServiceDep
from taskreminder.schemas.common import APIResponse
from taskreminder.schemas.rule import RuleCreate, RuleResponse, RuleUpdate

router = APIRouter(tags=["rules"])


@router.post("/rules", response_model=APIResponse[RuleResponse], status_code=201)
async def create_rule(data: RuleCreate, reminders: ReminderServiceDep) -> APIResponse[RuleResponse]:
    """Create a reminder rule for a task."""
    rule = await reminders.create_rule(data)
    return APIResponse(data=RuleResponse.model_validate(rule))


@router.get("/rules/{rule_id}", response_model=APIResponse[RuleResponse])
async def get_rule(rule_id: int, reminders: ReminderServiceDep) -> APIResponse[RuleResponse]:
    rule = await reminders.get_rule(rule_id)
    return APIResponse(data=RuleResponse.model_validate(rule))


@router.patch("/rules/{rule_id}", response_model=APIResponse[RuleResponse])
async def update_rule(rule_id: int, data: RuleUpdate, reminders: ReminderServiceDep) -> APIResponse[RuleResponse]:
    """Change offset, unit or enabled flag; omitted fields are kept."""
    rule = await reminders.update_rule(rule_id, data)
    return APIResponse(data=RuleResponse.model_validate(rule))


@router.delete("/rules/{rule_id}", response_model=APIResponse)
async def delete_rule(rule_id: int, reminders: ReminderServiceDep) -> APIResponse:
    await reminders.delete_rule(rule_id)
    return APIResponse(message=f"Rule {rule_id} deleted")


@router.post("/rules/{rule_id}/toggle", response_model=APIResponse[RuleResponse])
async def toggle_rule(rule_id: int, reminders: ReminderServiceDep) -> APIResponse[RuleResponse]:
    """Enable a disabled rule or disable an enabled one."""
    rule = await reminders.toggle_rule(rule_id)
    return APIResponse(data=RuleResponse.model_validate(rule))


@router.get("/tasks/{task_id}/rules", response_model=APIResponse[list[RuleResponse]])
async def list_task_rules(
    task_id: int,
    reminders: ReminderServiceDep,
    user_id: int | None = None,
) -> APIResponse[list[RuleResponse]]:
    rules = await reminders.get_task_rules(task_id, user_id=user_id)
    return APIResponse(data=[RuleResponse.model_validate(rule) for rule in rules])


@router.post("/tasks/{task_id}/rules/default", response_model=APIResponse[RuleResponse], status_code=201)
async def create_default_rule(task_id: int, reminders: ReminderServiceDep) -> APIResponse[RuleResponse]:
    """Create the task's email rule from its owner's default offset."""
    rule = await reminders.create_default_rule_for_task(task_id)
    return APIResponse(data=RuleResponse.model_validate(rule))
