"""API dependency injection."""

from typing import Annotated

from fastapi import Depends, Query, Request

from taskreminder.jobs.dispatch import JobDispatcher
from taskreminder.jobs.ledger import JobLedger
from taskreminder.monitoring.queue_monitor import QueueMonitor
from taskreminder.reminders.service import ReminderService
from taskreminder.schemas.common import PaginationParams
from taskreminder.services import AppServices


def get_services(request: Request) -> AppServices:
    """Services built by the application lifespan."""
    return request.app.state.services


ServicesDep = Annotated[AppServices, Depends(get_services)]


def get_reminder_service(services: ServicesDep) -> ReminderService:
    return services.reminders


def get_queue_monitor(services: ServicesDep) -> QueueMonitor:
    return services.monitor


def get_job_ledger(services: ServicesDep) -> JobLedger:
    return services.ledger


def get_job_dispatcher(services: ServicesDep) -> JobDispatcher:
    return services.dispatcher


# Type aliases for dependency injection
ReminderServiceDep = Annotated[ReminderService, Depends(get_reminder_service)]
QueueMonitorDep = Annotated[QueueMonitor, Depends(get_queue_monitor)]
JobLedgerDep = Annotated[JobLedger, Depends(get_job_ledger)]
JobDispatcherDep = Annotated[JobDispatcher, Depends(get_job_dispatcher)]


def get_pagination(
    page: int = Query(default=1, ge=1, description="Page number"),
    page_size: int = Query(default=20, ge=1, le=100, description="Items per page"),
) -> PaginationParams:
    """Get pagination parameters from query."""
    return PaginationParams(page=page, page_size=page_size)


PaginationDep = Annotated[PaginationParams, Depends(get_pagination)]
