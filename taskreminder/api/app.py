"""HTTP surface: reminder rules, inbox, job status and queue operations.

Every error leaves the service in the ``{code, message, data}`` envelope used
by successful responses, so clients parse a single shape.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from taskreminder.api.routes import jobs, notifications, queues, rules
from taskreminder.core.config import Settings, get_settings
from taskreminder.core.exceptions import (
    JobNotFoundError,
    RuleNotFoundError,
    TaskNotFoundError,
    TaskReminderError,
    UserNotFoundError,
)
from taskreminder.core.logging import get_logger, setup_logging
from taskreminder.services import AppServices, build_services
from taskreminder.storage.database import close_database, get_session_factory, init_database
from taskreminder.storage.redis_client import close_redis_pool, get_redis, init_redis_pool

logger = get_logger(__name__)

_NOT_FOUND_ERRORS = (RuleNotFoundError, TaskNotFoundError, UserNotFoundError, JobNotFoundError)


def _error(status_code: int, message: str, data: Any = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"code": status_code, "message": message, "data": data})


async def init_services(settings: Settings) -> AppServices:
    """Open the database and Redis pools and wire the services."""
    await init_database()
    await init_redis_pool(settings)
    logger.info("Storage connections opened", queue_backend=settings.queue_backend)
    return build_services(settings, get_session_factory(), redis=get_redis())


async def close_services(services: AppServices) -> None:
    await services.close()
    await close_redis_pool()
    await close_database()
    logger.info("Storage connections closed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    setup_logging(settings, component="api")
    logger.info("API starting", app_name=settings.app_name, version=settings.app_version)
    app.state.services = await init_services(settings)
    try:
        yield
    finally:
        logger.info("API stopping")
        await close_services(app.state.services)


def register_error_handlers(app: FastAPI, settings: Settings) -> None:
    """Map framework and domain errors onto the response envelope.

    Lookups of unknown rules, tasks, users or jobs become 404; any other
    ``TaskReminderError`` is a 400. Unexpected exceptions are logged and
    returned as 500, with the exception text exposed only in debug mode.
    """

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException) -> JSONResponse:
        if isinstance(exc.detail, str):
            return _error(exc.status_code, exc.detail)
        return _error(exc.status_code, "HTTP error", exc.detail)

    @app.exception_handler(TaskReminderError)
    async def domain_error(request: Request, exc: TaskReminderError) -> JSONResponse:
        return _error(404 if isinstance(exc, _NOT_FOUND_ERRORS) else 400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(422, "Validation error", exc.errors())

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled API error", exc_info=exc, path=request.url.path, method=request.method)
        return _error(500, "Internal server error", str(exc) if settings.debug else None)


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Task reminder scheduling and background job service",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for module in (rules, notifications, jobs, queues):
        app.include_router(module.router, prefix="/api/v1")

    register_error_handlers(app, settings)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": settings.app_version}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
