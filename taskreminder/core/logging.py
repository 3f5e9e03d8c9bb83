"""Structured logging for the API and worker processes.

Both processes share one structlog pipeline. Records from third-party
libraries that use stdlib ``logging`` (SQLAlchemy, aio-pika, uvicorn) are
routed to the same stream so a deployment sees a single format.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from taskreminder.core.config import Settings, get_settings

# Libraries whose INFO output is mostly connection chatter
_QUIET_LOGGERS = ("sqlalchemy.engine", "aio_pika", "aiormq", "asyncio")


def setup_logging(settings: Settings | None = None, component: str | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        settings: Settings to read ``debug`` and ``log_level`` from; the
            cached application settings are used when omitted.
        component: Process role (``api`` or ``worker``) bound into every
            record emitted from this process.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.debug:
        renderer: list[Processor] = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=[*shared_processors, *renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.contextvars.clear_contextvars()
    if component:
        structlog.contextvars.bind_contextvars(component=component)


def get_logger(name: str | None = None, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Return a logger, optionally bound to initial context values."""
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def get_alert_logger() -> structlog.stdlib.BoundLogger:
    """Logger for operator-facing alerts."""
    return get_logger("alerts", channel="alerts")
