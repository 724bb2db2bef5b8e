"""Structured logging setup for the worker process.

JSON lines in production, console output in development. Modules obtain
loggers via ``structlog.get_logger(__name__)`` and log dotted event names
(``driver.page_fetched``) with keyword context. Once the worker knows its
integration, every line carries ``integration_id``.
"""

from __future__ import annotations

import logging
import sys

import structlog

from src.bridge.config import Environment, get_settings


def _renderer(environment: Environment) -> structlog.types.Processor:
    if environment == Environment.production:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def configure_structlog(integration_id: str | None = None) -> None:
    """Route structlog through stdlib logging at ``LOG_LEVEL``."""
    settings = get_settings()
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            _renderer(settings.ENVIRONMENT),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    if integration_id:
        structlog.contextvars.bind_contextvars(integration_id=integration_id)
