"""Structured logging setup.

Modules log snake_case events with keyword context::

    from app.core.logging import logger

    logger.info("workflow_started", workflow_id=workflow_id)
"""

import logging
import sys

import structlog

from app.core.config import (
    Environment,
    settings,
)


def setup_logging() -> None:
    """Configure structlog and the stdlib root logger."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    use_json = settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == Environment.PRODUCTION
    renderer = structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


setup_logging()

logger = structlog.get_logger()
