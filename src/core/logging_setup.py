"""
Structured logging configuration shared by the worker and the CLI.
"""

from __future__ import annotations

import logging

import structlog

from src.core.config import settings

# Third-party loggers that are chatty at INFO during normal discovery runs.
_QUIET_LOGGERS = ("asyncio", "celery.utils.functional", "redis")


def resolve_log_level(level_name: str | None) -> int:
    normalized = (level_name or "").strip().upper()
    level_value = logging.getLevelName(normalized) if normalized else logging.INFO
    return level_value if isinstance(level_value, int) else logging.INFO


def configure_logging(*, level: str | None = None, log_format: str | None = None) -> None:
    """Configure stdlib and structlog processors; arguments override settings."""
    level_value = resolve_log_level(level or settings.LOG_LEVEL)
    logging.basicConfig(
        level=level_value,
        format="%(message)s",
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level_value, logging.WARNING))

    renderer: structlog.types.Processor
    if (log_format or settings.LOG_FORMAT).strip().lower() == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
