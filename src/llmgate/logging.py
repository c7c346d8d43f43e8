"""Logging configuration for the gateway."""

import logging
import sys

import structlog

from llmgate.config import get_settings

# Client libraries that log every provider and Redis round trip at INFO
NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def setup_logging() -> None:
    """Configure structured logging.

    Exception tracebacks are flattened into the event only for JSON output;
    the console renderer formats them itself.
    """
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper())

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,  # type: ignore[arg-type]
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
