"""Structured logging configuration with structlog."""

import logging
import os
import sys

import structlog

# Third-party loggers that are chatty at INFO during a scrape pass.
_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "trafilatura", "readability")

_SOURCE_KEYS = ("source_id", "source_url")


def configure_logging(log_level: str = "INFO", environment: str | None = None) -> None:
    """
    Route stdlib and structlog output to stdout.

    Production renders one JSON object per event; anything else gets the
    coloured console renderer. Events logged while a source is being scraped
    carry ``source_id`` and ``source_url`` (see :func:`bind_source_context`).

    Args:
        log_level: Level name, already validated by ``Settings``
        environment: ``production`` or ``development``; read from ENVIRONMENT when None
    """
    level = logging.getLevelName(log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    environment = (environment or os.getenv("ENVIRONMENT", "development")).lower()
    if environment == "production":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        exc_processor: structlog.types.Processor = structlog.processors.format_exc_info
    else:
        renderer = structlog.dev.ConsoleRenderer()
        exc_processor = structlog.dev.set_exc_info

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            exc_processor,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def bind_source_context(source_id: str, source_url: str) -> None:
    """Attach the source being scraped to every event logged by the current task."""
    structlog.contextvars.bind_contextvars(source_id=source_id, source_url=source_url)


def clear_source_context() -> None:
    structlog.contextvars.unbind_contextvars(*_SOURCE_KEYS)
