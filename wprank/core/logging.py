"""
Structured logging using structlog.
JSON lines for the worker and Celery in production, colored console locally.
Every event carries the service name and deployment environment.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from wprank.core.config import Settings

SERVICE_NAME = "wprank"

# Libraries that log every request or statement at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "celery.app.trace", "asyncio")


def add_severity(logger: Any, method: str, event_dict: EventDict) -> EventDict:
    """Severity field for log collectors that ignore `level`."""
    event_dict["severity"] = {"warn": "WARNING", "exception": "ERROR"}.get(method, method.upper())
    return event_dict


def service_context(settings: Settings) -> Processor:
    def add_service(logger: Any, method: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("env", settings.ENV)
        return event_dict

    return add_service


def configure_logging(settings: Settings) -> None:
    log_level = getattr(logging, settings.LOG_LEVEL, logging.INFO)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        service_context(settings),
        add_severity,
    ]
    if settings.LOG_FORMAT == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging (sqlalchemy, httpx, celery) to the same stream
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    # Per-request and per-statement chatter only when debugging
    if log_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
