# festgate/infra/logs.py
from __future__ import annotations
import logging
import sys
import typing as t

import structlog

from ..config import LOG_FORMAT, LOG_LEVEL, EVENT_CODE

_CONFIGURED = False


def add_app_context(
    logger: t.Any, method_name: str, event_dict: dict[str, t.Any]
) -> dict[str, t.Any]:
    event_dict["service"] = "festgate"
    event_dict["event_code"] = EVENT_CODE
    return event_dict


def configure_logging(level: str = LOG_LEVEL, fmt: str = LOG_FORMAT) -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return

    renderer: t.Any
    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_app_context,
        renderer,
    ]

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level, logging.INFO),
    )
    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True
