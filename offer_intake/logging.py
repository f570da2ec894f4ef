"""Structured logging setup using structlog.

The listener and every pool worker call :func:`setup_logging` once at
process start.  Log lines from both sides go to the same stdout stream,
so each line is stamped with the process ``role`` and ``pid``.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from .config import ServiceConfig

# Chatty client libraries that log every HTTP request at INFO
_QUIET_LOGGERS = ("httpx", "googleapiclient.discovery_cache", "pdfminer")


def _process_fields(**fields: object) -> Processor:
    fields = {k: v for k, v in fields.items() if v is not None}

    def add_process_fields(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
        for key, value in fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_process_fields


def setup_logging(
    *,
    json: bool = True,
    level: str = "INFO",
    service: str | None = None,
    role: str | None = None,
) -> None:
    """Configure structlog on top of stdlib logging for this process.

    Parameters
    ----------
    json:
        Output JSON lines (the default) or, if *False*, the console
        renderer.
    level:
        Root log level name, case-insensitive.
    service, role:
        Added to every line together with the pid when given.
    """
    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if role is not None:
        shared.append(_process_fields(service=service, role=role, pid=os.getpid()))
    shared += [
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer: Processor = (
        structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging_from_config(config: ServiceConfig, role: str = "listener") -> None:
    setup_logging(json=config.log_json, level=config.log_level, service=config.name, role=role)
