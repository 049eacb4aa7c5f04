"""Structured logging configuration."""

from __future__ import annotations

import logging
import os
import sys
from typing import TextIO

import structlog
from structlog.types import Processor


def setup_logging(
    service_name: str = "mymoto-telemetry", stream: TextIO | None = None
) -> structlog.stdlib.BoundLogger:
    """Configure structlog over the stdlib logging module.

    LOG_LEVEL picks the threshold and LOG_FORMAT ("json" or "console") the
    renderer. Records go to stderr unless another stream is given; stdout
    belongs to the MCP stdio transport. Safe to call more than once.
    """
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_format = os.getenv("LOG_FORMAT", "console").lower()

    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stderr,
        level=getattr(logging, level, logging.INFO),
    )

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    def add_service_name(logger, method_name, event_dict):
        event_dict["service"] = service_name
        return event_dict

    processors.append(add_service_name)

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger(service_name)
