"""
Structured logging configuration for sandbox-bridge.

Configures structlog on top of the standard logging module. The worker
process must log to stderr because its stdout carries the channel frames.
"""

import logging
import sys
from typing import Any, Optional, TextIO

import structlog


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "text",
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure structlog for console or JSON logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "text" for human-readable output, "json" for structured logs
        stream: Output stream, stderr when omitted
    """
    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True,
    )

    if log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
