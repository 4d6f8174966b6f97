"""
Structured logging configuration using structlog wrapping stdlib.

JSON output for services, human-readable console output otherwise. Level
and format can come from AI_ROUTE_GUARD_LOG_LEVEL and
AI_ROUTE_GUARD_LOG_FORMAT when not passed explicitly.
"""

import logging
import os
import sys
from typing import List, Optional

import structlog


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Configure structlog and the root stdlib logger.

    Args:
        level: Log level name; defaults to AI_ROUTE_GUARD_LOG_LEVEL or INFO
        json_output: Render JSON lines; defaults to AI_ROUTE_GUARD_LOG_FORMAT == "json"
    """
    if level is None:
        level = os.environ.get("AI_ROUTE_GUARD_LOG_LEVEL", "INFO")

    if json_output is None:
        json_output = os.environ.get("AI_ROUTE_GUARD_LOG_FORMAT", "").lower() == "json"

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: List[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    render_processors: List[structlog.types.Processor] = [
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
    ]
    if json_output:
        render_processors.append(structlog.processors.format_exc_info)
        render_processors.append(structlog.processors.JSONRenderer())
    else:
        render_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(processors=render_processors)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))
