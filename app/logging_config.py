"""
Structured logging configuration using structlog.

JSON lines by default; a colored console renderer when running at DEBUG.
Recovery executions log with ``execution_id`` and ``step_id`` bound, so
one execution can be followed across the worker's output.
"""

import logging
import sys
from typing import Optional

import structlog

from .config import settings

# Loggers that are too chatty at INFO for a recovery worker
_QUIET_LOGGERS = ("uvicorn.access", "httpcore", "httpx", "asyncio")


def setup_logging(log_level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """Configure structlog and route stdlib logging through it.

    Args:
        log_level: Override log level (default: from settings.log_level)
        json_logs: Force JSON (True) or console (False) output. Defaults to
            console at DEBUG and JSON otherwise.
    """
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    use_json = json_logs if json_logs is not None else level != logging.DEBUG

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if use_json:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
