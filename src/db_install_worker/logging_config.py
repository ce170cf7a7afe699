"""structlog setup shared by the CLI commands."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


def configure_logging(level: str = "info", *, json_output: bool = True) -> None:
    """Route structlog through stdlib logging with JSON or console rendering."""
    log_level = logging.getLevelNamesMapping().get(level.upper())
    if log_level is None:
        msg = f"Unknown log level: {level}"
        raise ValueError(msg)

    logging.basicConfig(
        format="%(message)s", stream=sys.stderr, level=log_level, force=True
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
