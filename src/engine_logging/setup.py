"""Root logger wiring for the dispatch service."""

import logging
import os
import sys
from typing import TextIO

from .context import ContextFilter
from .filters import DefaultCorrelationFilter, PIIFilter
from .formatters import DevFormatter, JSONFormatter

# Libraries that log every statement or request at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "uvicorn.access", "httpx")


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    environment: str | None = None,
    stream: TextIO | None = None,
) -> logging.Handler:
    """Replace root handlers with one filtered stream handler and return it.

    Masking runs before context injection so ride fields are never rewritten.
    """
    environment = environment or os.environ.get("ENVIRONMENT", "development")
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter(environment) if json_output else DevFormatter())
    for log_filter in (PIIFilter(), ContextFilter(), DefaultCorrelationFilter()):
        handler.addFilter(log_filter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.getLevelName(level.upper()))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler
