"""JSON and console formatters for dispatch logs."""

import json
import logging
from datetime import UTC, datetime
from typing import Any

# Ride-scoped fields copied into JSON output when present on the record
CONTEXT_FIELDS = ("ride_id", "driver_id", "customer_id", "connection_id", "correlation_id")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, stamped with the record's creation time."""

    def __init__(self, environment: str = "development"):
        super().__init__()
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "env": self.environment,
        }
        payload.update(
            (name, record.__dict__[name]) for name in CONTEXT_FIELDS if name in record.__dict__
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class DevFormatter(logging.Formatter):
    """Console format; appends ``[ride=<id>]`` when a ride is in context."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ride_id = getattr(record, "ride_id", None)
        return f"{line} [ride={ride_id}]" if ride_id else line
