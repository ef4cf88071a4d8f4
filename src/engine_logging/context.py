"""Per-operation logging context for ride fields.

Fields live in a ContextVar so they follow a ride operation into
threadpool workers and stay isolated between concurrent asyncio tasks.
"""

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from types import MappingProxyType
from typing import Any

_EMPTY: Mapping[str, Any] = MappingProxyType({})
_fields: ContextVar[Mapping[str, Any]] = ContextVar("dispatch_log_fields", default=_EMPTY)


class LogContext:
    """Read and write the fields attached to the current operation."""

    @staticmethod
    def get() -> dict[str, Any]:
        return dict(_fields.get())

    @staticmethod
    def set(**kwargs: Any) -> None:
        _fields.set(MappingProxyType({**_fields.get(), **kwargs}))

    @staticmethod
    def clear() -> None:
        _fields.set(_EMPTY)


class ContextFilter(logging.Filter):
    """Copies context fields onto records that do not already carry them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _fields.get().items():
            record.__dict__.setdefault(key, value)
        return True


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Attach fields to every record logged inside the block.

    None values are dropped. The outer fields come back on exit.
    """
    merged = {**_fields.get(), **{k: v for k, v in kwargs.items() if v is not None}}
    token = _fields.set(MappingProxyType(merged))
    try:
        yield
    finally:
        _fields.reset(token)


@contextmanager
def log_ride_context(ride_id: str | None, **kwargs: Any) -> Iterator[None]:
    """Ride-scoped context; the ride id doubles as correlation id."""
    kwargs.setdefault("correlation_id", ride_id)
    with log_context(ride_id=ride_id, **kwargs):
        yield
