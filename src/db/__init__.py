"""Ride persistence module."""

from .database import init_database
from .schema import EngineMetadata, RideHistoryRecord, RideLocationRecord, RideRecord
from .transaction import transaction

__all__ = [
    "init_database",
    "EngineMetadata",
    "RideHistoryRecord",
    "RideLocationRecord",
    "RideRecord",
    "transaction",
]
