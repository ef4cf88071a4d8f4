"""Ride aggregate, status machine and value types."""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from fare import FareBreakdown, VehicleType

__all__ = [
    "ACTIVE_STATUSES",
    "CANCELLABLE_STATUSES",
    "TERMINAL_STATUSES",
    "TRACKED_STATUSES",
    "VALID_TRANSITIONS",
    "DriverLocation",
    "Location",
    "Ride",
    "RideStatus",
    "VehicleType",
]


class RideStatus(str, Enum):
    """Ride lifecycle states."""

    REQUESTED = "requested"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def to_event_type(self) -> str:
        """Convert status to event type (e.g., 'ride.accepted')."""
        return f"ride.{self.value}"


TERMINAL_STATUSES = frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED})

ACTIVE_STATUSES = frozenset(
    {
        RideStatus.REQUESTED,
        RideStatus.ACCEPTED,
        RideStatus.PICKED_UP,
        RideStatus.IN_PROGRESS,
    }
)

# Statuses during which a driver is attached and streaming position.
TRACKED_STATUSES = frozenset({RideStatus.ACCEPTED, RideStatus.PICKED_UP, RideStatus.IN_PROGRESS})

CANCELLABLE_STATUSES = frozenset({RideStatus.REQUESTED, RideStatus.ACCEPTED, RideStatus.PICKED_UP})

VALID_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.REQUESTED: {RideStatus.ACCEPTED, RideStatus.CANCELLED},
    RideStatus.ACCEPTED: {RideStatus.PICKED_UP, RideStatus.CANCELLED},
    RideStatus.PICKED_UP: {RideStatus.IN_PROGRESS, RideStatus.CANCELLED},
    RideStatus.IN_PROGRESS: {RideStatus.COMPLETED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
}

PaymentMethod = Literal["cash", "bkash"]
PaymentStatus = Literal["pending", "completed", "failed"]
CancellationActor = Literal["customer", "driver"]


class Location(BaseModel):
    """A named point; pickup and destination are immutable once a ride exists."""

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    address: str = ""

    model_config = {"frozen": True}

    @property
    def coordinates(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


class DriverLocation(BaseModel):
    """Latest known driver position while a ride is tracked."""

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    heading: float = Field(default=0.0, ge=0.0, lt=360.0)
    speed: float = Field(default=0.0, ge=0.0)
    timestamp: datetime


class Ride(BaseModel):
    """One customer trip request through its full lifecycle."""

    ride_id: str
    customer_id: str
    driver_id: str | None = None
    pickup: Location
    destination: Location
    vehicle_type: VehicleType
    status: RideStatus = Field(default=RideStatus.REQUESTED)
    fare: FareBreakdown
    estimated_fare: float = Field(ge=0)
    distance_km: float = Field(ge=0)
    estimated_duration_min: int = Field(ge=0)
    actual_duration_min: int | None = None
    otp: str = Field(min_length=4, max_length=4, pattern=r"^\d{4}$")
    otp_verified: bool = False
    payment_method: PaymentMethod = "cash"
    payment_status: PaymentStatus = "pending"
    driver_location: DriverLocation | None = None
    cancelled_by: CancellationActor | None = None
    cancellation_reason: str | None = None
    created_at: datetime
    accepted_at: datetime | None = None
    picked_up_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def can_transition_to(self, new_status: RideStatus) -> bool:
        return new_status in VALID_TRANSITIONS[self.status]

    def is_participant(self, user_id: str) -> bool:
        return user_id == self.customer_id or (
            self.driver_id is not None and user_id == self.driver_id
        )

    def role_of(self, user_id: str) -> CancellationActor | None:
        if user_id == self.customer_id:
            return "customer"
        if self.driver_id is not None and user_id == self.driver_id:
            return "driver"
        return None
