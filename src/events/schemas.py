"""Typed real-time messages.

Server events travel over the Redis channel and down each WebSocket; client
messages arrive on the WebSocket. Both are tagged unions keyed by ``type``
and validated at the boundary.
"""

import json
from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ValidationError
from ride import RideStatus


class CorrelationMixin(BaseModel):
    """Tracing fields shared by server events."""

    event_id: UUID = Field(default_factory=uuid4)
    correlation_id: str | None = Field(default=None, description="Usually the ride_id")


class DriverLocationEvent(CorrelationMixin):
    """Live driver position for everyone watching a ride."""

    type: Literal["driver_location"] = "driver_location"
    ride_id: str
    driver_id: str
    latitude: float
    longitude: float
    heading: float = 0.0
    speed: float = 0.0
    timestamp: datetime


class RideStatusChangedEvent(CorrelationMixin):
    """A committed lifecycle transition."""

    type: Literal["ride_status_changed"] = "ride_status_changed"
    event_type: str = Field(description="e.g. 'ride.accepted'")
    ride_id: str
    status: RideStatus
    previous_status: RideStatus | None = None
    customer_id: str
    driver_id: str | None = None
    # Ride snapshot without the pickup code
    ride: dict[str, Any]
    timestamp: datetime


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    code: str
    message: str
    ride_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class AckMessage(BaseModel):
    type: Literal["ack"] = "ack"
    action: str
    ride_id: str | None = None
    applied: bool = True


class JoinRideMessage(BaseModel):
    type: Literal["join_ride"]
    ride_id: str = Field(min_length=1)


class LeaveRideMessage(BaseModel):
    type: Literal["leave_ride"]
    ride_id: str = Field(min_length=1)


class LocationUpdateMessage(BaseModel):
    type: Literal["location_update"]
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    heading: float = Field(default=0.0, ge=0.0, lt=360.0)
    speed: float = Field(default=0.0, ge=0.0)
    timestamp: datetime | None = None
    ride_id: str | None = None


class RideStatusUpdateMessage(BaseModel):
    type: Literal["ride_status_update"]
    ride_id: str = Field(min_length=1)
    status: RideStatus
    otp: str | None = None
    final_fare: float | None = None


ServerEvent = Annotated[
    DriverLocationEvent | RideStatusChangedEvent,
    Field(discriminator="type"),
]

ClientMessage = Annotated[
    JoinRideMessage | LeaveRideMessage | LocationUpdateMessage | RideStatusUpdateMessage,
    Field(discriminator="type"),
]

_server_event_adapter: TypeAdapter[ServerEvent] = TypeAdapter(ServerEvent)
_client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_server_event(raw: str | bytes | dict[str, Any]) -> ServerEvent:
    """Decode an event read from the fan-out channel."""
    try:
        if isinstance(raw, dict):
            return _server_event_adapter.validate_python(raw)
        return _server_event_adapter.validate_json(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            "Malformed server event",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


def parse_client_message(raw: str | bytes | dict[str, Any]) -> ClientMessage:
    """Decode a client WebSocket message.

    Raises:
        ValidationError: not JSON, unknown ``type``, or invalid fields
    """
    try:
        if isinstance(raw, dict):
            return _client_message_adapter.validate_python(raw)
        return _client_message_adapter.validate_python(json.loads(raw))
    except json.JSONDecodeError as e:
        raise ValidationError("Message is not valid JSON") from e
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid message",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e
