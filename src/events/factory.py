"""Builds server events from committed ride state."""

from typing import Any

from core.clock import utc_now
from ride import DriverLocation, Ride, RideStatus

from .schemas import DriverLocationEvent, RideStatusChangedEvent

PRIVATE_RIDE_FIELDS = frozenset({"otp"})


def public_ride_view(ride: Ride) -> dict[str, Any]:
    """JSON-safe ride snapshot that can be shown to either participant."""
    return ride.model_dump(mode="json", exclude=set(PRIVATE_RIDE_FIELDS))


class EventFactory:
    """Factory for creating server events with the ride as correlation id."""

    @staticmethod
    def status_changed(ride: Ride, previous_status: RideStatus | None) -> RideStatusChangedEvent:
        return RideStatusChangedEvent(
            correlation_id=ride.ride_id,
            event_type=ride.status.to_event_type(),
            ride_id=ride.ride_id,
            status=ride.status,
            previous_status=previous_status,
            customer_id=ride.customer_id,
            driver_id=ride.driver_id,
            ride=public_ride_view(ride),
            timestamp=utc_now(),
        )

    @staticmethod
    def driver_location(
        ride_id: str, driver_id: str, location: DriverLocation
    ) -> DriverLocationEvent:
        return DriverLocationEvent(
            correlation_id=ride_id,
            ride_id=ride_id,
            driver_id=driver_id,
            latitude=location.latitude,
            longitude=location.longitude,
            heading=location.heading,
            speed=location.speed,
            timestamp=location.timestamp,
        )
