"""Request -> match -> accept orchestration and every external ride operation."""

import logging
import math
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from opentelemetry import metrics
from sqlalchemy.orm import Session, sessionmaker

from core.clock import Clock, as_naive_utc, utc_now
from core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from db.repositories.ride_repository import RideRepository
from db.transaction import transaction
from engine_logging import log_ride_context
from events.factory import EventFactory
from events.schemas import DriverLocationEvent, RideStatusChangedEvent
from fare import FareCalculator, FareQuote, VehicleType, parse_vehicle_type
from geo.cells import cells_within
from geo.distance import haversine_distance_km, rank_by_distance, validate_coordinates
from ride import TRACKED_STATUSES, DriverLocation, Location, Ride, RideStatus
from settings import DispatchSettings

from .geo_index import GeoIndex, NearbyDriver
from .ride_lifecycle import RideLifecycle
from .surge_pricing import SurgeConditions, SurgePricingCalculator

logger = logging.getLogger(__name__)

_meter = metrics.get_meter("dispatch")

rides_requested = _meter.create_counter(
    name="dispatch_rides_requested_total",
    description="Rides created in requested state",
    unit="1",
)
accept_outcomes = _meter.create_counter(
    name="dispatch_accept_outcomes_total",
    description="Accept attempts by outcome (accepted, conflict, not_found)",
    unit="1",
)
status_transitions = _meter.create_counter(
    name="dispatch_status_transitions_total",
    description="Committed lifecycle transitions by target status",
    unit="1",
)

USER_ROLES = ("customer", "driver")
PAYMENT_METHODS = ("cash", "bkash")


class EventPublisher(Protocol):
    def publish(self, event: DriverLocationEvent | RideStatusChangedEvent) -> bool: ...


@dataclass(frozen=True)
class NearbyRide:
    ride: Ride
    distance_km: float


@dataclass(frozen=True)
class LocationAck:
    """Result of a location ping; applied is False for out-of-order pings."""

    applied: bool
    ride_id: str | None = None


@dataclass(frozen=True)
class RidePage:
    rides: list[Ride]
    total: int
    page: int
    pages: int


@dataclass(frozen=True)
class RideParticipants:
    ride_id: str
    customer_id: str
    driver_id: str | None
    status: RideStatus

    def includes(self, user_id: str) -> bool:
        return user_id == self.customer_id or (
            self.driver_id is not None and user_id == self.driver_id
        )


class DispatchCoordinator:
    """Entry point for all ride operations.

    Thread-safe: every call opens its own session and transaction. The only
    mutual exclusion is the conditional UPDATE inside ``accept_ride``; all
    other writes restate their precondition in the UPDATE's WHERE clause.
    Events are published only after the transaction commits.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        geo_index: GeoIndex,
        fare_calculator: FareCalculator | None = None,
        surge_calculator: SurgePricingCalculator | None = None,
        lifecycle: RideLifecycle | None = None,
        publisher: EventPublisher | None = None,
        settings: DispatchSettings | None = None,
        clock: Clock = utc_now,
    ):
        self._session_factory = session_factory
        self._geo_index = geo_index
        self._settings = settings or DispatchSettings()
        self._clock = clock
        self._fare_calculator = fare_calculator or FareCalculator()
        self._surge_calculator = surge_calculator or SurgePricingCalculator(clock=clock)
        self._lifecycle = lifecycle or RideLifecycle(
            clock=clock,
            platform_commission_rate=self._settings.platform_commission_rate,
        )
        self._publisher = publisher

    @property
    def geo_index(self) -> GeoIndex:
        return self._geo_index

    def now(self) -> datetime:
        return self._clock()

    # Fares

    def estimate_fare(
        self,
        pickup: Location,
        destination: Location,
        vehicle_type: VehicleType | str | None = None,
        surge_multiplier: float | None = None,
        conditions: SurgeConditions | None = None,
    ) -> FareQuote | dict[VehicleType, FareQuote]:
        """Quote one vehicle type, or every type when vehicle_type is None."""
        self._validate_route(pickup, destination)
        surge = self._resolve_surge(surge_multiplier, conditions)
        if vehicle_type is None:
            return self._fare_calculator.quote_all(pickup, destination, surge)
        return self._fare_calculator.quote(pickup, destination, vehicle_type, surge)

    # Customer operations

    def request_ride(
        self,
        customer_id: str,
        pickup: Location,
        destination: Location,
        vehicle_type: VehicleType | str,
        payment_method: str = "cash",
        surge_multiplier: float | None = None,
        conditions: SurgeConditions | None = None,
    ) -> Ride:
        """Create a ride in requested state with its fare and pickup code.

        Raises:
            ValidationError: bad coordinates, zero distance, unknown vehicle type
                or payment method
            ConflictError: the customer already has a non-terminal ride
        """
        _require_id(customer_id, "customer_id")
        vt = parse_vehicle_type(vehicle_type)
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(
                f"Invalid payment method: {payment_method}",
                details={"payment_method": payment_method, "allowed": list(PAYMENT_METHODS)},
            )
        self._validate_route(pickup, destination)
        surge = self._resolve_surge(surge_multiplier, conditions)
        quote = self._fare_calculator.quote(pickup, destination, vt, surge)

        ride = self._lifecycle.new_ride(
            customer_id=customer_id,
            pickup=pickup,
            destination=destination,
            quote=quote,
            payment_method=payment_method,  # type: ignore[arg-type]
        )

        with log_ride_context(ride.ride_id, customer_id=customer_id):
            try:
                with self._repository() as repo:
                    repo.create(ride)
            except ConflictError as e:
                e.ride = self._find_active_for_customer(customer_id)
                logger.info(f"Customer {customer_id} already has an active ride")
                raise

            rides_requested.add(1, {"vehicle_type": vt.value})
            logger.info(
                f"Ride requested: {vt.value}, {quote.distance_km} km, "
                f"fare {quote.fare.total_fare}"
            )

        self._publish(EventFactory.status_changed(ride, None))
        return ride

    def cancel_ride(self, caller_id: str, ride_id: str, reason: str) -> Ride:
        """Cancel on behalf of the ride's customer or assigned driver."""
        _require_id(caller_id, "caller_id")
        with log_ride_context(ride_id, caller_id=caller_id):
            with self._repository() as repo:
                ride = self._get_or_raise(repo, ride_id)
                role = ride.role_of(caller_id)
                if role is None:
                    raise AuthorizationError(
                        "Only the ride's customer or assigned driver can cancel it",
                        details={"ride_id": ride_id, "caller_id": caller_id},
                        ride=ride,
                    )
                cancelled = self._lifecycle.cancel(repo, ride, role, reason)

            if cancelled.driver_id is not None:
                self._geo_index.mark_available(cancelled.driver_id)
            status_transitions.add(1, {"status": cancelled.status.value})

        self._publish(EventFactory.status_changed(cancelled, ride.status))
        return cancelled

    # Driver operations

    def list_nearby_rides(
        self,
        driver_id: str,
        lat: float,
        lon: float,
        radius_km: float | None = None,
        vehicle_type: VehicleType | str | None = None,
        timestamp: datetime | None = None,
    ) -> list[NearbyRide]:
        """Open rides around the driver, nearest pickup first.

        Also refreshes the driver's presence. A driver who already holds an
        active ride gets an empty list.
        """
        _require_id(driver_id, "driver_id")
        validate_coordinates(lat, lon, "driver")
        radius = self._resolve_radius(radius_km, self._settings.default_search_radius_km)
        vt = parse_vehicle_type(vehicle_type) if vehicle_type is not None else None

        self._geo_index.upsert_driver_position(driver_id, lat, lon, timestamp, vt)

        with self._repository() as repo:
            if repo.find_active_for_driver(driver_id) is not None:
                self._geo_index.mark_unavailable(driver_id)
                return []
            cells = cells_within(lat, lon, radius, self._settings.ride_index_resolution)
            candidates = repo.list_requested_in_cells(cells, vt)

        ranked = rank_by_distance(
            (lat, lon),
            candidates,
            position=lambda r: r.pickup.coordinates,
            tie_key=lambda r: r.ride_id,
            radius_km=radius,
        )
        return [NearbyRide(ride=ride, distance_km=round(d, 3)) for ride, d in ranked]

    def accept_ride(self, driver_id: str, ride_id: str) -> Ride:
        """Claim a requested ride for the driver. Exactly one concurrent caller wins.

        Raises:
            NotFoundError: unknown ride
            ConflictError: ride already taken, or the driver already has an
                active ride. Callers should move on to another ride, not retry.
        """
        _require_id(driver_id, "driver_id")
        _require_id(ride_id, "ride_id")

        with log_ride_context(ride_id, driver_id=driver_id):
            try:
                with self._repository() as repo:
                    claimed = repo.claim(ride_id, driver_id, self._clock())
                    current = repo.get(ride_id)
                    if current is None:
                        raise NotFoundError(
                            f"Ride {ride_id} not found", details={"ride_id": ride_id}
                        )
                    if not claimed:
                        raise ConflictError(
                            "Ride is no longer available",
                            details={"ride_id": ride_id, "status": current.status.value},
                            ride=current,
                        )
            except NotFoundError:
                accept_outcomes.add(1, {"outcome": "not_found"})
                raise
            except ConflictError as e:
                accept_outcomes.add(1, {"outcome": "conflict"})
                if e.ride is None:
                    e.ride = self._find_ride(ride_id)
                logger.info(f"Accept rejected for driver {driver_id}: {e.message}")
                raise

            self._geo_index.mark_unavailable(driver_id)
            accept_outcomes.add(1, {"outcome": "accepted"})
            status_transitions.add(1, {"status": current.status.value})
            logger.info(f"Ride accepted by driver {driver_id}")

        self._publish(EventFactory.status_changed(current, RideStatus.REQUESTED))
        return current

    def update_status(
        self,
        driver_id: str,
        ride_id: str,
        new_status: RideStatus | str,
        otp: str | None = None,
        final_fare: float | None = None,
    ) -> Ride:
        """Advance an accepted ride; only the assigned driver may do this."""
        _require_id(driver_id, "driver_id")
        status = _parse_status(new_status)

        with log_ride_context(ride_id, driver_id=driver_id):
            with self._repository() as repo:
                ride = self._get_or_raise(repo, ride_id)
                if ride.driver_id != driver_id:
                    raise AuthorizationError(
                        "Only the assigned driver can update this ride",
                        details={"ride_id": ride_id, "driver_id": driver_id},
                        ride=ride,
                    )
                updated = self._lifecycle.advance(repo, ride, status, otp, final_fare)

            if updated.status.is_terminal:
                self._geo_index.mark_available(driver_id)
            status_transitions.add(1, {"status": updated.status.value})

        self._publish(EventFactory.status_changed(updated, ride.status))
        return updated

    def update_driver_location(
        self,
        driver_id: str,
        location: DriverLocation,
        ride_id: str | None = None,
        vehicle_type: VehicleType | str | None = None,
    ) -> LocationAck:
        """Refresh presence and, during a tracked ride, the ride's live position.

        The ride is either the one named by ride_id or the driver's active
        ride. Out-of-order pings are acknowledged with applied=False and are
        not broadcast.
        """
        _require_id(driver_id, "driver_id")
        validate_coordinates(location.latitude, location.longitude, "driver")
        location = location.model_copy(update={"timestamp": as_naive_utc(location.timestamp)})
        self._reject_future_timestamp(driver_id, location.timestamp)
        vt = parse_vehicle_type(vehicle_type) if vehicle_type is not None else None

        presence_applied = self._geo_index.upsert_driver_position(
            driver_id, location.latitude, location.longitude, location.timestamp, vt
        )

        with log_ride_context(ride_id, driver_id=driver_id):
            with self._repository() as repo:
                if ride_id is not None:
                    ride = self._get_or_raise(repo, ride_id)
                    if ride.driver_id != driver_id:
                        raise AuthorizationError(
                            "Only the assigned driver can report this ride's location",
                            details={"ride_id": ride_id, "driver_id": driver_id},
                            ride=ride,
                        )
                else:
                    ride = repo.find_active_for_driver(driver_id)

                if ride is None:
                    return LocationAck(applied=presence_applied)
                if ride.status not in TRACKED_STATUSES:
                    return LocationAck(applied=False, ride_id=ride.ride_id)

                applied = repo.update_driver_location(
                    ride.ride_id, driver_id, location, TRACKED_STATUSES
                )
                if applied:
                    repo.append_location(ride.ride_id, driver_id, location)

            if not applied:
                logger.debug(f"Stale location for driver {driver_id} ignored")
                return LocationAck(applied=False, ride_id=ride.ride_id)

        self._publish(EventFactory.driver_location(ride.ride_id, driver_id, location))
        return LocationAck(applied=True, ride_id=ride.ride_id)

    # Queries

    def count_in_flight(self) -> int:
        """Rides not yet completed or cancelled."""
        with self._repository() as repo:
            return repo.count_in_flight()

    def get_ride(self, caller_id: str, ride_id: str) -> Ride:
        with self._repository() as repo:
            ride = self._get_or_raise(repo, ride_id)
        _authorize_participant(ride, caller_id)
        return ride

    def get_ride_participants(self, ride_id: str) -> RideParticipants:
        with self._repository() as repo:
            ride = self._get_or_raise(repo, ride_id)
        return RideParticipants(
            ride_id=ride.ride_id,
            customer_id=ride.customer_id,
            driver_id=ride.driver_id,
            status=ride.status,
        )

    def get_driver_location(
        self, ride_id: str, caller_id: str | None = None
    ) -> DriverLocation | None:
        """Latest driver position; None outside accepted..in_progress."""
        ride = self.get_ride(caller_id, ride_id) if caller_id else self._get_ride(ride_id)
        return ride.driver_location

    def get_location_history(
        self,
        ride_id: str,
        limit: int = 50,
        caller_id: str | None = None,
    ) -> list[DriverLocation]:
        if not 1 <= limit <= self._settings.location_history_limit_max:
            raise ValidationError(
                f"limit must be between 1 and {self._settings.location_history_limit_max}",
                details={"limit": limit},
            )
        with self._repository() as repo:
            ride = self._get_or_raise(repo, ride_id)
            if caller_id is not None:
                _authorize_participant(ride, caller_id)
            return repo.location_history(ride_id, limit)

    def get_ride_history(
        self,
        user_id: str,
        role: str,
        status: RideStatus | str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> RidePage:
        """Rides the user took part in, newest first."""
        _require_id(user_id, "user_id")
        if role not in USER_ROLES:
            raise ValidationError(f"Invalid role: {role}", details={"role": role})
        if page < 1:
            raise ValidationError("page must be >= 1", details={"page": page})
        if not 1 <= limit <= self._settings.history_page_size_max:
            raise ValidationError(
                f"limit must be between 1 and {self._settings.history_page_size_max}",
                details={"limit": limit},
            )
        statuses = [_parse_status(status)] if status is not None else None

        with self._repository() as repo:
            rides, total = repo.list_for_user(
                user_id, role, statuses, offset=(page - 1) * limit, limit=limit
            )
        return RidePage(rides=rides, total=total, page=page, pages=math.ceil(total / limit))

    def find_nearby_drivers(
        self,
        lat: float,
        lon: float,
        radius_km: float | None = None,
        vehicle_type: VehicleType | str | None = None,
    ) -> list[NearbyDriver]:
        """Fresh, available drivers around a point for the customer map."""
        validate_coordinates(lat, lon, "location")
        radius = self._resolve_radius(radius_km, self._settings.driver_search_radius_km)
        vt = parse_vehicle_type(vehicle_type) if vehicle_type is not None else None
        return self._geo_index.query_nearby(lat, lon, radius, vehicle_type=vt)

    def evict_stale_presence(self) -> list[str]:
        evicted = self._geo_index.evict_stale(self._settings.presence_eviction_seconds)
        if evicted:
            logger.info(f"Evicted {len(evicted)} stale driver presences")
        return evicted

    # Internals

    @contextmanager
    def _repository(self) -> Iterator[RideRepository]:
        with self._session_factory() as session, transaction(session):
            yield RideRepository(session, self._settings.ride_index_resolution)

    def _get_or_raise(self, repo: RideRepository, ride_id: str) -> Ride:
        _require_id(ride_id, "ride_id")
        ride = repo.get(ride_id)
        if ride is None:
            raise NotFoundError(f"Ride {ride_id} not found", details={"ride_id": ride_id})
        return ride

    def _get_ride(self, ride_id: str) -> Ride:
        with self._repository() as repo:
            return self._get_or_raise(repo, ride_id)

    def _find_ride(self, ride_id: str) -> Ride | None:
        with self._repository() as repo:
            return repo.get(ride_id)

    def _find_active_for_customer(self, customer_id: str) -> Ride | None:
        with self._repository() as repo:
            return repo.find_active_for_customer(customer_id)

    def _validate_route(self, pickup: Location, destination: Location) -> None:
        validate_coordinates(pickup.latitude, pickup.longitude, "pickup")
        validate_coordinates(destination.latitude, destination.longitude, "destination")
        distance = haversine_distance_km(
            pickup.latitude, pickup.longitude, destination.latitude, destination.longitude
        )
        if distance <= 0:
            raise ValidationError(
                "Pickup and destination must differ",
                details={"pickup": pickup.coordinates, "destination": destination.coordinates},
            )

    def _resolve_surge(
        self, surge_multiplier: float | None, conditions: SurgeConditions | None
    ) -> float:
        if surge_multiplier is not None:
            if not math.isfinite(surge_multiplier) or surge_multiplier < 1.0:
                raise ValidationError(
                    "Surge multiplier must be a finite number >= 1.0",
                    details={"surge_multiplier": str(surge_multiplier)},
                )
            return surge_multiplier
        return self._surge_calculator.multiplier(conditions)

    def _reject_future_timestamp(self, driver_id: str, timestamp: datetime) -> None:
        # A ping from the future would pin last_seen and shadow every later ping
        skew = timedelta(seconds=self._settings.max_clock_skew_seconds)
        latest = as_naive_utc(self._clock()) + skew
        if timestamp > latest:
            raise ValidationError(
                "Location timestamp is ahead of the server clock",
                details={"driver_id": driver_id, "timestamp": timestamp.isoformat()},
            )

    def _resolve_radius(self, radius_km: float | None, default: float) -> float:
        radius = default if radius_km is None else radius_km
        if not 0 < radius <= self._settings.max_search_radius_km:
            raise ValidationError(
                f"radius_km must be in (0, {self._settings.max_search_radius_km}]",
                details={"radius_km": radius_km},
            )
        return radius

    def _publish(self, event: DriverLocationEvent | RideStatusChangedEvent) -> None:
        if self._publisher is None:
            return
        self._publisher.publish(event)


def _require_id(value: str | None, field: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", details={"field": field})


def _parse_status(value: RideStatus | str) -> RideStatus:
    if isinstance(value, RideStatus):
        return value
    try:
        return RideStatus(value)
    except ValueError as e:
        raise ValidationError(
            f"Invalid ride status: {value}",
            details={"status": value, "allowed": [s.value for s in RideStatus]},
        ) from e


def _authorize_participant(ride: Ride, caller_id: str) -> None:
    if not ride.is_participant(caller_id):
        raise AuthorizationError(
            "Only the ride's customer or assigned driver can view it",
            details={"ride_id": ride.ride_id},
        )
