"""Ride repository: CRUD plus conditional (compare-and-set) transitions."""

from collections.abc import Collection, Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.clock import utc_now
from core.exceptions import ConflictError
from fare import FareBreakdown, VehicleType
from geo.cells import cell_for
from ride import TERMINAL_STATUSES, DriverLocation, Location, Ride, RideStatus

from ..schema import RideHistoryRecord, RideLocationRecord, RideRecord

_TERMINAL_VALUES = {s.value for s in TERMINAL_STATUSES}


class RideRepository:
    """Repository for ride persistence.

    Every status change is a single UPDATE whose WHERE clause restates the
    expected current status; a zero row count means another writer won.
    """

    def __init__(self, session: Session, ride_index_resolution: int = 6):
        self.session = session
        self._ride_index_resolution = ride_index_resolution

    def create(self, ride: Ride) -> None:
        """Insert a ride in REQUESTED state.

        Raises:
            ConflictError: the customer already has a non-terminal ride
        """
        record = RideRecord(
            ride_id=ride.ride_id,
            customer_id=ride.customer_id,
            active_customer_id=ride.customer_id,
            status=ride.status.value,
            vehicle_type=ride.vehicle_type.value,
            pickup_latitude=ride.pickup.latitude,
            pickup_longitude=ride.pickup.longitude,
            pickup_address=ride.pickup.address,
            pickup_cell=self.pickup_cell(ride.pickup.latitude, ride.pickup.longitude),
            destination_latitude=ride.destination.latitude,
            destination_longitude=ride.destination.longitude,
            destination_address=ride.destination.address,
            base_fare=ride.fare.base_fare,
            distance_fare=ride.fare.distance_fare,
            time_fare=ride.fare.time_fare,
            surge_multiplier=ride.fare.surge_multiplier,
            subtotal=ride.fare.subtotal,
            minimum_fare=ride.fare.minimum_fare,
            total_fare=ride.fare.total_fare,
            estimated_fare=ride.estimated_fare,
            distance_km=ride.distance_km,
            estimated_duration_min=ride.estimated_duration_min,
            otp=ride.otp,
            otp_verified=False,
            payment_method=ride.payment_method,
            payment_status=ride.payment_status,
            created_at=ride.created_at,
        )
        self.session.add(record)
        try:
            self.session.flush()
        except IntegrityError as e:
            raise ConflictError(
                "Customer already has an active ride",
                details={"customer_id": ride.customer_id},
            ) from e

    def get(self, ride_id: str) -> Ride | None:
        record = self.session.get(RideRecord, ride_id, populate_existing=True)
        if record is None:
            return None
        return self._to_domain(record)

    def claim(self, ride_id: str, driver_id: str, accepted_at: datetime) -> bool:
        """Atomically assign a driver to a still-open ride.

        Returns False when the ride is missing, no longer REQUESTED, or
        already has a driver.

        Raises:
            ConflictError: the driver already holds another active ride
        """
        stmt = (
            update(RideRecord)
            .where(
                RideRecord.ride_id == ride_id,
                RideRecord.status == RideStatus.REQUESTED.value,
                RideRecord.driver_id.is_(None),
            )
            .values(
                status=RideStatus.ACCEPTED.value,
                driver_id=driver_id,
                active_driver_id=driver_id,
                accepted_at=accepted_at,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
        except IntegrityError as e:
            raise ConflictError(
                "Driver already has an active ride",
                details={"driver_id": driver_id, "ride_id": ride_id},
            ) from e
        return result.rowcount == 1

    def transition(
        self,
        ride_id: str,
        expected_status: RideStatus | Collection[RideStatus],
        new_status: RideStatus,
        values: dict[str, Any] | None = None,
        driver_id: str | None = None,
    ) -> bool:
        """Move a ride to new_status if it is still in expected_status.

        expected_status may be a set of statuses; the ride moves from whichever
        of them is persisted at the time of the UPDATE.
        """
        expected = (
            [expected_status] if isinstance(expected_status, RideStatus) else list(expected_status)
        )
        conditions = [
            RideRecord.ride_id == ride_id,
            RideRecord.status.in_([s.value for s in expected]),
        ]
        if driver_id is not None:
            conditions.append(RideRecord.driver_id == driver_id)

        changes: dict[str, Any] = dict(values or {})
        changes["status"] = new_status.value
        changes["updated_at"] = utc_now()
        if new_status in TERMINAL_STATUSES:
            changes.update(
                active_customer_id=None,
                active_driver_id=None,
                driver_latitude=None,
                driver_longitude=None,
                driver_heading=None,
                driver_speed=None,
                driver_location_at=None,
            )

        stmt = (
            update(RideRecord)
            .where(*conditions)
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def update_driver_location(
        self,
        ride_id: str,
        driver_id: str,
        location: DriverLocation,
        tracked_statuses: Iterable[RideStatus],
    ) -> bool:
        """Store the latest driver position unless a newer one is already stored."""
        stmt = (
            update(RideRecord)
            .where(
                RideRecord.ride_id == ride_id,
                RideRecord.driver_id == driver_id,
                RideRecord.status.in_([s.value for s in tracked_statuses]),
                (RideRecord.driver_location_at.is_(None))
                | (RideRecord.driver_location_at < location.timestamp),
            )
            .values(
                driver_latitude=location.latitude,
                driver_longitude=location.longitude,
                driver_heading=location.heading,
                driver_speed=location.speed,
                driver_location_at=location.timestamp,
            )
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def append_location(self, ride_id: str, driver_id: str, location: DriverLocation) -> None:
        self.session.add(
            RideLocationRecord(
                ride_id=ride_id,
                driver_id=driver_id,
                latitude=location.latitude,
                longitude=location.longitude,
                heading=location.heading,
                speed=location.speed,
                recorded_at=location.timestamp,
            )
        )

    def location_history(self, ride_id: str, limit: int = 50) -> list[DriverLocation]:
        """Most recent positions first."""
        stmt = (
            select(RideLocationRecord)
            .where(RideLocationRecord.ride_id == ride_id)
            .order_by(RideLocationRecord.recorded_at.desc(), RideLocationRecord.id.desc())
            .limit(limit)
        )
        return [
            DriverLocation(
                latitude=r.latitude,
                longitude=r.longitude,
                heading=r.heading,
                speed=r.speed,
                timestamp=r.recorded_at,
            )
            for r in self.session.execute(stmt).scalars().all()
        ]

    def find_active_for_customer(self, customer_id: str) -> Ride | None:
        stmt = select(RideRecord).where(RideRecord.active_customer_id == customer_id)
        record = self.session.execute(stmt).scalars().first()
        return self._to_domain(record) if record else None

    def find_active_for_driver(self, driver_id: str) -> Ride | None:
        stmt = select(RideRecord).where(RideRecord.active_driver_id == driver_id)
        record = self.session.execute(stmt).scalars().first()
        return self._to_domain(record) if record else None

    def list_requested_in_cells(
        self,
        cells: Iterable[str],
        vehicle_type: VehicleType | None = None,
    ) -> list[Ride]:
        """Open rides whose pickup cell is one of cells (a superset of the radius)."""
        cell_list = list(cells)
        if not cell_list:
            return []
        stmt = select(RideRecord).where(
            RideRecord.status == RideStatus.REQUESTED.value,
            RideRecord.driver_id.is_(None),
            RideRecord.pickup_cell.in_(cell_list),
        )
        if vehicle_type is not None:
            stmt = stmt.where(RideRecord.vehicle_type == vehicle_type.value)
        return [self._to_domain(r) for r in self.session.execute(stmt).scalars().all()]

    def list_for_user(
        self,
        user_id: str,
        role: str,
        statuses: Iterable[RideStatus] | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[Ride], int]:
        """Rides where the user is customer or driver, newest first, with total count."""
        column = RideRecord.customer_id if role == "customer" else RideRecord.driver_id
        conditions = [column == user_id]
        if statuses:
            conditions.append(RideRecord.status.in_([s.value for s in statuses]))

        stmt = (
            select(RideRecord)
            .where(*conditions)
            .order_by(RideRecord.created_at.desc(), RideRecord.ride_id)
            .offset(offset)
            .limit(limit)
        )
        count_stmt = select(func.count()).select_from(RideRecord).where(*conditions)

        rides = [self._to_domain(r) for r in self.session.execute(stmt).scalars().all()]
        total = self.session.execute(count_stmt).scalar() or 0
        return rides, total

    def add_history(
        self,
        ride: Ride,
        platform_commission: float,
        driver_earnings: float,
        duration_min: int,
        completed_at: datetime,
    ) -> None:
        if ride.driver_id is None:
            raise ValueError("Completed ride without a driver")
        self.session.add(
            RideHistoryRecord(
                ride_id=ride.ride_id,
                driver_id=ride.driver_id,
                customer_id=ride.customer_id,
                vehicle_type=ride.vehicle_type.value,
                total_fare=ride.fare.total_fare,
                platform_commission=platform_commission,
                driver_earnings=driver_earnings,
                distance_km=ride.distance_km,
                duration_min=duration_min,
                payment_method=ride.payment_method,
                completed_at=completed_at,
            )
        )

    def count_in_flight(self) -> int:
        stmt = (
            select(func.count())
            .select_from(RideRecord)
            .where(RideRecord.status.notin_(_TERMINAL_VALUES))
        )
        return self.session.execute(stmt).scalar() or 0

    def pickup_cell(self, lat: float, lon: float) -> str:
        return cell_for(lat, lon, self._ride_index_resolution)

    def _to_domain(self, record: RideRecord) -> Ride:
        """Convert ORM model to domain model."""
        driver_location = None
        if record.driver_location_at is not None and record.driver_latitude is not None:
            driver_location = DriverLocation(
                latitude=record.driver_latitude,
                longitude=record.driver_longitude or 0.0,
                heading=record.driver_heading or 0.0,
                speed=record.driver_speed or 0.0,
                timestamp=record.driver_location_at,
            )

        return Ride(
            ride_id=record.ride_id,
            customer_id=record.customer_id,
            driver_id=record.driver_id,
            pickup=Location(
                latitude=record.pickup_latitude,
                longitude=record.pickup_longitude,
                address=record.pickup_address,
            ),
            destination=Location(
                latitude=record.destination_latitude,
                longitude=record.destination_longitude,
                address=record.destination_address,
            ),
            vehicle_type=VehicleType(record.vehicle_type),
            status=RideStatus(record.status),
            fare=FareBreakdown(
                base_fare=record.base_fare,
                distance_fare=record.distance_fare,
                time_fare=record.time_fare,
                surge_multiplier=record.surge_multiplier,
                subtotal=record.subtotal,
                minimum_fare=record.minimum_fare,
                total_fare=record.total_fare,
            ),
            estimated_fare=record.estimated_fare,
            distance_km=record.distance_km,
            estimated_duration_min=record.estimated_duration_min,
            actual_duration_min=record.actual_duration_min,
            otp=record.otp,
            otp_verified=record.otp_verified,
            payment_method=record.payment_method,  # type: ignore[arg-type]
            payment_status=record.payment_status,  # type: ignore[arg-type]
            driver_location=driver_location,
            cancelled_by=record.cancelled_by,  # type: ignore[arg-type]
            cancellation_reason=record.cancellation_reason,
            created_at=record.created_at,
            accepted_at=record.accepted_at,
            picked_up_at=record.picked_up_at,
            started_at=record.started_at,
            completed_at=record.completed_at,
            cancelled_at=record.cancelled_at,
        )
