"""Ride state machine: legal transitions, pickup code gate and fare finalization.

The lifecycle never trusts the ride it was handed. Each transition is
written as a conditional UPDATE that repeats the precondition, so a ride
that changed underneath the caller (for example a cancellation committed
first) is reported as an invalid transition rather than overwritten.
"""

import hmac
import logging
import math
import secrets
import uuid
from datetime import datetime
from typing import Any

from core.clock import Clock, utc_now
from core.exceptions import InvalidTransitionError, NotFoundError, OtpMismatchError, ValidationError
from db.repositories.ride_repository import RideRepository
from fare import FareQuote
from ride import (
    CANCELLABLE_STATUSES,
    CancellationActor,
    Location,
    PaymentMethod,
    Ride,
    RideStatus,
)

logger = logging.getLogger(__name__)

OTP_MIN = 1000
OTP_MAX = 9999


def generate_otp() -> str:
    """Uniform 4-digit pickup code from a CSPRNG."""
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


def otp_matches(expected: str, supplied: str | None) -> bool:
    if supplied is None:
        return False
    return hmac.compare_digest(expected.encode(), str(supplied).strip().encode())


class RideLifecycle:
    """Drives one ride at a time through its status machine."""

    def __init__(
        self,
        clock: Clock = utc_now,
        platform_commission_rate: float = 0.15,
    ) -> None:
        self._clock = clock
        self._commission_rate = platform_commission_rate

    def new_ride(
        self,
        customer_id: str,
        pickup: Location,
        destination: Location,
        quote: FareQuote,
        payment_method: PaymentMethod = "cash",
    ) -> Ride:
        return Ride(
            ride_id=str(uuid.uuid4()),
            customer_id=customer_id,
            pickup=pickup,
            destination=destination,
            vehicle_type=quote.vehicle_type,
            status=RideStatus.REQUESTED,
            fare=quote.fare,
            estimated_fare=quote.fare.total_fare,
            distance_km=quote.distance_km,
            estimated_duration_min=quote.estimated_duration_min,
            otp=generate_otp(),
            payment_method=payment_method,
            created_at=self._clock(),
        )

    def advance(
        self,
        repo: RideRepository,
        ride: Ride,
        new_status: RideStatus,
        otp: str | None = None,
        final_fare: float | None = None,
    ) -> Ride:
        """Apply a driver-initiated transition (picked_up, in_progress, completed).

        Raises:
            InvalidTransitionError: not a legal next status, or the ride moved first
            OtpMismatchError: wrong or missing pickup code
            ValidationError: negative final fare
        """
        if new_status in (RideStatus.ACCEPTED, RideStatus.CANCELLED, RideStatus.REQUESTED):
            raise InvalidTransitionError(
                f"Status {new_status.value} cannot be set through a status update",
                details={"from": ride.status.value, "to": new_status.value},
                ride=ride,
            )
        self._check_transition(ride, new_status)

        now = self._clock()
        values: dict[str, Any] = {}

        if new_status == RideStatus.PICKED_UP:
            if not otp_matches(ride.otp, otp):
                logger.info("Pickup code rejected for ride %s", ride.ride_id)
                raise OtpMismatchError(
                    "Pickup code does not match",
                    details={"ride_id": ride.ride_id},
                    ride=ride,
                )
            values.update(otp_verified=True, picked_up_at=now)

        elif new_status == RideStatus.IN_PROGRESS:
            values["started_at"] = now

        elif new_status == RideStatus.COMPLETED:
            if final_fare is not None and (not math.isfinite(final_fare) or final_fare < 0):
                raise ValidationError(
                    "Final fare must be a finite, non-negative amount",
                    details={"final_fare": str(final_fare)},
                    ride=ride,
                )
            values["completed_at"] = now
            if ride.picked_up_at is not None:
                values["actual_duration_min"] = max(
                    0, round((now - ride.picked_up_at).total_seconds() / 60)
                )
            if final_fare:
                values["total_fare"] = float(final_fare)
            if ride.payment_method == "cash":
                values["payment_status"] = "completed"

        applied = repo.transition(
            ride.ride_id,
            expected_status=ride.status,
            new_status=new_status,
            values=values,
            driver_id=ride.driver_id,
        )
        if not applied:
            self._raise_lost_race(repo, ride, new_status)

        updated = self._reload(repo, ride.ride_id)
        if new_status == RideStatus.COMPLETED:
            self._record_history(repo, updated, now)

        logger.info(
            "Ride %s moved %s -> %s", ride.ride_id, ride.status.value, new_status.value
        )
        return updated

    def cancel(
        self,
        repo: RideRepository,
        ride: Ride,
        cancelled_by: CancellationActor,
        reason: str,
    ) -> Ride:
        """Cancel a ride that has not started its trip yet.

        Raises:
            ValidationError: empty reason
            InvalidTransitionError: ride already in progress or terminal
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Cancellation reason is required", ride=ride)
        if ride.status not in CANCELLABLE_STATUSES:
            raise InvalidTransitionError(
                f"Cannot cancel a ride in status {ride.status.value}",
                details={"from": ride.status.value, "to": RideStatus.CANCELLED.value},
                ride=ride,
            )

        # Any cancellable status counts, so an accept committed since ride was
        # read does not block the cancel
        applied = repo.transition(
            ride.ride_id,
            expected_status=CANCELLABLE_STATUSES,
            new_status=RideStatus.CANCELLED,
            values={
                "cancelled_by": cancelled_by,
                "cancellation_reason": reason,
                "cancelled_at": self._clock(),
            },
        )
        if not applied:
            self._raise_lost_race(repo, ride, RideStatus.CANCELLED)

        logger.info("Ride %s cancelled by %s", ride.ride_id, cancelled_by)
        return self._reload(repo, ride.ride_id)

    def _check_transition(self, ride: Ride, new_status: RideStatus) -> None:
        if not ride.can_transition_to(new_status):
            raise InvalidTransitionError(
                f"Invalid transition from {ride.status.value} to {new_status.value}",
                details={"from": ride.status.value, "to": new_status.value},
                ride=ride,
            )

    def _record_history(self, repo: RideRepository, ride: Ride, completed_at: datetime) -> None:
        commission = round(ride.fare.total_fare * self._commission_rate, 2)
        repo.add_history(
            ride,
            platform_commission=commission,
            driver_earnings=round(ride.fare.total_fare - commission, 2),
            duration_min=ride.actual_duration_min or ride.estimated_duration_min,
            completed_at=completed_at,
        )

    @staticmethod
    def _reload(repo: RideRepository, ride_id: str) -> Ride:
        ride = repo.get(ride_id)
        if ride is None:
            raise NotFoundError(f"Ride {ride_id} not found", details={"ride_id": ride_id})
        return ride

    def _raise_lost_race(self, repo: RideRepository, ride: Ride, new_status: RideStatus) -> None:
        current = self._reload(repo, ride.ride_id)
        raise InvalidTransitionError(
            f"Ride is now {current.status.value}; cannot move to {new_status.value}",
            details={"from": current.status.value, "to": new_status.value},
            ride=current,
        )
