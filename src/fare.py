"""Fare calculation per vehicle type."""

import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from core.exceptions import InvalidVehicleTypeError, ValidationError
from geo.distance import haversine_distance_km, is_within_service_area

if TYPE_CHECKING:
    from ride import Location


class VehicleType(str, Enum):
    BIKE = "bike"
    CNG = "cng"
    CAR = "car"


@dataclass(frozen=True)
class VehicleRates:
    base_fare: float
    per_km: float
    per_minute: float
    minimum_fare: float
    average_speed_kmh: float


# BDT. Average speeds reflect city traffic and drive duration estimates.
FARE_TABLE: dict[VehicleType, VehicleRates] = {
    VehicleType.BIKE: VehicleRates(
        base_fare=20, per_km=8, per_minute=1, minimum_fare=30, average_speed_kmh=25
    ),
    VehicleType.CNG: VehicleRates(
        base_fare=30, per_km=12, per_minute=1.5, minimum_fare=50, average_speed_kmh=20
    ),
    VehicleType.CAR: VehicleRates(
        base_fare=50, per_km=20, per_minute=2, minimum_fare=80, average_speed_kmh=30
    ),
}


class FareBreakdown(BaseModel):
    """Detailed breakdown of fare components."""

    base_fare: float = Field(ge=0)
    distance_fare: float = Field(ge=0)
    time_fare: float = Field(ge=0)
    surge_multiplier: float = Field(ge=1.0)
    subtotal: float = Field(ge=0)
    minimum_fare: float = Field(ge=0)
    total_fare: float = Field(ge=0)


class FareQuote(BaseModel):
    """Fare estimate for a concrete pickup/destination pair."""

    vehicle_type: VehicleType
    distance_km: float = Field(ge=0)
    estimated_duration_min: int = Field(ge=0)
    fare: FareBreakdown
    surge_active: bool
    in_service_area: bool = True


def parse_vehicle_type(value: "VehicleType | str") -> VehicleType:
    if isinstance(value, VehicleType):
        return value
    try:
        return VehicleType(value)
    except ValueError as e:
        raise InvalidVehicleTypeError(
            f"Invalid vehicle type: {value}",
            details={"vehicle_type": value, "allowed": [v.value for v in VehicleType]},
        ) from e


class FareCalculator:
    """Calculates ride fares from distance, duration, vehicle type and surge."""

    def __init__(self, rates: dict[VehicleType, VehicleRates] | None = None) -> None:
        self._rates = rates or FARE_TABLE

    @property
    def vehicle_types(self) -> list[VehicleType]:
        return list(self._rates)

    def rates_for(self, vehicle_type: VehicleType | str) -> VehicleRates:
        vt = parse_vehicle_type(vehicle_type)
        if vt not in self._rates:
            raise InvalidVehicleTypeError(
                f"Vehicle type not configured: {vt.value}",
                details={"vehicle_type": vt.value},
            )
        return self._rates[vt]

    def estimate(
        self,
        distance_km: float,
        duration_min: float,
        vehicle_type: VehicleType | str,
        surge_multiplier: float = 1.0,
    ) -> FareBreakdown:
        """Fare for a trip of the given length.

        The surged subtotal is rounded up to a whole currency unit and then
        floored at the vehicle type's minimum fare.
        """
        rates = self.rates_for(vehicle_type)
        for name, value in (
            ("distance_km", distance_km),
            ("duration_min", duration_min),
            ("surge_multiplier", surge_multiplier),
        ):
            if not math.isfinite(value):
                raise ValidationError(f"{name} must be a finite number", {name: str(value)})
        if distance_km < 0:
            raise ValidationError("Distance must be non-negative", {"distance_km": distance_km})
        if duration_min < 0:
            raise ValidationError("Duration must be non-negative", {"duration_min": duration_min})
        if surge_multiplier < 1.0:
            raise ValidationError(
                "Surge multiplier must be >= 1.0", {"surge_multiplier": surge_multiplier}
            )

        distance_fare = distance_km * rates.per_km
        time_fare = duration_min * rates.per_minute
        subtotal = (rates.base_fare + distance_fare + time_fare) * surge_multiplier
        # Round before ceil so float noise (e.g. 35.000000001) does not add a unit
        total_fare = max(math.ceil(round(subtotal, 6)), rates.minimum_fare)

        return FareBreakdown(
            base_fare=rates.base_fare,
            distance_fare=round(distance_fare, 2),
            time_fare=round(time_fare, 2),
            surge_multiplier=surge_multiplier,
            subtotal=round(subtotal, 2),
            minimum_fare=rates.minimum_fare,
            total_fare=float(total_fare),
        )

    def estimate_all(
        self,
        distance_km: float,
        duration_min: float,
        surge_multiplier: float = 1.0,
    ) -> dict[VehicleType, FareBreakdown]:
        return {
            vt: self.estimate(distance_km, duration_min, vt, surge_multiplier)
            for vt in self._rates
        }

    def estimate_duration_min(self, distance_km: float, vehicle_type: VehicleType | str) -> int:
        rates = self.rates_for(vehicle_type)
        return round(distance_km / rates.average_speed_kmh * 60)

    def quote(
        self,
        pickup: "Location",
        destination: "Location",
        vehicle_type: VehicleType | str,
        surge_multiplier: float = 1.0,
    ) -> FareQuote:
        vt = parse_vehicle_type(vehicle_type)
        distance_km = haversine_distance_km(
            pickup.latitude, pickup.longitude, destination.latitude, destination.longitude
        )
        duration_min = self.estimate_duration_min(distance_km, vt)
        return FareQuote(
            vehicle_type=vt,
            distance_km=round(distance_km, 3),
            estimated_duration_min=duration_min,
            fare=self.estimate(distance_km, duration_min, vt, surge_multiplier),
            surge_active=surge_multiplier > 1.0,
            in_service_area=is_within_service_area(pickup.latitude, pickup.longitude)
            and is_within_service_area(destination.latitude, destination.longitude),
        )

    def quote_all(
        self,
        pickup: "Location",
        destination: "Location",
        surge_multiplier: float = 1.0,
    ) -> dict[VehicleType, FareQuote]:
        return {vt: self.quote(pickup, destination, vt, surge_multiplier) for vt in self._rates}
