from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from fare import FareQuote, VehicleType
from matching.dispatch_coordinator import NearbyRide, RidePage
from matching.geo_index import NearbyDriver
from ride import DriverLocation, Location, Ride


class LocationIn(BaseModel):
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    address: str = Field(default="", max_length=500)

    def to_location(self) -> Location:
        return Location(latitude=self.latitude, longitude=self.longitude, address=self.address)


class RideRequestBody(BaseModel):
    pickup: LocationIn
    destination: LocationIn
    vehicle_type: str
    payment_method: str = "cash"
    surge_multiplier: float | None = None
    bad_weather: bool = False
    high_demand: bool = False


class StatusUpdateBody(BaseModel):
    status: str
    otp: str | None = None
    final_fare: float | None = None


class CancelBody(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class LocationUpdateBody(BaseModel):
    latitude: float
    longitude: float
    heading: float = Field(default=0.0, ge=0.0, lt=360.0)
    speed: float = Field(default=0.0, ge=0.0)
    timestamp: datetime | None = None
    ride_id: str | None = None
    vehicle_type: str | None = None


class RideResponse(Ride):
    """Ride as returned to a caller; the pickup code is shown to the customer only."""

    otp: str | None = None  # type: ignore[assignment]

    @classmethod
    def for_viewer(cls, ride: Ride, viewer_id: str | None) -> "RideResponse":
        data = ride.model_dump()
        if viewer_id != ride.customer_id:
            data["otp"] = None
        return cls.model_validate(data)


class EstimateResponse(BaseModel):
    surge_multiplier: float
    quotes: list[FareQuote]


class NearbyRideResponse(BaseModel):
    ride: RideResponse
    distance_km: float

    @classmethod
    def from_nearby(cls, nearby: NearbyRide, viewer_id: str) -> "NearbyRideResponse":
        return cls(
            ride=RideResponse.for_viewer(nearby.ride, viewer_id),
            distance_km=nearby.distance_km,
        )


class LocationAckResponse(BaseModel):
    applied: bool
    ride_id: str | None = None


class RideHistoryResponse(BaseModel):
    rides: list[RideResponse]
    total: int
    page: int
    pages: int

    @classmethod
    def from_page(cls, page: RidePage, viewer_id: str) -> "RideHistoryResponse":
        return cls(
            rides=[RideResponse.for_viewer(r, viewer_id) for r in page.rides],
            total=page.total,
            page=page.page,
            pages=page.pages,
        )


class DriverLocationResponse(BaseModel):
    ride_id: str
    location: DriverLocation | None


class LocationHistoryResponse(BaseModel):
    ride_id: str
    locations: list[DriverLocation]


class NearbyDriverResponse(BaseModel):
    driver_id: str
    distance_km: float
    latitude: float
    longitude: float
    vehicle_type: VehicleType | None
    last_seen: datetime

    @classmethod
    def from_nearby(cls, nearby: NearbyDriver) -> "NearbyDriverResponse":
        presence = nearby.presence
        return cls(
            driver_id=nearby.driver_id,
            distance_km=round(nearby.distance_km, 3),
            latitude=presence.latitude,
            longitude=presence.longitude,
            vehicle_type=presence.vehicle_type,
            last_seen=presence.last_seen,
        )


class ErrorResponse(BaseModel):
    error: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    ride: RideResponse | None = None
