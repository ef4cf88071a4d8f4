from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from api.auth import CallerDep, CustomerDep, DriverDep, verify_api_key
from api.dependencies import CoordinatorDep
from api.models.rides import (
    CancelBody,
    DriverLocationResponse,
    EstimateResponse,
    LocationAckResponse,
    LocationHistoryResponse,
    LocationUpdateBody,
    NearbyDriverResponse,
    NearbyRideResponse,
    RideHistoryResponse,
    RideRequestBody,
    RideResponse,
    StatusUpdateBody,
)
from api.rate_limit import limiter, location_update_rate, ride_request_rate
from fare import FareQuote
from matching.surge_pricing import SurgeConditions
from ride import DriverLocation, Location

router = APIRouter(dependencies=[Depends(verify_api_key)])


@router.get("/estimate", response_model=EstimateResponse)
@limiter.limit("60/minute")
def estimate_fare(
    request: Request,
    coordinator: CoordinatorDep,
    pickup_lat: Annotated[float, Query()],
    pickup_lon: Annotated[float, Query()],
    destination_lat: Annotated[float, Query()],
    destination_lon: Annotated[float, Query()],
    vehicle_type: Annotated[str | None, Query()] = None,
    surge_multiplier: Annotated[float | None, Query()] = None,
    bad_weather: bool = False,
    high_demand: bool = False,
) -> EstimateResponse:
    """Fare for one vehicle type, or for every type when none is given."""
    result = coordinator.estimate_fare(
        Location.model_construct(latitude=pickup_lat, longitude=pickup_lon, address=""),
        Location.model_construct(latitude=destination_lat, longitude=destination_lon, address=""),
        vehicle_type=vehicle_type,
        surge_multiplier=surge_multiplier,
        conditions=SurgeConditions(bad_weather=bad_weather, high_demand=high_demand),
    )
    quotes = [result] if isinstance(result, FareQuote) else list(result.values())
    return EstimateResponse(surge_multiplier=quotes[0].fare.surge_multiplier, quotes=quotes)


@router.post("", response_model=RideResponse, status_code=201)
@limiter.limit(ride_request_rate)
def request_ride(
    request: Request,
    body: RideRequestBody,
    caller: CustomerDep,
    coordinator: CoordinatorDep,
) -> RideResponse:
    ride = coordinator.request_ride(
        customer_id=caller.user_id,
        pickup=body.pickup.to_location(),
        destination=body.destination.to_location(),
        vehicle_type=body.vehicle_type,
        payment_method=body.payment_method,
        surge_multiplier=body.surge_multiplier,
        conditions=SurgeConditions(bad_weather=body.bad_weather, high_demand=body.high_demand),
    )
    return RideResponse.for_viewer(ride, caller.user_id)


@router.get("/nearby", response_model=list[NearbyRideResponse])
@limiter.limit(location_update_rate)
def list_nearby_rides(
    request: Request,
    caller: DriverDep,
    coordinator: CoordinatorDep,
    lat: Annotated[float, Query()],
    lon: Annotated[float, Query()],
    radius_km: Annotated[float | None, Query()] = None,
    vehicle_type: Annotated[str | None, Query()] = None,
) -> list[NearbyRideResponse]:
    """Open rides around the polling driver, nearest first."""
    nearby = coordinator.list_nearby_rides(
        caller.user_id, lat, lon, radius_km=radius_km, vehicle_type=vehicle_type
    )
    return [NearbyRideResponse.from_nearby(n, caller.user_id) for n in nearby]


@router.get("/history", response_model=RideHistoryResponse)
@limiter.limit("60/minute")
def get_ride_history(
    request: Request,
    caller: CallerDep,
    coordinator: CoordinatorDep,
    status: Annotated[str | None, Query()] = None,
    page: Annotated[int, Query()] = 1,
    limit: Annotated[int, Query()] = 10,
) -> RideHistoryResponse:
    result = coordinator.get_ride_history(
        caller.user_id, caller.role, status=status, page=page, limit=limit
    )
    return RideHistoryResponse.from_page(result, caller.user_id)


@router.post("/location", response_model=LocationAckResponse)
@limiter.limit(location_update_rate)
def update_driver_location(
    request: Request,
    body: LocationUpdateBody,
    caller: DriverDep,
    coordinator: CoordinatorDep,
) -> LocationAckResponse:
    location = DriverLocation.model_construct(
        latitude=body.latitude,
        longitude=body.longitude,
        heading=body.heading,
        speed=body.speed,
        timestamp=body.timestamp or coordinator.now(),
    )
    ack = coordinator.update_driver_location(
        caller.user_id, location, ride_id=body.ride_id, vehicle_type=body.vehicle_type
    )
    return LocationAckResponse(applied=ack.applied, ride_id=ack.ride_id)


@router.get("/drivers/nearby", response_model=list[NearbyDriverResponse])
@limiter.limit("60/minute")
def find_nearby_drivers(
    request: Request,
    caller: CallerDep,
    coordinator: CoordinatorDep,
    lat: Annotated[float, Query()],
    lon: Annotated[float, Query()],
    radius_km: Annotated[float | None, Query()] = None,
    vehicle_type: Annotated[str | None, Query()] = None,
) -> list[NearbyDriverResponse]:
    drivers = coordinator.find_nearby_drivers(
        lat, lon, radius_km=radius_km, vehicle_type=vehicle_type
    )
    return [NearbyDriverResponse.from_nearby(d) for d in drivers]


@router.post("/{ride_id}/accept", response_model=RideResponse)
@limiter.limit("60/minute")
def accept_ride(
    request: Request,
    ride_id: str,
    caller: DriverDep,
    coordinator: CoordinatorDep,
) -> RideResponse:
    ride = coordinator.accept_ride(caller.user_id, ride_id)
    return RideResponse.for_viewer(ride, caller.user_id)


@router.post("/{ride_id}/status", response_model=RideResponse)
@limiter.limit("60/minute")
def update_ride_status(
    request: Request,
    ride_id: str,
    body: StatusUpdateBody,
    caller: DriverDep,
    coordinator: CoordinatorDep,
) -> RideResponse:
    ride = coordinator.update_status(
        caller.user_id, ride_id, body.status, otp=body.otp, final_fare=body.final_fare
    )
    return RideResponse.for_viewer(ride, caller.user_id)


@router.post("/{ride_id}/cancel", response_model=RideResponse)
@limiter.limit("60/minute")
def cancel_ride(
    request: Request,
    ride_id: str,
    body: CancelBody,
    caller: CallerDep,
    coordinator: CoordinatorDep,
) -> RideResponse:
    ride = coordinator.cancel_ride(caller.user_id, ride_id, body.reason)
    return RideResponse.for_viewer(ride, caller.user_id)


@router.get("/{ride_id}", response_model=RideResponse)
@limiter.limit("120/minute")
def get_ride(
    request: Request,
    ride_id: str,
    caller: CallerDep,
    coordinator: CoordinatorDep,
) -> RideResponse:
    ride = coordinator.get_ride(caller.user_id, ride_id)
    return RideResponse.for_viewer(ride, caller.user_id)


@router.get("/{ride_id}/location", response_model=DriverLocationResponse)
@limiter.limit("120/minute")
def get_driver_location(
    request: Request,
    ride_id: str,
    caller: CallerDep,
    coordinator: CoordinatorDep,
) -> DriverLocationResponse:
    location = coordinator.get_driver_location(ride_id, caller_id=caller.user_id)
    return DriverLocationResponse(ride_id=ride_id, location=location)


@router.get("/{ride_id}/location/history", response_model=LocationHistoryResponse)
@limiter.limit("60/minute")
def get_location_history(
    request: Request,
    ride_id: str,
    caller: CallerDep,
    coordinator: CoordinatorDep,
    limit: Annotated[int, Query()] = 50,
) -> LocationHistoryResponse:
    locations = coordinator.get_location_history(ride_id, limit=limit, caller_id=caller.user_id)
    return LocationHistoryResponse(ride_id=ride_id, locations=locations)
