import pytest

from core.exceptions import InvalidVehicleTypeError, ValidationError
from fare import FARE_TABLE, FareCalculator, VehicleType
from tests.factories import FAR_AWAY, destination, make_location, pickup


@pytest.fixture
def calculator() -> FareCalculator:
    return FareCalculator()


@pytest.mark.unit
class TestFareEstimate:
    def test_bike_breakdown(self, calculator):
        fare = calculator.estimate(distance_km=5.0, duration_min=15, vehicle_type="bike")

        assert fare.base_fare == 20
        assert fare.distance_fare == 40
        assert fare.time_fare == 15
        assert fare.surge_multiplier == 1.0
        assert fare.subtotal == 75
        assert fare.total_fare == 75

    def test_total_is_rounded_up(self, calculator):
        fare = calculator.estimate(distance_km=1.05, duration_min=3, vehicle_type=VehicleType.CAR)

        # 50 + 21 + 6 = 77 -> minimum 80
        assert fare.total_fare == 80
        fare = calculator.estimate(distance_km=2.33, duration_min=5, vehicle_type=VehicleType.CAR)
        # 50 + 46.6 + 10 = 106.6
        assert fare.total_fare == 107

    def test_float_noise_does_not_add_a_unit(self, calculator):
        # (20 + 20 + 10) * 1.1 is 55.00000000000001 in binary floating point
        fare = calculator.estimate(
            distance_km=2.5, duration_min=10, vehicle_type="bike", surge_multiplier=1.1
        )
        assert fare.total_fare == 55

        fare = calculator.estimate(distance_km=1.5, duration_min=3, vehicle_type="bike")
        assert fare.total_fare == 35

    @pytest.mark.parametrize("vehicle_type", list(VehicleType))
    def test_minimum_fare_applies_to_short_trips(self, calculator, vehicle_type):
        fare = calculator.estimate(distance_km=0.1, duration_min=0, vehicle_type=vehicle_type)
        assert fare.total_fare == FARE_TABLE[vehicle_type].minimum_fare

    @pytest.mark.parametrize("vehicle_type", list(VehicleType))
    def test_total_never_below_minimum(self, calculator, vehicle_type):
        for distance in (0, 0.5, 3, 12.7):
            fare = calculator.estimate(distance, distance * 3, vehicle_type)
            assert fare.total_fare >= FARE_TABLE[vehicle_type].minimum_fare

    def test_deterministic(self, calculator):
        first = calculator.estimate(7.3, 21, "cng", 1.3)
        second = calculator.estimate(7.3, 21, "cng", 1.3)
        assert first == second

    def test_surge_multiplies_subtotal(self, calculator):
        base = calculator.estimate(10, 30, "car")
        surged = calculator.estimate(10, 30, "car", surge_multiplier=1.5)

        assert base.total_fare == 310
        assert surged.surge_multiplier == 1.5
        assert surged.total_fare == 465

    def test_surge_below_one_rejected(self, calculator):
        with pytest.raises(ValidationError):
            calculator.estimate(5, 10, "bike", surge_multiplier=0.8)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"distance_km": float("inf")},
            {"distance_km": float("nan")},
            {"duration_min": float("inf")},
            {"surge_multiplier": float("inf")},
            {"surge_multiplier": float("nan")},
        ],
    )
    def test_non_finite_inputs_rejected(self, calculator, kwargs):
        args = {"distance_km": 5, "duration_min": 10, "vehicle_type": "bike", **kwargs}
        with pytest.raises(ValidationError):
            calculator.estimate(**args)

    def test_negative_distance_rejected(self, calculator):
        with pytest.raises(ValidationError):
            calculator.estimate(-1, 10, "bike")

    def test_unknown_vehicle_type(self, calculator):
        with pytest.raises(InvalidVehicleTypeError) as exc_info:
            calculator.estimate(5, 10, "helicopter")
        assert exc_info.value.details["vehicle_type"] == "helicopter"
        assert isinstance(exc_info.value, ValidationError)

    def test_estimate_all_covers_every_type(self, calculator):
        fares = calculator.estimate_all(5, 15)
        assert set(fares) == set(VehicleType)
        assert fares[VehicleType.BIKE].total_fare < fares[VehicleType.CNG].total_fare
        assert fares[VehicleType.CNG].total_fare < fares[VehicleType.CAR].total_fare


@pytest.mark.unit
class TestFareQuote:
    def test_duration_from_average_speed(self, calculator):
        assert calculator.estimate_duration_min(25, "bike") == 60
        assert calculator.estimate_duration_min(10, "cng") == 30
        assert calculator.estimate_duration_min(15, "car") == 30

    def test_quote_for_dhaka_trip(self, calculator):
        quote = calculator.quote(pickup(), destination(), "bike")

        assert quote.vehicle_type == VehicleType.BIKE
        assert quote.distance_km == pytest.approx(1.298, abs=0.01)
        assert quote.estimated_duration_min == 3
        assert quote.fare.total_fare == 34
        assert quote.surge_active is False
        assert quote.in_service_area is True

    def test_trip_leaving_service_area_is_flagged(self, calculator):
        quote = calculator.quote(pickup(), make_location(FAR_AWAY, "Gazipur"), "car")
        assert quote.in_service_area is False
        assert quote.fare.total_fare > 0

    def test_quote_all_with_surge(self, calculator):
        quotes = calculator.quote_all(pickup(), destination(), surge_multiplier=1.5)

        assert set(quotes) == set(VehicleType)
        assert all(q.surge_active for q in quotes.values())
        assert quotes[VehicleType.CAR].fare.surge_multiplier == 1.5

    def test_same_point_costs_minimum(self, calculator):
        here = make_location((23.75, 90.39))
        quote = calculator.quote(here, here, "cng")
        assert quote.distance_km == 0
        assert quote.fare.total_fare == 50
