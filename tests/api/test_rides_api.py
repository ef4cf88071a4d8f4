import pytest

from tests.factories import (
    DESTINATION,
    DRIVER_NEAR_PICKUP,
    PICKUP,
    customer_headers,
    driver_headers,
    ride_request_body,
)


def _request_ride(client, customer="customer-1", vehicle_type="bike"):
    response = client.post(
        "/rides", json=ride_request_body(vehicle_type), headers=customer_headers(customer)
    )
    assert response.status_code == 201, response.text
    return response.json()


def _accept(client, ride_id, driver="driver-1"):
    response = client.post(f"/rides/{ride_id}/accept", headers=driver_headers(driver))
    assert response.status_code == 200, response.text
    return response.json()


@pytest.mark.integration
class TestEstimateEndpoint:
    def test_all_vehicle_types(self, test_client):
        response = test_client.get(
            "/rides/estimate",
            params={
                "pickup_lat": PICKUP[0],
                "pickup_lon": PICKUP[1],
                "destination_lat": DESTINATION[0],
                "destination_lon": DESTINATION[1],
            },
            headers=customer_headers(),
        )
        assert response.status_code == 200
        data = response.json()
        assert data["surge_multiplier"] == 1.0
        totals = {q["vehicle_type"]: q["fare"]["total_fare"] for q in data["quotes"]}
        assert totals == {"bike": 34, "cng": 52, "car": 82}

    @pytest.mark.parametrize("surge", ["inf", "nan"])
    def test_non_finite_surge_is_a_validation_error(self, test_client, surge):
        response = test_client.get(
            "/rides/estimate",
            params={
                "pickup_lat": PICKUP[0],
                "pickup_lon": PICKUP[1],
                "destination_lat": DESTINATION[0],
                "destination_lon": DESTINATION[1],
                "surge_multiplier": surge,
            },
            headers=customer_headers(),
        )
        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    def test_invalid_coordinates(self, test_client):
        response = test_client.get(
            "/rides/estimate",
            params={
                "pickup_lat": 123,
                "pickup_lon": PICKUP[1],
                "destination_lat": DESTINATION[0],
                "destination_lon": DESTINATION[1],
            },
            headers=customer_headers(),
        )
        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"


@pytest.mark.integration
class TestRequestEndpoint:
    def test_customer_sees_pickup_code(self, test_client):
        ride = _request_ride(test_client)
        assert ride["status"] == "requested"
        assert len(ride["otp"]) == 4
        assert ride["fare"]["total_fare"] == 34

    def test_driver_role_cannot_request(self, test_client):
        response = test_client.post(
            "/rides", json=ride_request_body(), headers=driver_headers()
        )
        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    def test_duplicate_active_ride_returns_existing(self, test_client):
        first = _request_ride(test_client)
        response = test_client.post(
            "/rides", json=ride_request_body("car"), headers=customer_headers()
        )
        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "conflict"
        assert body["ride"]["ride_id"] == first["ride_id"]
        assert body["ride"]["otp"] == first["otp"]

    def test_unknown_vehicle_type(self, test_client):
        response = test_client.post(
            "/rides", json=ride_request_body("rickshaw"), headers=customer_headers()
        )
        assert response.status_code == 422
        assert response.json()["error"] == "invalid_vehicle_type"

    def test_body_validation(self, test_client):
        body = ride_request_body(pickup={"latitude": 200, "longitude": 0})
        response = test_client.post("/rides", json=body, headers=customer_headers())
        assert response.status_code == 422


@pytest.mark.integration
class TestDriverFlow:
    def test_nearby_then_accept(self, test_client):
        ride = _request_ride(test_client)
        response = test_client.get(
            "/rides/nearby",
            params={"lat": DRIVER_NEAR_PICKUP[0], "lon": DRIVER_NEAR_PICKUP[1]},
            headers=driver_headers(),
        )
        assert response.status_code == 200
        nearby = response.json()
        assert [n["ride"]["ride_id"] for n in nearby] == [ride["ride_id"]]
        assert nearby[0]["ride"]["otp"] is None

        accepted = _accept(test_client, ride["ride_id"])
        assert accepted["status"] == "accepted"
        assert accepted["driver_id"] == "driver-1"
        assert accepted["otp"] is None

    def test_second_accept_conflicts(self, test_client):
        ride = _request_ride(test_client)
        _accept(test_client, ride["ride_id"])
        response = test_client.post(
            f"/rides/{ride['ride_id']}/accept", headers=driver_headers("driver-2")
        )
        assert response.status_code == 409
        assert response.json()["ride"]["driver_id"] == "driver-1"

    def test_accept_unknown_ride(self, test_client):
        response = test_client.post("/rides/missing/accept", headers=driver_headers())
        assert response.status_code == 404

    def test_full_trip(self, test_client):
        ride = _request_ride(test_client)
        _accept(test_client, ride["ride_id"])

        wrong = test_client.post(
            f"/rides/{ride['ride_id']}/status",
            json={"status": "picked_up", "otp": "0000" if ride["otp"] != "0000" else "1111"},
            headers=driver_headers(),
        )
        assert wrong.status_code == 400
        assert wrong.json()["error"] == "otp_mismatch"

        for body in (
            {"status": "picked_up", "otp": ride["otp"]},
            {"status": "in_progress"},
            {"status": "completed"},
        ):
            response = test_client.post(
                f"/rides/{ride['ride_id']}/status", json=body, headers=driver_headers()
            )
            assert response.status_code == 200, response.text
        assert response.json()["status"] == "completed"

        history = test_client.get("/rides/history", headers=driver_headers()).json()
        assert history["total"] == 1
        assert history["rides"][0]["ride_id"] == ride["ride_id"]

    def test_skipping_status_is_conflict(self, test_client):
        ride = _request_ride(test_client)
        _accept(test_client, ride["ride_id"])
        response = test_client.post(
            f"/rides/{ride['ride_id']}/status",
            json={"status": "completed"},
            headers=driver_headers(),
        )
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"
        assert response.json()["ride"]["status"] == "accepted"

    def test_location_updates_and_reads(self, test_client):
        ride = _request_ride(test_client)
        _accept(test_client, ride["ride_id"])

        response = test_client.post(
            "/rides/location",
            json={"latitude": DRIVER_NEAR_PICKUP[0], "longitude": DRIVER_NEAR_PICKUP[1]},
            headers=driver_headers(),
        )
        assert response.json() == {"applied": True, "ride_id": ride["ride_id"]}

        location = test_client.get(
            f"/rides/{ride['ride_id']}/location", headers=customer_headers()
        ).json()
        assert location["location"]["latitude"] == DRIVER_NEAR_PICKUP[0]

        history = test_client.get(
            f"/rides/{ride['ride_id']}/location/history", headers=customer_headers()
        ).json()
        assert len(history["locations"]) == 1

    def test_future_timestamp_rejected(self, test_client):
        response = test_client.post(
            "/rides/location",
            json={
                "latitude": DRIVER_NEAR_PICKUP[0],
                "longitude": DRIVER_NEAR_PICKUP[1],
                "timestamp": "2026-10-14T08:00:00",
            },
            headers=driver_headers(),
        )
        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    def test_customer_cannot_send_location(self, test_client):
        response = test_client.post(
            "/rides/location",
            json={"latitude": PICKUP[0], "longitude": PICKUP[1]},
            headers=customer_headers(),
        )
        assert response.status_code == 403

    def test_nearby_drivers(self, test_client):
        test_client.post(
            "/rides/location",
            json={
                "latitude": DRIVER_NEAR_PICKUP[0],
                "longitude": DRIVER_NEAR_PICKUP[1],
                "vehicle_type": "cng",
            },
            headers=driver_headers(),
        )
        response = test_client.get(
            "/rides/drivers/nearby",
            params={"lat": PICKUP[0], "lon": PICKUP[1], "vehicle_type": "cng"},
            headers=customer_headers(),
        )
        assert [d["driver_id"] for d in response.json()] == ["driver-1"]


@pytest.mark.integration
class TestCancelAndView:
    def test_customer_cancel(self, test_client):
        ride = _request_ride(test_client)
        response = test_client.post(
            f"/rides/{ride['ride_id']}/cancel",
            json={"reason": "changed plans"},
            headers=customer_headers(),
        )
        assert response.status_code == 200
        assert response.json()["cancelled_by"] == "customer"

    def test_cancel_requires_reason(self, test_client):
        ride = _request_ride(test_client)
        response = test_client.post(
            f"/rides/{ride['ride_id']}/cancel", json={"reason": ""}, headers=customer_headers()
        )
        assert response.status_code == 422

    def test_stranger_cannot_view(self, test_client):
        ride = _request_ride(test_client)
        response = test_client.get(
            f"/rides/{ride['ride_id']}", headers=customer_headers("customer-9")
        )
        assert response.status_code == 403

    def test_driver_view_hides_code(self, test_client):
        ride = _request_ride(test_client)
        _accept(test_client, ride["ride_id"])
        as_driver = test_client.get(f"/rides/{ride['ride_id']}", headers=driver_headers()).json()
        as_customer = test_client.get(
            f"/rides/{ride['ride_id']}", headers=customer_headers()
        ).json()
        assert as_driver["otp"] is None
        assert as_customer["otp"] == ride["otp"]

    def test_history_filters_and_pages(self, test_client):
        ride = _request_ride(test_client)
        test_client.post(
            f"/rides/{ride['ride_id']}/cancel", json={"reason": "x"}, headers=customer_headers()
        )
        response = test_client.get(
            "/rides/history", params={"status": "cancelled"}, headers=customer_headers()
        )
        assert response.json()["total"] == 1
        bad = test_client.get("/rides/history", params={"page": 0}, headers=customer_headers())
        assert bad.status_code == 422


@pytest.mark.integration
class TestHealthAndHeaders:
    def test_health_is_unauthenticated(self, test_client):
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "connections": 0, "rides_in_flight": 0}

    def test_health_counts_rides_in_flight(self, test_client):
        _request_ride(test_client)
        assert test_client.get("/health").json()["rides_in_flight"] == 1

    def test_security_headers(self, test_client):
        response = test_client.get("/health")
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["cache-control"] == "no-store"
