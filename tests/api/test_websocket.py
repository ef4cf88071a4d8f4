import pytest
from starlette.websockets import WebSocketDisconnect

from api.rate_limit import ws_limiter
from tests.factories import DRIVER_NEAR_PICKUP, destination, pickup

API_KEY_PROTOCOL = ["apikey.test-api-key"]


@pytest.fixture
def accepted_ride(coordinator):
    ride = coordinator.request_ride("customer-1", pickup(), destination(), "bike")
    return coordinator.accept_ride("driver-1", ride.ride_id)


@pytest.mark.integration
class TestWebSocketHandshake:
    def test_connect_success(self, test_client, app):
        with test_client.websocket_connect(
            "/ws?user_id=customer-1&role=customer", subprotocols=API_KEY_PROTOCOL
        ) as websocket:
            assert websocket.accepted_subprotocol == "apikey.test-api-key"
            assert app.state.gateway.session_count == 1
        assert app.state.gateway.session_count == 0

    @pytest.mark.parametrize(
        "url,protocols",
        [
            ("/ws?user_id=customer-1&role=customer", ["apikey.wrong"]),
            ("/ws?user_id=customer-1&role=customer", None),
            ("/ws?role=customer", API_KEY_PROTOCOL),
            ("/ws?user_id=customer-1&role=admin", API_KEY_PROTOCOL),
        ],
    )
    def test_rejected(self, test_client, url, protocols):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with test_client.websocket_connect(url, subprotocols=protocols) as websocket:
                websocket.receive_json()
        assert exc_info.value.code == 1008

    def test_connection_rate_limit(self, test_client):
        for _ in range(ws_limiter.max_connections):
            with test_client.websocket_connect(
                "/ws?user_id=customer-1&role=customer", subprotocols=API_KEY_PROTOCOL
            ):
                pass
        with pytest.raises(WebSocketDisconnect):
            with test_client.websocket_connect(
                "/ws?user_id=customer-1&role=customer", subprotocols=API_KEY_PROTOCOL
            ) as websocket:
                websocket.receive_json()


@pytest.mark.integration
class TestWebSocketMessages:
    def test_join_ride_room(self, test_client, app, accepted_ride):
        with test_client.websocket_connect(
            "/ws?user_id=customer-1&role=customer", subprotocols=API_KEY_PROTOCOL
        ) as websocket:
            websocket.send_json({"type": "join_ride", "ride_id": accepted_ride.ride_id})
            reply = websocket.receive_json()
            assert reply["type"] == "ack"
            assert len(app.state.gateway.room_members(accepted_ride.ride_id)) == 1

    def test_stranger_join_rejected(self, test_client, accepted_ride):
        with test_client.websocket_connect(
            "/ws?user_id=customer-9&role=customer", subprotocols=API_KEY_PROTOCOL
        ) as websocket:
            websocket.send_json({"type": "join_ride", "ride_id": accepted_ride.ride_id})
            reply = websocket.receive_json()
            assert reply["type"] == "error"
            assert reply["code"] == "forbidden"

    def test_invalid_message_keeps_connection_open(self, test_client):
        with test_client.websocket_connect(
            "/ws?user_id=customer-1&role=customer", subprotocols=API_KEY_PROTOCOL
        ) as websocket:
            websocket.send_text("not json")
            assert websocket.receive_json()["code"] == "validation_error"
            websocket.send_json({"type": "teleport"})
            assert websocket.receive_json()["code"] == "validation_error"

    def test_driver_streams_location(self, test_client, coordinator, accepted_ride, clock):
        with test_client.websocket_connect(
            "/ws?user_id=driver-1&role=driver", subprotocols=API_KEY_PROTOCOL
        ) as websocket:
            websocket.send_json(
                {
                    "type": "location_update",
                    "latitude": DRIVER_NEAR_PICKUP[0],
                    "longitude": DRIVER_NEAR_PICKUP[1],
                    "heading": 45,
                    "timestamp": clock().isoformat(),
                }
            )
            reply = websocket.receive_json()
        assert reply == {
            "type": "ack",
            "action": "location_update",
            "ride_id": accepted_ride.ride_id,
            "applied": True,
        }
        assert coordinator.get_driver_location(accepted_ride.ride_id).heading == 45

    def test_driver_status_update(self, test_client, coordinator, accepted_ride):
        with test_client.websocket_connect(
            "/ws?user_id=driver-1&role=driver", subprotocols=API_KEY_PROTOCOL
        ) as websocket:
            websocket.send_json(
                {
                    "type": "ride_status_update",
                    "ride_id": accepted_ride.ride_id,
                    "status": "picked_up",
                    "otp": accepted_ride.otp,
                }
            )
            assert websocket.receive_json()["type"] == "ack"
        assert coordinator.get_ride("driver-1", accepted_ride.ride_id).otp_verified
