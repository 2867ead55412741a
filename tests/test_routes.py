"""
Tests for the REST and WebSocket surface.
"""

from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import DESTINATION, PICKUP, offset
from gocab.client.api import ApiError, DispatchClient
from gocab.dependencies import get_services
from gocab.main import app
from gocab.models.driver_model import Driver
from gocab.models.ride_model import Ride
from gocab.sockets import ride_socket
from gocab.sockets.manager import ConnectionManager
from gocab.utils.helpers import utc_now
from gocab.utils.jwt_utils import create_access_token, verify_token


def token_for(user_id, role="rider"):
    return create_access_token({"user_id": str(user_id), "role": role})


def auth(user_id, role="rider"):
    return {"Authorization": f"Bearer {token_for(user_id, role)}"}


def soon(seconds=5):
    return (utc_now() + timedelta(seconds=seconds)).isoformat()


def ride_body(pickup=PICKUP, destination=DESTINATION, **extra):
    body = {
        "pickup": {
            "address": "1 Market St",
            "coordinates": {"latitude": pickup[0], "longitude": pickup[1]},
        },
        "destination": {
            "address": "Lake Merritt",
            "coordinates": {"latitude": destination[0], "longitude": destination[1]},
        },
    }
    body.update(extra)
    return body


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    # No `with`: startup would connect to a real MongoDB
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_health(self, client):
        response = client.get("/health")
        assert response.json()["status"] == "healthy"


class TestRideRoutes:
    def test_create_ride_matches_driver(self, client, make_driver):
        driver = make_driver()

        response = client.post("/rides", json=ride_body(), headers=auth("rider-1"))

        assert response.status_code == 201
        data = response.json()
        assert data["match_status"] == "MATCHED"
        assert data["driver_id"] == str(driver.id)
        assert data["ride"]["status"] == "matched"
        assert data["ride"]["driver_contact"]["name"] == "Driver"

    def test_create_ride_without_drivers(self, client):
        response = client.post("/rides", json=ride_body(), headers=auth("rider-1"))

        assert response.status_code == 201
        assert response.json()["match_status"] == "NO_DRIVERS_AVAILABLE"
        assert response.json()["ride"]["status"] == "requested"

    def test_invalid_coordinates(self, client):
        response = client.post(
            "/rides", json=ride_body(pickup=(123.0, 0.0)), headers=auth("rider-1")
        )
        assert response.status_code == 422

    def test_drivers_cannot_request_rides(self, client, make_driver):
        driver = make_driver()

        response = client.post("/rides", json=ride_body(), headers=auth(driver.id, "driver"))

        assert response.status_code == 403

    def test_missing_token(self, client):
        assert client.post("/rides", json=ride_body()).status_code in (401, 403)

    def test_second_active_ride(self, client):
        first = client.post("/rides", json=ride_body(), headers=auth("rider-1")).json()

        response = client.post("/rides", json=ride_body(), headers=auth("rider-1"))

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "ACTIVE_RIDE_EXISTS"
        assert error["active_ride_id"] == first["ride"]["ride_id"]

    def test_active_rides(self, client, make_ride):
        mine = make_ride("rider-1")
        make_ride("rider-2")

        response = client.get("/rides/active", headers=auth("rider-1"))

        assert response.status_code == 200
        assert [r["ride_id"] for r in response.json()["rides"]] == [mine.ride_id]

    def test_active_rides_status_filter(self, client, make_ride):
        make_ride("rider-1")

        matched_only = client.get("/rides/active?status=matched", headers=auth("rider-1"))
        bad = client.get("/rides/active?status=flying", headers=auth("rider-1"))
        other_user = client.get("/rides/active?user_id=rider-2", headers=auth("rider-1"))

        assert matched_only.json()["count"] == 0
        assert bad.status_code == 400
        assert bad.json()["error"]["code"] == "INVALID_STATUS_FILTER"
        assert other_user.status_code == 403

    def test_ride_details_access(self, client, make_ride, make_driver):
        ride = make_ride("rider-1")
        driver = make_driver()

        own = client.get(f"/rides/{ride.ride_id}", headers=auth("rider-1"))
        stranger = client.get(f"/rides/{ride.ride_id}", headers=auth("rider-2"))
        open_request = client.get(f"/rides/{ride.ride_id}", headers=auth(driver.id, "driver"))

        assert own.json()["ride"]["otp"] == ride.otp
        assert stranger.status_code == 403
        assert stranger.json()["error"]["code"] == "UNAUTHORIZED"
        assert "otp" not in open_request.json()["ride"]

    def test_unknown_ride(self, client):
        response = client.get("/rides/RIDE_0_NOPE00", headers=auth("rider-1"))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "RIDE_NOT_FOUND"

    def test_accept_and_conflict(self, client, make_ride, make_driver):
        ride = make_ride()
        first = make_driver("First")
        second = make_driver("Second")

        accepted = client.post(f"/rides/{ride.ride_id}/accept", headers=auth(first.id, "driver"))
        conflict = client.post(f"/rides/{ride.ride_id}/accept", headers=auth(second.id, "driver"))

        assert accepted.status_code == 200
        assert accepted.json()["otp"] == ride.otp
        assert accepted.json()["driver_contact"]["name"] == "First"
        assert conflict.status_code == 409
        assert conflict.json()["error"]["code"] == "RIDE_ALREADY_ASSIGNED"

    def test_trip_with_otp(self, client, make_ride, make_driver):
        ride = make_ride()
        driver = make_driver()
        headers = auth(driver.id, "driver")
        client.post(f"/rides/{ride.ride_id}/accept", headers=headers)
        client.post(f"/rides/{ride.ride_id}/status", json={"status": "arrived"}, headers=headers)

        wrong = client.post(
            f"/rides/{ride.ride_id}/status",
            json={"status": "in_progress", "otp": "0000"},
            headers=headers,
        )
        started = client.post(
            f"/rides/{ride.ride_id}/status",
            json={"status": "in_progress", "otp": ride.otp},
            headers=headers,
        )
        completed = client.post(
            f"/rides/{ride.ride_id}/status",
            json={"status": "completed", "actual_distance_miles": 8.5},
            headers=headers,
        )

        assert wrong.status_code == 400
        assert wrong.json()["error"]["code"] == "PICKUP_NOT_VERIFIED"
        assert started.json()["ride"]["status"] == "in_progress"
        assert completed.json()["ride"]["trip_summary"]["carbon_saved"] == 2.06

    def test_unknown_status_value(self, client, make_ride):
        ride = make_ride()

        response = client.post(
            f"/rides/{ride.ride_id}/status",
            json={"status": "teleported"},
            headers=auth("rider-1"),
        )

        assert response.status_code == 422

    def test_cancel(self, client, make_ride):
        ride = make_ride()

        response = client.post(
            f"/rides/{ride.ride_id}/cancel",
            json={"reason": "Plans changed"},
            headers=auth("rider-1"),
        )
        again = client.post(f"/rides/{ride.ride_id}/cancel", headers=auth("rider-1"))

        assert response.json()["ride"]["status"] == "cancelled"
        assert response.json()["ride"]["cancelled_by"] == "user"
        assert again.status_code == 409

    def test_retry_match(self, client, make_ride, make_driver):
        ride = make_ride()
        make_driver()

        response = client.post(f"/rides/{ride.ride_id}/retry-match", headers=auth("rider-1"))
        stranger = client.post(f"/rides/{ride.ride_id}/retry-match", headers=auth("rider-2"))

        assert response.json()["match_status"] == "MATCHED"
        assert stranger.status_code == 403


class TestDriverRoutes:
    def test_go_online_with_location(self, client, make_driver):
        driver = make_driver(location=None, online=False, available=False)

        response = client.post(
            "/drivers/status",
            json={"is_online": True, "location": {"latitude": 37.77, "longitude": -122.41}},
            headers=auth(driver.id, "driver"),
        )

        data = response.json()["driver"]
        assert data["is_online"] is True
        assert data["is_available"] is True
        assert data["location"] == {"latitude": 37.77, "longitude": -122.41}

    def test_riders_cannot_use_driver_routes(self, client):
        response = client.post("/drivers/status", json={"is_online": True}, headers=auth("rider-1"))
        assert response.status_code == 403

    def test_location_tick(self, client, make_driver):
        driver = make_driver()

        response = client.post(
            "/drivers/location",
            json={"latitude": 37.78, "longitude": -122.41, "timestamp": soon()},
            headers=auth(driver.id, "driver"),
        )
        stale = client.post(
            "/drivers/location",
            json={"latitude": 1.0, "longitude": 1.0, "timestamp": "2000-01-01T00:00:00"},
            headers=auth(driver.id, "driver"),
        )

        assert response.json()["accepted"] is True
        assert stale.json()["accepted"] is False

    def test_device_clock_ahead_does_not_freeze_location(self, client, make_driver):
        driver = make_driver(location=None)
        headers = auth(driver.id, "driver")

        ahead = client.post(
            "/drivers/location",
            json={"latitude": 37.0, "longitude": -122.0, "timestamp": "2999-01-01T00:00:00"},
            headers=headers,
        )
        current = client.post(
            "/drivers/location",
            json={"latitude": 37.01, "longitude": -122.01, "timestamp": soon()},
            headers=headers,
        )

        assert ahead.json()["accepted"] is True
        assert current.json()["accepted"] is True
        stored = Driver.objects.get(id=driver.id)
        assert (stored.latitude, stored.longitude) == (37.01, -122.01)

    def test_available_rides(self, client, make_driver, make_ride):
        driver = make_driver(location=offset(PICKUP, 1))
        ride = make_ride()

        response = client.get("/drivers/available-rides", headers=auth(driver.id, "driver"))

        rides = response.json()["rides"]
        assert [r["ride_id"] for r in rides] == [ride.ride_id]
        assert rides[0]["distance_to_pickup_km"] == pytest.approx(1, abs=0.01)
        assert "otp" not in rides[0]

    def test_available_rides_requires_online(self, client, make_driver):
        driver = make_driver(online=False, available=False)

        response = client.get("/drivers/available-rides", headers=auth(driver.id, "driver"))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "DRIVER_OFFLINE"


class TestDriverRegistration:
    REGISTRATION = {
        "full_name": "Ada Driver",
        "phone": "+15550199",
        "vehicle_make": "Toyota",
        "vehicle_model": "Prius",
        "vehicle_color": "Blue",
        "license_plate": "go-ada1",
    }

    def test_register_returns_driver_token(self, client):
        response = client.post("/drivers", json=self.REGISTRATION)

        assert response.status_code == 201
        data = response.json()
        driver = data["driver"]
        assert driver["license_plate"] == "GO-ADA1"
        assert driver["is_online"] is False
        assert driver["is_approved"] is False

        claims = verify_token(data["token"])
        assert claims["user_id"] == driver["id"]
        assert claims["role"] == "driver"

    def test_registered_driver_can_go_online(self, client):
        token = client.post("/drivers", json=self.REGISTRATION).json()["token"]
        headers = {"Authorization": f"Bearer {token}"}

        response = client.post(
            "/drivers/status",
            json={"is_online": True, "location": {"latitude": 37.77, "longitude": -122.41}},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["driver"]["is_available"] is True

    def test_duplicate_phone_or_plate(self, client):
        client.post("/drivers", json=self.REGISTRATION)

        same_phone = client.post("/drivers", json=dict(self.REGISTRATION, license_plate="GO-OTHER"))
        same_plate = client.post("/drivers", json=dict(self.REGISTRATION, phone="+15550200"))

        assert same_phone.status_code == 409
        assert same_phone.json()["error"]["code"] == "DRIVER_EXISTS"
        assert same_plate.status_code == 409
        assert Driver.objects.count() == 1

    def test_registration_validates_fields(self, client):
        response = client.post("/drivers", json=dict(self.REGISTRATION, full_name=""))
        assert response.status_code == 422

    def test_profile(self, client, make_driver):
        driver = make_driver("Profile")

        response = client.get("/drivers/me", headers=auth(driver.id, "driver"))

        assert response.status_code == 200
        assert response.json()["driver"]["id"] == str(driver.id)
        assert response.json()["driver"]["full_name"] == "Profile"

    def test_profile_of_unknown_driver(self, client):
        response = client.get("/drivers/me", headers=auth("64b7f0c2a1b2c3d4e5f60718", "driver"))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "DRIVER_NOT_FOUND"

    def test_profile_requires_driver_role(self, client):
        assert client.get("/drivers/me", headers=auth("rider-1")).status_code == 403


class TestWebSocket:
    @pytest.fixture
    def ws_manager(self, monkeypatch):
        fresh = ConnectionManager()
        # Housekeeping loops are not needed for a single short session
        fresh._is_running = True
        monkeypatch.setattr(ride_socket, "manager", fresh)
        return fresh

    def test_connect_and_ping(self, client, ws_manager, make_ride):
        ride = make_ride("rider-1")

        with client.websocket_connect(f"/ws/ride?token={token_for('rider-1')}") as ws:
            hello = ws.receive_json()
            ws.send_json({"event_type": "ping"})
            pong = ws.receive_json()

        assert hello["event_type"] == "connected"
        assert hello["channels"] == ["rider-rider-1"]
        assert hello["active_rides"] == [{"ride_id": ride.ride_id, "status": "requested"}]
        assert pong["event_type"] == "pong"

    def test_rider_cannot_send_locations(self, client, ws_manager):
        with client.websocket_connect(f"/ws/ride?token={token_for('rider-1')}") as ws:
            ws.receive_json()
            ws.send_json({"event_type": "location_update", "latitude": 1, "longitude": 1})
            reply = ws.receive_json()

        assert reply["event_type"] == "error"

    def test_bad_token_is_rejected(self, client, ws_manager):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/ride?token=garbage") as ws:
                ws.receive_json()


class TestDispatchClient:
    """The client library against the real app over an in-process transport"""

    @pytest.fixture
    def transport(self, services):
        app.dependency_overrides[get_services] = lambda: services
        yield httpx.ASGITransport(app=app)
        app.dependency_overrides.clear()

    async def test_create_and_cancel(self, transport):
        async with DispatchClient("http://test", token_for("rider-1"), transport=transport) as api:
            created = await api.create_ride("1 Market St", PICKUP, "Lake Merritt", DESTINATION)
            ride_id = created["ride"]["ride_id"]

            active = await api.get_active_rides()
            cancelled = await api.cancel_ride(ride_id, reason="Testing")

            with pytest.raises(ApiError) as exc_info:
                await api.cancel_ride(ride_id)

        assert created["match_status"] == "NO_DRIVERS_AVAILABLE"
        assert [r["ride_id"] for r in active] == [ride_id]
        assert cancelled["status"] == "cancelled"
        assert exc_info.value.is_conflict
        assert exc_info.value.code == "RIDE_CANNOT_BE_UPDATED"
        assert Ride.objects.get(ride_id=ride_id).cancellation_reason == "Testing"

    async def test_not_found(self, transport):
        async with DispatchClient("http://test", token_for("rider-1"), transport=transport) as api:
            with pytest.raises(ApiError) as exc_info:
                await api.get_ride("RIDE_0_NOPE00")

        assert exc_info.value.is_not_found
        assert exc_info.value.code == "RIDE_NOT_FOUND"

    async def test_driver_profile(self, transport, make_driver):
        driver = make_driver("Client")
        token = token_for(driver.id, "driver")

        async with DispatchClient("http://test", token, transport=transport) as api:
            profile = await api.driver_profile()

        assert profile["id"] == str(driver.id)
        assert profile["is_online"] is True
