"""
Dispatch API client
Thin async wrapper over the REST surface used by the rider and driver dashboards
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class ApiError(Exception):
    """Non-2xx response, carrying the server's error code when it sent one"""

    def __init__(self, status_code: int, code: Optional[str], message: str, payload=None):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.payload = payload or {}
        super().__init__(f"{status_code} {code or ''}: {message}".strip())

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


def _place(address: str, coordinates: Tuple[float, float], place_id: Optional[str] = None):
    return {
        "address": address,
        "coordinates": {"latitude": coordinates[0], "longitude": coordinates[1]},
        "place_id": place_id,
    }


class DispatchClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = await self._client.request(method, path, **kwargs)
        if response.is_success:
            return response.json()

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            code, message = error.get("code"), error.get("message", response.reason_phrase)
        else:
            code = None
            detail = payload.get("detail") if isinstance(payload, dict) else None
            message = detail if isinstance(detail, str) else response.reason_phrase

        logger.debug(f"{method} {path} failed: {response.status_code} {code}")
        raise ApiError(response.status_code, code, message, payload)

    # Rides

    async def create_ride(
        self,
        pickup_address: str,
        pickup: Tuple[float, float],
        destination_address: str,
        destination: Tuple[float, float],
        rider_notes: Optional[str] = None,
        auto_assign: bool = True,
    ) -> Dict[str, Any]:
        body = {
            "pickup": _place(pickup_address, pickup),
            "destination": _place(destination_address, destination),
            "rider_notes": rider_notes,
            "auto_assign": auto_assign,
        }
        return await self._request("POST", "/rides", json=body)

    async def get_ride(self, ride_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/rides/{ride_id}")
        return data["ride"]

    async def get_active_rides(self, statuses: Optional[Iterable[str]] = None) -> list:
        params = {}
        if statuses:
            params["status"] = ",".join(statuses)
        data = await self._request("GET", "/rides/active", params=params)
        return data["rides"]

    async def update_status(
        self,
        ride_id: str,
        status: str,
        otp: Optional[str] = None,
        reason: Optional[str] = None,
        actual_distance_miles: Optional[float] = None,
    ) -> Dict[str, Any]:
        body = {
            "status": status,
            "otp": otp,
            "reason": reason,
            "actual_distance_miles": actual_distance_miles,
        }
        data = await self._request("POST", f"/rides/{ride_id}/status", json=body)
        return data["ride"]

    async def cancel_ride(self, ride_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        data = await self._request("POST", f"/rides/{ride_id}/cancel", json={"reason": reason})
        return data["ride"]

    async def retry_match(self, ride_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/rides/{ride_id}/retry-match")

    async def accept_ride(
        self, ride_id: str, driver_location: Optional[Tuple[float, float]] = None
    ) -> Dict[str, Any]:
        body = {}
        if driver_location is not None:
            body["driver_location"] = {
                "latitude": driver_location[0],
                "longitude": driver_location[1],
            }
        return await self._request("POST", f"/rides/{ride_id}/accept", json=body)

    # Drivers

    async def driver_profile(self) -> Dict[str, Any]:
        data = await self._request("GET", "/drivers/me")
        return data["driver"]

    async def set_online(
        self, is_online: bool, location: Optional[Tuple[float, float]] = None
    ) -> Dict[str, Any]:
        body = {"is_online": is_online}
        if location is not None:
            body["location"] = {"latitude": location[0], "longitude": location[1]}
        data = await self._request("POST", "/drivers/status", json=body)
        return data["driver"]

    async def update_location(
        self,
        latitude: float,
        longitude: float,
        heading: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        body = {
            "latitude": latitude,
            "longitude": longitude,
            "heading": heading,
            "timestamp": timestamp.isoformat() if timestamp else None,
        }
        return await self._request("POST", "/drivers/location", json=body)

    async def available_rides(self, radius_km: Optional[float] = None) -> list:
        params = {"radius_km": radius_km} if radius_km else {}
        data = await self._request("GET", "/drivers/available-rides", params=params)
        return data["rides"]
