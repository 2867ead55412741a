"""
Matching Service
Finds the nearest eligible driver for a requested ride and hands the ride to
exactly one of them. A lost claim is not an error: the next candidate is
tried, and running out of candidates is reported as NO_DRIVERS_AVAILABLE.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Optional, Tuple

from gocab.config import (
    MATCH_CANDIDATE_LIMIT,
    MATCH_MAX_ATTEMPTS,
    REQUEST_TTL_MINUTES,
    SEARCH_RADIUS_KM,
)
from gocab.errors import (
    ActiveRideExists,
    DriverNotAvailable,
    InvalidRequest,
    RideAlreadyAssigned,
    RideCannotBeUpdated,
    Unauthorized,
)
from gocab.models.actor import RIDER, Actor
from gocab.models.ride_model import CANCELLED, REQUESTED, TRACKED_STATUSES, Place, Ride
from gocab.services import availability, ride_store
from gocab.services.lifecycle import LifecycleController
from gocab.utils.helpers import calculate_distance, utc_now, validate_coordinates
from gocab.utils.maps_utils import get_route_info

logger = logging.getLogger(__name__)

MATCHED = "MATCHED"
NO_DRIVERS_AVAILABLE = "NO_DRIVERS_AVAILABLE"
PENDING = "PENDING"
EXPIRED = "EXPIRED"

EXPIRED_REASON = "No driver found within time limit"

RouteProvider = Callable[[Tuple[float, float], Tuple[float, float]], Awaitable[Dict]]


@dataclass
class MatchResult:
    """Outcome of one matching run"""

    status: str
    ride: Ride
    driver_id: Optional[str] = None
    distance_km: Optional[float] = None
    attempts: int = 0
    offered_to: int = 0

    @property
    def matched(self) -> bool:
        return self.status == MATCHED

    def to_dict(self) -> dict:
        data = {
            "match_status": self.status,
            "driver_id": self.driver_id,
            "attempts": self.attempts,
        }
        if self.distance_km is not None:
            data["distance_to_pickup_km"] = round(self.distance_km, 2)
        if self.status == NO_DRIVERS_AVAILABLE:
            data["message"] = "No drivers nearby, try again shortly"
        elif self.status == PENDING:
            data["offered_to"] = self.offered_to
        elif self.status == EXPIRED:
            data["message"] = "Ride expired - no driver found"
        return data


def _place_from_request(place) -> Place:
    return Place(
        address=place.address,
        latitude=place.coordinates.latitude,
        longitude=place.coordinates.longitude,
        place_id=place.place_id,
    )


class MatchingService:
    def __init__(
        self,
        lifecycle: LifecycleController,
        radius_km: float = SEARCH_RADIUS_KM,
        max_attempts: int = MATCH_MAX_ATTEMPTS,
        candidate_limit: int = MATCH_CANDIDATE_LIMIT,
        route_provider: RouteProvider = get_route_info,
    ):
        self.lifecycle = lifecycle
        self.radius_km = radius_km
        self.max_attempts = max_attempts
        self.candidate_limit = candidate_limit
        self.route_provider = route_provider

    @property
    def notifier(self):
        return self.lifecycle.notifier

    async def request_ride(
        self,
        rider_id: str,
        pickup,
        destination,
        rider_notes: Optional[str] = None,
        auto_assign: bool = True,
        radius_km: Optional[float] = None,
    ) -> MatchResult:
        """
        Create a ride for a rider and try to match it.

        With auto_assign the nearest driver is claimed right away; otherwise
        the request is offered to nearby drivers to accept themselves.
        """
        for label, place in (("Pickup", pickup), ("Destination", destination)):
            is_valid, error_msg = validate_coordinates(
                place.coordinates.latitude, place.coordinates.longitude
            )
            if not is_valid:
                raise InvalidRequest(f"{label}: {error_msg}", code="INVALID_COORDINATES")

        if pickup.coordinates.as_tuple() == destination.coordinates.as_tuple():
            raise InvalidRequest("Pickup and destination cannot be the same")

        active = ride_store.find_active_ride_for_rider(rider_id)
        if active is not None:
            raise ActiveRideExists(active.ride_id)

        route_info = await self.route_provider(
            pickup.coordinates.as_tuple(), destination.coordinates.as_tuple()
        )

        ride = ride_store.create_ride(
            rider_id,
            _place_from_request(pickup),
            _place_from_request(destination),
            route_info,
            rider_notes=rider_notes,
        )
        logger.info(f"Ride {ride.ride_id} requested by rider {rider_id}")

        if not auto_assign:
            offered = await self.notify_nearby_drivers(ride, radius_km)
            return MatchResult(status=PENDING, ride=ride, offered_to=offered)

        return await self.match_ride(ride, radius_km)

    async def match_ride(self, ride: Ride, radius_km: Optional[float] = None) -> MatchResult:
        """
        Claim the nearest eligible driver for a requested ride

        Args:
            ride: Ride in the requested state
            radius_km: Search radius; defaults to SEARCH_RADIUS_KM

        Returns:
            MatchResult with MATCHED or NO_DRIVERS_AVAILABLE

        Raises:
            RideAlreadyAssigned, RideCannotBeUpdated when the ride stopped
            being requested
        """
        self._ensure_open(ride)

        candidates = availability.find_candidates(
            ride.pickup.latitude,
            ride.pickup.longitude,
            radius_km or self.radius_km,
            limit=self.candidate_limit,
        )

        attempts = 0
        for driver, distance in candidates:
            if attempts >= self.max_attempts:
                break
            attempts += 1

            driver_id = str(driver.id)
            claimed = availability.claim(driver_id, ride.ride_id)
            if claimed is None:
                # Taken by a concurrent match or went offline since the search
                continue

            matched = await self.lifecycle.record_match(ride, claimed, distance_km=distance)
            if matched is None:
                availability.release(driver_id, ride.ride_id)
                self._ensure_open(ride_store.reload_ride(ride))
                raise RideCannotBeUpdated("Ride could not be matched")

            logger.info(
                f"Ride {ride.ride_id} matched to driver {driver_id} "
                f"({distance:.2f}km) after {attempts} attempt(s)"
            )
            return MatchResult(
                status=MATCHED,
                ride=matched,
                driver_id=driver_id,
                distance_km=distance,
                attempts=attempts,
            )

        logger.info(
            f"No drivers available for ride {ride.ride_id} "
            f"({len(candidates)} candidates, {attempts} claim attempts)"
        )
        return MatchResult(status=NO_DRIVERS_AVAILABLE, ride=ride, attempts=attempts)

    async def accept_ride(
        self,
        ride_ref: str,
        driver_id: str,
        driver_location: Optional[Tuple[float, float]] = None,
    ) -> Ride:
        """
        Driver-initiated match

        Returns:
            The matched ride, carrying the driver contact snapshot and OTP

        Raises:
            RideNotFound, DriverNotFound, RideAlreadyAssigned,
            RideCannotBeUpdated, DriverNotAvailable
        """
        ride = ride_store.get_ride(ride_ref)
        availability.get_driver(driver_id)

        if ride.driver_id == driver_id and ride.status in TRACKED_STATUSES:
            return ride

        self._ensure_open(ride)

        distance = None
        if driver_location is not None:
            await self.lifecycle.update_driver_location(
                driver_id, driver_location[0], driver_location[1]
            )
            distance = calculate_distance(
                driver_location[0],
                driver_location[1],
                ride.pickup.latitude,
                ride.pickup.longitude,
            )

        claimed = availability.claim(driver_id, ride.ride_id)
        if claimed is None:
            raise DriverNotAvailable()

        matched = await self.lifecycle.record_match(
            ride, claimed, driver_location=driver_location, distance_km=distance
        )
        if matched is None:
            availability.release(driver_id, ride.ride_id)
            self._ensure_open(ride_store.reload_ride(ride))
            raise RideAlreadyAssigned()

        logger.info(f"Driver {driver_id} accepted ride {ride.ride_id}")
        return matched

    async def retry_match(
        self, ride_ref: str, actor: Actor, radius_km: Optional[float] = None
    ) -> MatchResult:
        """
        Run matching again for a ride still waiting on a driver.
        Requests older than REQUEST_TTL_MINUTES are cancelled by the system.
        """
        ride = ride_store.get_ride(ride_ref)

        if not (actor.is_system or (actor.role == RIDER and actor.user_id == ride.rider_id)):
            raise Unauthorized("Only the rider can retry matching")

        if ride.driver_id and ride.status in TRACKED_STATUSES:
            return MatchResult(status=MATCHED, ride=ride, driver_id=ride.driver_id)

        if ride.is_terminal:
            if ride.status == CANCELLED and ride.cancellation_reason == EXPIRED_REASON:
                return MatchResult(status=EXPIRED, ride=ride)
            raise RideCannotBeUpdated(f"Cannot retry matching for a {ride.status} ride")

        age = utc_now() - ride.requested_at
        if age > timedelta(minutes=REQUEST_TTL_MINUTES):
            logger.info(f"Ride {ride.ride_id} expired after {age}, cancelling")
            try:
                cancelled = await self.lifecycle.transition(
                    ride.ride_id, CANCELLED, Actor.system(), reason=EXPIRED_REASON
                )
            except RideCannotBeUpdated:
                # Matched or cancelled in the meantime
                return await self.retry_match(ride.ride_id, actor, radius_km)
            return MatchResult(status=EXPIRED, ride=cancelled)

        return await self.match_ride(ride, radius_km)

    async def notify_nearby_drivers(self, ride: Ride, radius_km: Optional[float] = None) -> int:
        """Offer an open request to eligible drivers nearby; returns how many were told"""
        candidates = availability.find_candidates(
            ride.pickup.latitude,
            ride.pickup.longitude,
            radius_km or self.radius_km,
            limit=self.candidate_limit,
        )

        offered = 0
        for driver, distance in candidates:
            if await self.notifier.ride_offered(ride, str(driver.id), distance):
                offered += 1

        logger.info(f"Ride {ride.ride_id} offered to {offered}/{len(candidates)} nearby drivers")
        return offered

    def _ensure_open(self, ride: Ride) -> None:
        if ride.status == REQUESTED and not ride.driver_id:
            return
        if ride.is_terminal:
            raise RideCannotBeUpdated(f"Ride is already {ride.status}")
        raise RideAlreadyAssigned()
