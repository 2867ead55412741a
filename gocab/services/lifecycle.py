"""
Ride Lifecycle Controller
The only place ride statuses change. Enforces the transition table, who may
take each edge, write-once timestamps, driver release on terminal statuses
and the completion numbers.
"""

import logging
from datetime import datetime
from typing import Dict, Optional, Tuple

from mongoengine.context_managers import run_in_transaction

from gocab.config import MONGO_TRANSACTIONS
from gocab.errors import (
    InvalidRequest,
    RideCannotBeUpdated,
    Unauthorized,
)
from gocab.models.actor import CANCELLED_BY, DRIVER, RIDER, Actor
from gocab.models.driver_model import Driver
from gocab.models.ride_model import (
    ARRIVED,
    CANCELLED,
    COMPLETED,
    DRIVER_EN_ROUTE,
    IN_PROGRESS,
    MATCHED,
    REQUESTED,
    TERMINAL_STATUSES,
    DriverLocation,
    Ride,
    TripSummary,
)
from gocab.services import availability, ride_store
from gocab.services.notifications import RideNotifier
from gocab.utils import pricing
from gocab.utils.helpers import utc_now, validate_coordinates

logger = logging.getLogger(__name__)

# Status writes tried before a conflicting ride is reported
TRANSITION_ATTEMPTS = 3

TRANSITIONS = {
    REQUESTED: (MATCHED, CANCELLED),
    MATCHED: (DRIVER_EN_ROUTE, ARRIVED, CANCELLED),
    DRIVER_EN_ROUTE: (ARRIVED, CANCELLED),
    ARRIVED: (IN_PROGRESS, CANCELLED),
    IN_PROGRESS: (COMPLETED,),
    COMPLETED: (),
    CANCELLED: (),
}

# Edges the assigned driver drives
DRIVER_EDGES = (DRIVER_EN_ROUTE, ARRIVED, IN_PROGRESS, COMPLETED)


def can_transition(current_status: str, new_status: str) -> bool:
    return new_status in TRANSITIONS.get(current_status, ())


def is_authorized(ride: Ride, target: str, actor: Actor) -> bool:
    """Whether actor may move ride to target"""
    is_assigned_driver = (
        actor.role == DRIVER and ride.driver_id is not None and actor.user_id == ride.driver_id
    )

    if target == MATCHED:
        return actor.is_system
    if target == COMPLETED:
        return is_assigned_driver or actor.is_system
    if target in DRIVER_EDGES:
        return is_assigned_driver
    if target == CANCELLED:
        is_rider = actor.role == RIDER and actor.user_id == ride.rider_id
        return is_rider or is_assigned_driver or actor.is_system
    return False


def completion_numbers(
    ride: Ride, completed_at: datetime, actual_distance_miles: Optional[float] = None
) -> Dict:
    """
    Final distance, duration, fare and carbon for a ride being completed.
    Actual values win; missing ones fall back to the frozen estimates.
    """
    if actual_distance_miles is None and ride.route:
        actual_distance_miles = ride.route.actual_distance_miles
    distance_known = actual_distance_miles is not None

    if ride.started_at:
        duration = round((completed_at - ride.started_at).total_seconds() / 60, 2)
    else:
        duration = ride.route.estimated_duration_minutes

    distance = actual_distance_miles if distance_known else ride.route.distance_miles

    if distance_known:
        fare = pricing.calculate_fare(actual_distance_miles, duration)["total"]
        carbon_saved = pricing.calculate_carbon_saved(actual_distance_miles)
    else:
        fare = ride.pricing.total_estimated
        carbon_saved = ride.carbon_footprint.estimated_saved

    return {
        "distance_known": distance_known,
        "distance_miles": round(distance, 2),
        "duration_minutes": duration,
        "fare": fare,
        "carbon_saved": carbon_saved,
        "tree_equivalent": pricing.tree_equivalent(carbon_saved),
    }


class LifecycleController:
    """Moves rides through the state machine and fans out the results"""

    def __init__(
        self,
        notifier: Optional[RideNotifier] = None,
        use_transactions: bool = MONGO_TRANSACTIONS,
    ):
        self.notifier = notifier or RideNotifier()
        self.use_transactions = use_transactions

    async def transition(
        self,
        ride_ref: str,
        target: str,
        actor: Actor,
        reason: Optional[str] = None,
        pickup_verified: bool = False,
        actual_distance_miles: Optional[float] = None,
    ) -> Ride:
        """
        Move a ride to target on behalf of actor

        When another writer moves the ride first, the checks are repeated
        against the fresh status, so a rider cancelling while a match lands
        cancels the matched ride.

        Args:
            ride_ref: Public ride id (or database id)
            target: Status to move to
            actor: Rider, driver or system performing the change
            reason: Cancellation reason
            pickup_verified: The rider's OTP was checked; required to start the trip
            actual_distance_miles: Measured trip distance, used on completion

        Returns:
            The updated ride

        Raises:
            RideNotFound, RideCannotBeUpdated, Unauthorized, InvalidRequest
        """
        if actual_distance_miles is not None and actual_distance_miles < 0:
            raise InvalidRequest("Actual distance cannot be negative")

        for _ in range(TRANSITION_ATTEMPTS):
            ride = ride_store.get_ride(ride_ref)
            current = ride.status
            self._check_transition(ride, target, actor, pickup_verified)

            now = utc_now()
            updates, numbers = self._transition_updates(
                ride, target, actor, reason, now, actual_distance_miles
            )
            updated = self._write_transition(ride, current, target, now, updates)
            if updated is not None:
                break

            logger.info(
                f"Ride {ride.ride_id} moved while {actor} tried {current}->{target}, re-checking"
            )
        else:
            fresh = ride_store.get_ride(ride_ref)
            raise RideCannotBeUpdated(
                f"Ride status changed to {fresh.status}, cannot move to {target}"
            )

        if target == COMPLETED and updated.driver_id:
            self._record_completion(updated, numbers)

        logger.info(f"Ride {updated.ride_id}: {current} -> {target} by {actor}")
        await self._emit(updated)
        return updated

    def _check_transition(
        self, ride: Ride, target: str, actor: Actor, pickup_verified: bool
    ) -> None:
        current = ride.status

        if ride.is_terminal:
            raise RideCannotBeUpdated(f"Ride is already {current}")

        if target == MATCHED:
            raise RideCannotBeUpdated("Rides are matched through driver assignment")

        if not can_transition(current, target):
            raise RideCannotBeUpdated(f"Cannot change ride status from {current} to {target}")

        if not is_authorized(ride, target, actor):
            logger.warning(f"{actor} may not move ride {ride.ride_id} from {current} to {target}")
            raise Unauthorized(f"Not allowed to move this ride to {target}")

        if target == IN_PROGRESS and not pickup_verified:
            raise InvalidRequest("Pickup has not been verified", code="PICKUP_NOT_VERIFIED")

    def _transition_updates(
        self,
        ride: Ride,
        target: str,
        actor: Actor,
        reason: Optional[str],
        now: datetime,
        actual_distance_miles: Optional[float],
    ) -> Tuple[Dict, Optional[Dict]]:
        updates = {}

        if target == CANCELLED:
            updates["set__cancelled_by"] = CANCELLED_BY[actor.role]
            if reason:
                updates["set__cancellation_reason"] = reason

        numbers = None
        if target == COMPLETED:
            numbers = completion_numbers(ride, now, actual_distance_miles)
            if actual_distance_miles is not None:
                updates["set__route__actual_distance_miles"] = actual_distance_miles
            updates["set__route__actual_duration_minutes"] = numbers["duration_minutes"]
            updates["set__pricing__total_actual"] = numbers["fare"]
            updates["set__carbon_footprint__actual_saved"] = numbers["carbon_saved"]
            updates["set__trip_summary"] = TripSummary(
                distance_miles=numbers["distance_miles"],
                duration_minutes=numbers["duration_minutes"],
                fare=numbers["fare"],
                carbon_saved=numbers["carbon_saved"],
                tree_equivalent=numbers["tree_equivalent"],
            )

        return updates, numbers

    def _write_transition(
        self, ride: Ride, current: str, target: str, now: datetime, updates: Dict
    ) -> Optional[Ride]:
        """
        Status write plus, for terminal targets, the driver release.
        Returns None when the status compare-and-set lost.
        """
        if target not in TERMINAL_STATUSES or not ride.driver_id:
            return ride_store.apply_transition(ride, current, target, now, updates)

        if self.use_transactions:
            return self._write_in_transaction(ride, current, target, now, updates)

        updated = ride_store.apply_transition(ride, current, target, now, updates)
        if updated is not None:
            self._release_driver(updated, current, target, updates)
        return updated

    def _write_in_transaction(
        self, ride: Ride, current: str, target: str, now: datetime, updates: Dict
    ) -> Optional[Ride]:
        try:
            with run_in_transaction():
                updated = ride_store.apply_transition(ride, current, target, now, updates)
                if updated is not None:
                    availability.release(updated.driver_id, updated.ride_id)
        except Exception as e:
            logger.error(
                f"Ride {ride.ride_id} {current}->{target} rolled back: "
                f"{type(e).__name__}: {str(e)}"
            )
            raise
        return updated

    def _release_driver(self, ride: Ride, from_status: str, target: str, updates: Dict) -> None:
        # Without transactions the status write is undone by hand
        try:
            availability.release(ride.driver_id, ride.ride_id)
        except Exception as e:
            logger.error(
                f"Releasing driver {ride.driver_id} from ride {ride.ride_id} failed, "
                f"reverting {from_status}->{target}: {type(e).__name__}: {str(e)}"
            )
            ride_store.revert_transition(ride, from_status, target, updates)
            raise

    def _record_completion(self, ride: Ride, numbers: Dict) -> None:
        try:
            availability.record_completion(
                ride.driver_id, numbers["distance_miles"], numbers["carbon_saved"]
            )
        except Exception as e:
            logger.error(f"Could not update stats for driver {ride.driver_id}: {str(e)}")

    async def _emit(self, ride: Ride) -> None:
        try:
            await self.notifier.ride_status_changed(ride)
        except Exception as e:
            logger.error(f"Status notification for ride {ride.ride_id} failed: {str(e)}")

    async def record_match(
        self,
        ride: Ride,
        driver: Driver,
        driver_location: Optional[Tuple[float, float]] = None,
        distance_km: Optional[float] = None,
    ) -> Optional[Ride]:
        """
        requested -> matched for a driver that has already been claimed.

        Returns the matched ride, or None when the ride stopped being
        requested (cancelled or taken) before the write landed. The caller
        owns the claim and must release it in that case.
        """
        now = utc_now()

        if driver_location is not None:
            latitude, longitude = driver_location
        else:
            latitude, longitude = driver.latitude, driver.longitude

        location = None
        if latitude is not None and longitude is not None:
            location = DriverLocation(latitude=latitude, longitude=longitude, last_updated=now)

        updated = ride_store.assign_driver(
            ride, str(driver.id), driver.contact_snapshot(), now, location
        )
        if updated is None:
            return None

        logger.info(f"Ride {updated.ride_id}: {REQUESTED} -> {MATCHED} with driver {driver.id}")

        try:
            await self.notifier.ride_offered(updated, str(driver.id), distance_km, assigned=True)
        except Exception as e:
            logger.error(f"Offer notification for ride {updated.ride_id} failed: {str(e)}")
        await self._emit(updated)

        return updated

    async def update_driver_location(
        self,
        driver_id: str,
        latitude: float,
        longitude: float,
        heading: Optional[float] = None,
        at: Optional[datetime] = None,
    ) -> Tuple[Optional[Driver], Optional[Ride]]:
        """
        Store a driver position and mirror it onto their tracked ride.

        Returns (driver, ride). driver is None when the tick was older than
        the stored position and was dropped; ride is None when the driver is
        not on a tracked ride.
        """
        is_valid, error_msg = validate_coordinates(latitude, longitude)
        if not is_valid:
            raise InvalidRequest(error_msg, code="INVALID_COORDINATES")

        at = availability.location_timestamp(at)
        driver = availability.update_location(driver_id, latitude, longitude, at)
        if driver is None:
            return None, None

        ride = ride_store.find_tracked_ride_for_driver(driver_id)
        if ride is not None:
            mirrored = ride_store.record_driver_location(ride, latitude, longitude, at, heading)
            ride = mirrored or ride

        try:
            await self.notifier.driver_location_changed(
                driver_id, latitude, longitude, at, heading=heading, ride=ride
            )
        except Exception as e:
            logger.error(f"Location notification for driver {driver_id} failed: {str(e)}")

        return driver, ride

    async def set_driver_status(
        self,
        driver_id: str,
        online: bool,
        location: Optional[Tuple[float, float]] = None,
    ) -> Driver:
        """Driver going online (optionally with a first position) or offline"""
        if location is not None:
            await self.update_driver_location(driver_id, location[0], location[1])

        return availability.set_online(driver_id, online)
