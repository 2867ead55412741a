"""
Ride Record Store
Persistence access for rides. Every status write is a compare-and-set on the
current status so concurrent writers cannot both win the same edge.
"""

import logging
import time
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from mongoengine import NotUniqueError, Q

from gocab.errors import RideNotFound
from gocab.models.actor import DRIVER
from gocab.models.ride_model import (
    ACTIVE_STATUSES,
    MATCHED,
    REQUESTED,
    STATUS_TIMESTAMP_FIELDS,
    TRACKED_STATUSES,
    CarbonFootprint,
    DriverContact,
    DriverLocation,
    Place,
    Pricing,
    Ride,
    RouteInfo,
)
from gocab.utils import pricing
from gocab.utils.helpers import (
    bounding_box,
    calculate_distance,
    generate_numeric_code,
    generate_suffix,
    utc_now,
)

logger = logging.getLogger(__name__)

PICKUP_CODE_LENGTH = 6
OTP_LENGTH = 4
RIDE_ID_ATTEMPTS = 3


def generate_ride_id() -> str:
    return f"RIDE_{int(time.time() * 1000)}_{generate_suffix(6)}"


def generate_pickup_code() -> str:
    return generate_numeric_code(PICKUP_CODE_LENGTH)


def generate_otp() -> str:
    return generate_numeric_code(OTP_LENGTH)


def create_ride(
    rider_id: str,
    pickup: Place,
    destination: Place,
    route_info: Dict,
    rider_notes: Optional[str] = None,
) -> Ride:
    """
    Persist a new ride in the requested state with its fare and carbon estimates frozen

    Args:
        route_info: Output of the routing collaborator (distance_miles, duration_minutes, polyline)
    """
    distance_miles = route_info["distance_miles"]
    duration_minutes = route_info["duration_minutes"]
    fare = pricing.calculate_fare(distance_miles, duration_minutes)

    for attempt in range(1, RIDE_ID_ATTEMPTS + 1):
        now = utc_now()
        ride = Ride(
            ride_id=generate_ride_id(),
            pickup_code=generate_pickup_code(),
            otp=generate_otp(),
            rider_id=rider_id,
            pickup=pickup,
            destination=destination,
            route=RouteInfo(
                distance_miles=distance_miles,
                estimated_duration_minutes=duration_minutes,
                polyline=route_info.get("polyline"),
            ),
            status=REQUESTED,
            requested_at=now,
            updated_at=now,
            pricing=Pricing(
                base_fare=fare["base_fare"],
                distance_fee=fare["distance_fee"],
                time_fee=fare["time_fee"],
                total_estimated=fare["total"],
                currency=pricing.CURRENCY,
            ),
            carbon_footprint=CarbonFootprint(
                estimated_saved=pricing.calculate_carbon_saved(distance_miles),
                comparison_method=pricing.COMPARISON_METHOD,
                calculation_method=pricing.CALCULATION_METHOD,
            ),
            rider_notes=rider_notes,
        )
        try:
            ride.save(force_insert=True)
            return ride
        except NotUniqueError:
            logger.warning(f"Ride id collision on attempt {attempt}, regenerating")

    raise RuntimeError("Could not allocate a unique ride id")


def find_ride(ride_ref: str) -> Optional[Ride]:
    """Look a ride up by its public ride id, falling back to the database id"""
    ride = Ride.objects(ride_id=ride_ref).first()
    if ride is None and ObjectId.is_valid(ride_ref):
        ride = Ride.objects(id=ride_ref).first()
    return ride


def get_ride(ride_ref: str) -> Ride:
    ride = find_ride(ride_ref)
    if ride is None:
        raise RideNotFound(f"Ride {ride_ref} not found")
    return ride


def reload_ride(ride: Ride) -> Ride:
    fresh = Ride.objects(id=ride.id).first()
    if fresh is None:
        raise RideNotFound(f"Ride {ride.ride_id} not found")
    return fresh


def find_rides_for_user(
    user_id: str,
    role: str,
    statuses: Iterable[str] = ACTIVE_STATUSES,
    limit: int = 20,
) -> List[Ride]:
    """Rides where the user is the rider (or the driver, for drivers), newest first"""
    owner_field = "driver_id" if role == DRIVER else "rider_id"
    query = {owner_field: user_id, "status__in": list(statuses)}
    return list(Ride.objects(**query).order_by("-requested_at").limit(limit))


def find_active_ride_for_rider(rider_id: str) -> Optional[Ride]:
    return (
        Ride.objects(rider_id=rider_id, status__in=ACTIVE_STATUSES)
        .order_by("-requested_at")
        .first()
    )


def find_tracked_ride_for_driver(driver_id: str) -> Optional[Ride]:
    return (
        Ride.objects(driver_id=driver_id, status__in=TRACKED_STATUSES)
        .order_by("-requested_at")
        .first()
    )


def find_open_requests_near(
    latitude: float, longitude: float, radius_km: float, limit: int = 20
) -> List[Tuple[Ride, float]]:
    """Requested rides whose pickup lies within radius_km, nearest first"""
    min_lat, max_lat, min_lon, max_lon = bounding_box(latitude, longitude, radius_km)
    rides = Ride.objects(
        status=REQUESTED,
        driver_id=None,
        pickup__latitude__gte=min_lat,
        pickup__latitude__lte=max_lat,
        pickup__longitude__gte=min_lon,
        pickup__longitude__lte=max_lon,
    )

    nearby = []
    for ride in rides:
        distance = calculate_distance(
            latitude, longitude, ride.pickup.latitude, ride.pickup.longitude
        )
        if distance <= radius_km:
            nearby.append((ride, distance))

    nearby.sort(key=lambda item: (item[1], item[0].ride_id))
    return nearby[:limit]


def apply_transition(
    ride: Ride,
    from_status: str,
    to_status: str,
    now: datetime,
    updates: Optional[Dict] = None,
    conditions: Optional[Dict] = None,
) -> Optional[Ride]:
    """
    Move a ride from from_status to to_status in one conditional write.

    The write only matches while the ride is still in from_status and the
    target's timestamp has never been stamped, so each timestamp is written
    at most once. Returns the updated ride, or None when another writer moved
    the ride first.
    """
    timestamp_field = STATUS_TIMESTAMP_FIELDS[to_status]
    query = {"id": ride.id, "status": from_status, timestamp_field: None}
    query.update(conditions or {})

    update = {
        "set__status": to_status,
        f"set__{timestamp_field}": now,
        "set__updated_at": now,
    }
    update.update(updates or {})

    return Ride.objects(**query).modify(new=True, **update)


def revert_transition(
    ride: Ride, from_status: str, to_status: str, updates: Optional[Dict] = None
) -> Optional[Ride]:
    """
    Undo a transition written by apply_transition.
    Only used when the rest of the operation failed to persist.
    """
    timestamp_field = STATUS_TIMESTAMP_FIELDS[to_status]
    update = {
        "set__status": from_status,
        f"unset__{timestamp_field}": True,
        "set__updated_at": utc_now(),
    }
    for key in updates or {}:
        if key.startswith("set__"):
            update["unset__" + key[len("set__"):]] = True

    reverted = Ride.objects(id=ride.id, status=to_status).modify(new=True, **update)
    if reverted is None:
        logger.error(
            f"Could not revert ride {ride.ride_id} from {to_status} back to {from_status}"
        )
    return reverted


def record_driver_location(
    ride: Ride,
    latitude: float,
    longitude: float,
    at: datetime,
    heading: Optional[float] = None,
) -> Optional[Ride]:
    """
    Store the driver's position on a tracked ride.
    Never replaces a newer position with an older one; returns None when the
    update was stale or the ride is no longer tracked.
    """
    location = DriverLocation(
        latitude=latitude, longitude=longitude, heading=heading, last_updated=at
    )
    fresher = Q(driver_location=None) | Q(driver_location__last_updated__lt=at)
    return Ride.objects(
        Q(id=ride.id) & Q(status__in=TRACKED_STATUSES) & fresher
    ).modify(new=True, set__driver_location=location)


def assign_driver(
    ride: Ride,
    driver_id: str,
    contact: DriverContact,
    now: datetime,
    location: Optional[DriverLocation] = None,
) -> Optional[Ride]:
    """
    requested -> matched for one driver.
    Only succeeds while the ride is still requested and has no driver.
    """
    updates = {
        "set__driver_id": driver_id,
        "set__driver_contact": contact,
    }
    if location is not None:
        updates["set__driver_location"] = location

    return apply_transition(
        ride, REQUESTED, MATCHED, now, updates=updates, conditions={"driver_id": None}
    )
