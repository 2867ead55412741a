"""
Driver Availability Index
Online/available flags and positions of drivers, plus the compare-and-set
claim that hands a driver to exactly one ride.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from bson import ObjectId

from gocab.config import (
    LOCATION_CLOCK_SKEW_SECONDS,
    MAX_SEARCH_RADIUS_KM,
    REQUIRE_DRIVER_APPROVAL,
)
from gocab.errors import DriverExists, DriverNotFound, InvalidRequest
from gocab.models.driver_model import Driver
from gocab.utils.helpers import (
    bounding_box,
    calculate_distance,
    truncate_to_millis,
    utc_now,
    validate_coordinates,
)

logger = logging.getLogger(__name__)

# Candidates closer together than this are treated as equidistant
DISTANCE_TOLERANCE_KM = 1e-9


def _driver_query(driver_id: str, **conditions):
    if not ObjectId.is_valid(driver_id):
        raise DriverNotFound(f"Driver {driver_id} not found")
    return Driver.objects(id=driver_id, **conditions)


def _eligibility() -> dict:
    """Conditions a driver must meet to be offered or handed a ride"""
    conditions = {
        "is_online": True,
        "is_available": True,
        "is_active": True,
        "current_ride_id": None,
    }
    if REQUIRE_DRIVER_APPROVAL:
        conditions["is_approved"] = True
    return conditions


def location_timestamp(at: Optional[datetime] = None) -> datetime:
    """
    Time a location tick is stored under.
    Device stamps more than LOCATION_CLOCK_SKEW_SECONDS ahead of the server
    clock are replaced by the server clock.
    """
    now = utc_now()
    if at is None:
        return now

    at = truncate_to_millis(at)
    if at > now + timedelta(seconds=LOCATION_CLOCK_SKEW_SECONDS):
        logger.warning(f"Location stamped {at.isoformat()} is ahead of server time, using now")
        return now
    return at


def get_driver(driver_id: str) -> Driver:
    driver = _driver_query(driver_id).first()
    if driver is None:
        raise DriverNotFound(f"Driver {driver_id} not found")
    return driver


def register_driver(
    full_name: str,
    phone: str,
    vehicle_make: str,
    vehicle_model: str,
    license_plate: str,
    vehicle_color: Optional[str] = None,
) -> Driver:
    """
    Create the availability record for a new driver.

    The driver starts offline. Its database id is the user_id their tokens
    carry. Approval is pending when REQUIRE_DRIVER_APPROVAL is set.
    """
    license_plate = license_plate.strip().upper()
    if Driver.objects(phone=phone).first() or Driver.objects(license_plate=license_plate).first():
        raise DriverExists()

    driver = Driver(
        full_name=full_name.strip(),
        phone=phone,
        vehicle_make=vehicle_make,
        vehicle_model=vehicle_model,
        vehicle_color=vehicle_color,
        license_plate=license_plate,
        is_approved=not REQUIRE_DRIVER_APPROVAL,
        is_online=False,
        is_available=False,
    )
    driver.save()

    logger.info(f"Registered driver {driver.id} (approved={driver.is_approved})")
    return driver


def set_online(driver_id: str, online: bool, available: Optional[bool] = None) -> Driver:
    """
    Flip a driver's online flag.

    Going offline always clears availability. Going online makes the driver
    available unless they still hold a ride.
    """
    driver = get_driver(driver_id)
    now = utc_now()

    if not online:
        updated = _driver_query(driver_id).modify(
            new=True,
            set__is_online=False,
            set__is_available=False,
            set__last_active=now,
        )
    else:
        wants_available = True if available is None else available
        # Only a driver without a current ride may become available
        if wants_available:
            updated = _driver_query(driver_id, current_ride_id=None).modify(
                new=True,
                set__is_online=True,
                set__is_available=True,
                set__last_active=now,
            )
        else:
            updated = None

        if updated is None:
            updated = _driver_query(driver_id).modify(
                new=True,
                set__is_online=True,
                set__is_available=False,
                set__last_active=now,
            )

    if updated is None:
        raise DriverNotFound(f"Driver {driver_id} not found")

    logger.info(
        f"Driver {driver.id} is now {'online' if updated.is_online else 'offline'} "
        f"(available={updated.is_available})"
    )
    return updated


def update_location(
    driver_id: str, latitude: float, longitude: float, at: Optional[datetime] = None
) -> Optional[Driver]:
    """
    Store a driver's position.

    Returns the updated driver, or None when a newer position is already
    stored (out-of-order ticks are dropped).
    """
    is_valid, error_msg = validate_coordinates(latitude, longitude)
    if not is_valid:
        raise InvalidRequest(error_msg, code="INVALID_COORDINATES")

    at = location_timestamp(at)
    get_driver(driver_id)

    updated = Driver.objects(id=driver_id, location_updated_at=None).modify(
        new=True,
        set__latitude=float(latitude),
        set__longitude=float(longitude),
        set__location_updated_at=at,
        set__last_active=utc_now(),
    )
    if updated is None:
        updated = Driver.objects(id=driver_id, location_updated_at__lt=at).modify(
            new=True,
            set__latitude=float(latitude),
            set__longitude=float(longitude),
            set__location_updated_at=at,
            set__last_active=utc_now(),
        )

    if updated is None:
        logger.debug(f"Dropped stale location for driver {driver_id} at {at.isoformat()}")
    return updated


def find_candidates(
    latitude: float,
    longitude: float,
    radius_km: float,
    limit: int = 10,
) -> List[Tuple[Driver, float]]:
    """
    Eligible drivers around a pickup, nearest first

    Args:
        latitude, longitude: Pickup coordinates
        radius_km: Search radius, clamped to MAX_SEARCH_RADIUS_KM
        limit: Maximum number of candidates returned

    Returns:
        List of (driver, distance_km). Equidistant drivers are ordered by
        ascending driver id.
    """
    is_valid, error_msg = validate_coordinates(latitude, longitude)
    if not is_valid:
        raise InvalidRequest(error_msg, code="INVALID_COORDINATES")
    if radius_km is None or radius_km <= 0:
        raise InvalidRequest("Search radius must be positive")

    latitude = float(latitude)
    longitude = float(longitude)
    radius_km = min(float(radius_km), MAX_SEARCH_RADIUS_KM)

    min_lat, max_lat, min_lon, max_lon = bounding_box(latitude, longitude, radius_km)
    drivers = Driver.objects(
        latitude__gte=min_lat,
        latitude__lte=max_lat,
        longitude__gte=min_lon,
        longitude__lte=max_lon,
        **_eligibility(),
    )

    candidates = []
    for driver in drivers:
        distance = calculate_distance(latitude, longitude, driver.latitude, driver.longitude)
        if distance <= radius_km:
            candidates.append((driver, distance))

    candidates.sort(key=lambda item: (item[1], str(item[0].id)))

    # Collapse float noise so equidistant drivers fall back to the id order
    ranked = []
    for driver, distance in candidates:
        if ranked and abs(distance - ranked[-1][1]) <= DISTANCE_TOLERANCE_KM:
            distance = ranked[-1][1]
        ranked.append((driver, distance))
    ranked.sort(key=lambda item: (item[1], str(item[0].id)))

    logger.debug(
        f"Found {len(ranked)} candidate drivers within {radius_km}km of "
        f"({latitude}, {longitude})"
    )
    return ranked[:limit]


def claim(driver_id: str, ride_id: str) -> Optional[Driver]:
    """
    Hand a driver to a ride in one conditional write.

    Succeeds only while the driver is still eligible at write time. Returns
    the updated driver, or None when someone else claimed them first or they
    went offline.
    """
    if not ObjectId.is_valid(driver_id):
        raise DriverNotFound(f"Driver {driver_id} not found")

    claimed = Driver.objects(id=driver_id, **_eligibility()).modify(
        new=True,
        set__is_available=False,
        set__current_ride_id=ride_id,
        set__last_active=utc_now(),
    )
    if claimed is None:
        logger.info(f"Claim of driver {driver_id} for ride {ride_id} lost")
    else:
        logger.info(f"Driver {driver_id} claimed for ride {ride_id}")
    return claimed


def release(driver_id: str, ride_id: str) -> Optional[Driver]:
    """
    Give a driver back after their ride ends.

    Only touches the driver while they still hold ride_id. Online drivers
    become available again; offline drivers just drop the ride.
    """
    if not ObjectId.is_valid(driver_id):
        raise DriverNotFound(f"Driver {driver_id} not found")

    released = Driver.objects(id=driver_id, current_ride_id=ride_id, is_online=True).modify(
        new=True,
        set__is_available=True,
        unset__current_ride_id=True,
        set__last_active=utc_now(),
    )
    if released is None:
        released = Driver.objects(id=driver_id, current_ride_id=ride_id).modify(
            new=True,
            set__is_available=False,
            unset__current_ride_id=True,
        )

    if released is None:
        logger.warning(f"Driver {driver_id} no longer holds ride {ride_id}, nothing to release")
    else:
        logger.info(f"Driver {driver_id} released from ride {ride_id}")
    return released


def record_completion(driver_id: str, distance_miles: float, carbon_saved: float) -> None:
    """Bump the driver's lifetime stats after a completed trip"""
    if not ObjectId.is_valid(driver_id):
        return

    Driver.objects(id=driver_id).update_one(
        inc__total_rides=1,
        inc__total_distance_miles=distance_miles or 0.0,
        inc__carbon_saved_for_riders=carbon_saved or 0.0,
    )
