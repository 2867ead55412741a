"""
Helper Utilities
Geometry and code-generation helpers used across the dispatch services
"""

import math
import random
import string
from datetime import datetime, timezone
from typing import Tuple

EARTH_RADIUS_KM = 6371.0
KM_PER_MILE = 1.609344


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two coordinates using Haversine formula

    Args:
        lat1, lon1: First coordinate (latitude, longitude)
        lat2, lon2: Second coordinate (latitude, longitude)

    Returns:
        Distance in kilometers (unrounded, used for ranking)
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(lon2 - lon1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def km_to_miles(km: float) -> float:
    return km / KM_PER_MILE


def bounding_box(
    latitude: float, longitude: float, radius_km: float
) -> Tuple[float, float, float, float]:
    """
    Lat/lng box enclosing a circle of radius_km around a point.

    Returns (min_lat, max_lat, min_lon, max_lon). Near the poles, or when the
    circle would wrap the antimeridian, the longitude span is widened to the
    full range.
    """
    angular_radius = radius_km / EARTH_RADIUS_KM
    delta_lat = math.degrees(angular_radius)
    min_lat = max(latitude - delta_lat, -90.0)
    max_lat = min(latitude + delta_lat, 90.0)

    cos_lat = math.cos(math.radians(latitude))
    if cos_lat < 1e-6 or min_lat <= -90.0 or max_lat >= 90.0:
        return min_lat, max_lat, -180.0, 180.0

    sin_ratio = math.sin(angular_radius) / cos_lat
    if sin_ratio >= 1:
        return min_lat, max_lat, -180.0, 180.0

    delta_lon = math.degrees(math.asin(sin_ratio))
    min_lon = longitude - delta_lon
    max_lon = longitude + delta_lon
    if min_lon < -180.0 or max_lon > 180.0:
        return min_lat, max_lat, -180.0, 180.0

    return min_lat, max_lat, min_lon, max_lon


def validate_coordinates(latitude, longitude) -> Tuple[bool, str]:
    """
    Validate latitude and longitude coordinates

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        return False, "Invalid coordinate format"

    if math.isnan(lat) or math.isnan(lon):
        return False, "Invalid coordinate format"

    if not (-90 <= lat <= 90):
        return False, "Latitude must be between -90 and 90"

    if not (-180 <= lon <= 180):
        return False, "Longitude must be between -180 and 180"

    return True, ""


def generate_numeric_code(length: int) -> str:
    """Random numeric code without a leading zero (e.g. pickup codes, OTPs)"""
    first = str(random.randint(1, 9))
    rest = "".join(random.choices(string.digits, k=length - 1))
    return first + rest


def generate_suffix(length: int = 6) -> str:
    return "".join(random.choices(string.ascii_uppercase + string.digits, k=length))


def calculate_eta(distance_km: float, avg_speed_kmh: float = 30.0) -> int:
    """
    Calculate estimated time of arrival in minutes

    Args:
        distance_km: Distance in kilometers
        avg_speed_kmh: Average speed in km/h (default: 30)
    """
    if distance_km <= 0:
        return 0

    return math.ceil(distance_km / avg_speed_kmh * 60)


def truncate_to_millis(value: datetime) -> datetime:
    """Naive UTC datetime at the millisecond precision MongoDB stores"""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utc_now() -> datetime:
    return truncate_to_millis(datetime.utcnow())
