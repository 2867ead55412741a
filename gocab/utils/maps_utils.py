"""
Google Maps Integration Utilities
Route distance, duration and polyline from the Google Routes API,
with a straight-line fallback when the API is unavailable
"""

import logging
from typing import Dict, Optional, Tuple

import httpx

from gocab.config import GOOGLE_MAPS_API_KEY
from gocab.utils.helpers import calculate_distance, calculate_eta, km_to_miles

logger = logging.getLogger(__name__)

ROUTES_URL = "https://routes.googleapis.com/directions/v2:computeRoutes"
ROUTES_TIMEOUT_SECONDS = 10.0
# Road distance is longer than the straight line; used only by the fallback
ROAD_DISTANCE_FACTOR = 1.3
MIN_DURATION_MINUTES = 5


async def get_route_info(
    origin: Tuple[float, float],
    destination: Tuple[float, float],
    api_key: Optional[str] = GOOGLE_MAPS_API_KEY,
) -> Dict:
    """
    Get distance, duration and polyline between two points

    Args:
        origin: Tuple of (latitude, longitude) for starting point
        destination: Tuple of (latitude, longitude) for ending point

    Returns:
        Dict with distance_miles, duration_minutes, polyline and source
    """
    if not api_key:
        logger.warning("Google Maps API key not configured, using fallback calculation")
        return _fallback_route_info(origin, destination)

    payload = {
        "origin": {
            "location": {"latLng": {"latitude": origin[0], "longitude": origin[1]}}
        },
        "destination": {
            "location": {
                "latLng": {"latitude": destination[0], "longitude": destination[1]}
            }
        },
        "travelMode": "DRIVE",
    }

    headers = {
        "Content-Type": "application/json",
        "X-Goog-Api-Key": api_key,
        "X-Goog-FieldMask": "routes.duration,routes.distanceMeters,routes.polyline.encodedPolyline",
    }

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                ROUTES_URL, json=payload, headers=headers, timeout=ROUTES_TIMEOUT_SECONDS
            )
    except httpx.HTTPError as e:
        logger.warning(f"Google Routes API error: {str(e)}, using fallback calculation")
        return _fallback_route_info(origin, destination)

    if response.status_code != 200:
        logger.warning(
            f"Routes API returned {response.status_code}: {response.text}, using fallback"
        )
        return _fallback_route_info(origin, destination)

    routes = response.json().get("routes") or []
    if not routes:
        logger.warning("Routes API returned no routes, using fallback")
        return _fallback_route_info(origin, destination)

    route = routes[0]
    distance_meters = route.get("distanceMeters", 0)
    duration_str = route.get("duration", "0s")

    # Duration comes back as a string like "123s"
    try:
        duration_seconds = int(str(duration_str).rstrip("s"))
    except ValueError:
        duration_seconds = 0

    return {
        "distance_miles": round(km_to_miles(distance_meters / 1000), 2),
        "duration_minutes": max(round(duration_seconds / 60), MIN_DURATION_MINUTES),
        "polyline": route.get("polyline", {}).get("encodedPolyline"),
        "source": "google",
    }


def _fallback_route_info(
    origin: Tuple[float, float], destination: Tuple[float, float]
) -> Dict:
    """Haversine estimate used when the Routes API is unavailable"""
    distance_km = calculate_distance(origin[0], origin[1], destination[0], destination[1])
    road_km = distance_km * ROAD_DISTANCE_FACTOR

    return {
        "distance_miles": round(km_to_miles(road_km), 2),
        "duration_minutes": max(calculate_eta(road_km), MIN_DURATION_MINUTES),
        "polyline": None,
        "source": "fallback",
    }
