"""
Driver Routes
Registration and profile, online/offline toggle, location ticks and the list
of open requests nearby
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from gocab.config import MAX_SEARCH_RADIUS_KM, SEARCH_RADIUS_KM
from gocab.dependencies import Services, get_services
from gocab.errors import DispatchError, InvalidRequest
from gocab.models.actor import DRIVER, Actor
from gocab.models.schemas import DriverLocationUpdate, DriverRegistration, DriverStatusUpdate
from gocab.services import availability, ride_store
from gocab.utils.helpers import calculate_eta
from gocab.utils.jwt_utils import create_access_token, require_driver

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_driver(data: DriverRegistration):
    """
    Register a new driver
    Returns the driver record and a token whose user_id is the driver id
    """
    try:
        driver = availability.register_driver(
            full_name=data.full_name,
            phone=data.phone,
            vehicle_make=data.vehicle_make,
            vehicle_model=data.vehicle_model,
            vehicle_color=data.vehicle_color,
            license_plate=data.license_plate,
        )
        token = create_access_token({"user_id": str(driver.id), "role": DRIVER})

        return {
            "success": True,
            "message": "Driver registered successfully",
            "token": token,
            "driver": driver.to_dict(),
        }

    except (DispatchError, HTTPException):
        raise
    except Exception as e:
        logger.error(f"Driver registration error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to register driver",
        )


@router.get("/me")
async def get_driver_profile(actor: Actor = Depends(require_driver)):
    """The calling driver's availability record"""
    driver = availability.get_driver(actor.user_id)
    return {"success": True, "driver": driver.to_dict()}


@router.post("/status")
async def update_driver_status(
    data: DriverStatusUpdate,
    actor: Actor = Depends(require_driver),
    services: Services = Depends(get_services),
):
    """Go online (optionally sending a first position) or offline"""
    try:
        driver = await services.lifecycle.set_driver_status(
            actor.user_id,
            data.is_online,
            location=data.location.as_tuple() if data.location else None,
        )

        return {
            "success": True,
            "message": f"You are now {'online' if driver.is_online else 'offline'}",
            "driver": driver.to_dict(),
        }

    except (DispatchError, HTTPException):
        raise
    except Exception as e:
        logger.error(f"Driver status update error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update driver status",
        )


@router.post("/location")
async def update_driver_location(
    data: DriverLocationUpdate,
    actor: Actor = Depends(require_driver),
    services: Services = Depends(get_services),
):
    """
    Driver position tick over REST (the WebSocket carries the same message)
    Ticks older than the stored position are acknowledged but dropped
    """
    try:
        driver, ride = await services.lifecycle.update_driver_location(
            actor.user_id,
            data.latitude,
            data.longitude,
            heading=data.heading,
            at=data.timestamp,
        )

        return {
            "success": True,
            "accepted": driver is not None,
            "ride_id": ride.ride_id if ride else None,
        }

    except (DispatchError, HTTPException):
        raise
    except Exception as e:
        logger.error(f"Driver location update error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update location",
        )


@router.get("/available-rides")
async def get_available_rides(
    radius_km: Optional[float] = Query(default=None, gt=0, le=MAX_SEARCH_RADIUS_KM),
    actor: Actor = Depends(require_driver),
):
    """Open ride requests around the driver's last known position, nearest first"""
    driver = availability.get_driver(actor.user_id)

    if not driver.is_online:
        raise InvalidRequest("You must be online to view ride requests", code="DRIVER_OFFLINE")
    if driver.latitude is None or driver.longitude is None:
        raise InvalidRequest("Send your location first", code="LOCATION_REQUIRED")

    nearby = ride_store.find_open_requests_near(
        driver.latitude, driver.longitude, radius_km or SEARCH_RADIUS_KM
    )

    rides = []
    for ride, distance in nearby:
        data = ride.to_dict(include_codes=False)
        data["distance_to_pickup_km"] = round(distance, 2)
        data["estimated_time_to_pickup"] = calculate_eta(distance)
        rides.append(data)

    return {"success": True, "count": len(rides), "rides": rides}
