"""
Ride Routes
Ride requests, the active-rides poll, status transitions, cancellation,
driver acceptance and rematching
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from gocab.dependencies import Services, get_services
from gocab.errors import DispatchError, InvalidRequest, Unauthorized
from gocab.models.actor import DRIVER, Actor
from gocab.models.ride_model import CANCELLED, REQUESTED, Ride
from gocab.models.schemas import (
    AcceptRideRequest,
    CancelRideRequest,
    CreateRideRequest,
    StatusTransitionRequest,
    parse_status_filter,
)
from gocab.services import ride_store
from gocab.utils.jwt_utils import get_current_actor, require_driver, require_rider

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_ACTIVE_RIDES = 50


def _ensure_can_view(ride: Ride, actor: Actor) -> None:
    is_rider = ride.rider_id == actor.user_id
    is_driver = ride.driver_id is not None and ride.driver_id == actor.user_id
    # Drivers may look at open requests before accepting them
    is_open_for_driver = actor.role == DRIVER and ride.status == REQUESTED

    if not (is_rider or is_driver or is_open_for_driver):
        raise Unauthorized("You are not authorized to view this ride")


def _server_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"{action} error: {type(e).__name__}: {str(e)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action.lower()}",
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_ride_request(
    data: CreateRideRequest,
    actor: Actor = Depends(require_rider),
    services: Services = Depends(get_services),
):
    """
    Create a new ride request and try to match it
    match_status is MATCHED, NO_DRIVERS_AVAILABLE or PENDING (offered to nearby drivers)
    """
    try:
        result = await services.matching.request_ride(
            actor.user_id,
            data.pickup,
            data.destination,
            rider_notes=data.rider_notes,
            auto_assign=data.auto_assign,
            radius_km=data.search_radius_km,
        )

        return {
            "success": True,
            "message": "Ride request created successfully",
            "ride": result.ride.to_dict(),
            **result.to_dict(),
        }

    except (DispatchError, HTTPException):
        raise
    except Exception as e:
        raise _server_error("Create ride request", e)


@router.get("/active")
async def get_active_rides(
    user_id: Optional[str] = Query(default=None),
    status_filter: Optional[List[str]] = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=MAX_ACTIVE_RIDES),
    actor: Actor = Depends(get_current_actor),
):
    """
    Rides of the caller filtered by status (default: every non-terminal status)
    Used for the initial load and by the poll fallback
    """
    if user_id is not None and user_id != actor.user_id:
        raise Unauthorized("You can only list your own rides")

    try:
        statuses = parse_status_filter(status_filter)
    except ValueError as e:
        raise InvalidRequest(str(e), code="INVALID_STATUS_FILTER")

    rides = ride_store.find_rides_for_user(actor.user_id, actor.role, statuses, limit)

    return {
        "success": True,
        "count": len(rides),
        "rides": [ride.to_dict() for ride in rides],
    }


@router.get("/{ride_id}")
async def get_ride_details(ride_id: str, actor: Actor = Depends(get_current_actor)):
    """Get details of a specific ride; only its rider or driver may read it"""
    ride = ride_store.get_ride(ride_id)
    _ensure_can_view(ride, actor)

    include_codes = ride.rider_id == actor.user_id or ride.driver_id == actor.user_id
    return {"success": True, "ride": ride.to_dict(include_codes=include_codes)}


@router.post("/{ride_id}/status")
async def update_ride_status(
    ride_id: str,
    data: StatusTransitionRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    """
    Move a ride along its lifecycle
    Starting the trip requires the OTP the rider reads out to the driver
    """
    try:
        ride = ride_store.get_ride(ride_id)
        pickup_verified = data.otp is not None and data.otp == ride.otp

        updated = await services.lifecycle.transition(
            ride.ride_id,
            data.status,
            actor,
            reason=data.reason,
            pickup_verified=pickup_verified,
            actual_distance_miles=data.actual_distance_miles,
        )

        return {
            "success": True,
            "message": f"Ride status updated to {updated.status}",
            "ride": updated.to_dict(),
        }

    except (DispatchError, HTTPException):
        raise
    except Exception as e:
        raise _server_error("Update ride status", e)


@router.post("/{ride_id}/cancel")
async def cancel_ride(
    ride_id: str,
    data: Optional[CancelRideRequest] = None,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    """Cancel a ride; any claimed driver is released in the same operation"""
    try:
        updated = await services.lifecycle.transition(
            ride_id, CANCELLED, actor, reason=data.reason if data else None
        )

        return {
            "success": True,
            "message": "Ride cancelled successfully",
            "ride": updated.to_dict(),
        }

    except (DispatchError, HTTPException):
        raise
    except Exception as e:
        raise _server_error("Cancel ride", e)


@router.post("/{ride_id}/accept")
async def accept_ride(
    ride_id: str,
    data: Optional[AcceptRideRequest] = None,
    actor: Actor = Depends(require_driver),
    services: Services = Depends(get_services),
):
    """
    Driver accepts an open ride request
    Conflicts (already taken, driver busy) are 409, never 404
    """
    try:
        location = data.driver_location.as_tuple() if data and data.driver_location else None
        ride = await services.matching.accept_ride(ride_id, actor.user_id, location)

        return {
            "success": True,
            "message": "Ride accepted successfully",
            "ride": ride.to_dict(),
            "driver_contact": ride.driver_contact.to_dict() if ride.driver_contact else None,
            "otp": ride.otp,
        }

    except (DispatchError, HTTPException):
        raise
    except Exception as e:
        raise _server_error("Accept ride", e)


@router.post("/{ride_id}/retry-match")
async def retry_match(
    ride_id: str,
    radius_km: Optional[float] = Query(default=None, gt=0),
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    """
    Run matching again for a ride still waiting on a driver
    Only the rider can trigger this; expired requests are cancelled instead
    """
    try:
        result = await services.matching.retry_match(ride_id, actor, radius_km)

        return {
            "success": True,
            "ride": result.ride.to_dict(),
            **result.to_dict(),
        }

    except (DispatchError, HTTPException):
        raise
    except Exception as e:
        raise _server_error("Retry match", e)
