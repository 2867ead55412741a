"""
Push Event Models
Tagged union of the events fanned out on rider-<id> and driver-<id> channels.
Incoming payloads are validated here before they touch client state.
"""

import logging
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

RIDE_NEW = "ride:new"
RIDE_STATUS_UPDATE = "ride:status_update"
NOTIFICATION_SOUND = "notification:sound"
LOCATION_UPDATE = "location:update"


def rider_channel(rider_id: str) -> str:
    return f"rider-{rider_id}"


def driver_channel(driver_id: str) -> str:
    return f"driver-{driver_id}"


class PushEventBase(BaseModel):
    # Newer servers may add fields; older clients must keep working
    model_config = ConfigDict(extra="ignore")

    timestamp: datetime = Field(default_factory=datetime.utcnow)


class RideNewEvent(PushEventBase):
    """Sent to a driver when a ride is offered or assigned to them"""

    event_type: Literal["ride:new"] = RIDE_NEW
    ride_id: str
    status: str
    pickup: Dict[str, Any]
    destination: Dict[str, Any]
    estimated_fare: float
    distance_to_pickup_km: Optional[float] = None
    estimated_time_to_pickup: Optional[int] = None  # minutes
    assigned: bool = False


class RideStatusEvent(PushEventBase):
    """Sent to a rider on every lifecycle transition"""

    event_type: Literal["ride:status_update"] = RIDE_STATUS_UPDATE
    ride_id: str
    status: str
    status_display: Optional[str] = None
    driver_id: Optional[str] = None
    driver_contact: Optional[Dict[str, Any]] = None
    driver_location: Optional[Dict[str, Any]] = None
    otp: Optional[str] = None
    pickup_code: Optional[str] = None
    estimated_arrival: Optional[int] = None  # minutes
    trip_summary: Optional[Dict[str, Any]] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    status_timestamps: Dict[str, Optional[str]] = Field(default_factory=dict)


class NotificationSoundEvent(PushEventBase):
    """UI cue accompanying ride offers"""

    event_type: Literal["notification:sound"] = NOTIFICATION_SOUND


class LocationUpdateEvent(PushEventBase):
    """Driver coordinate tick"""

    event_type: Literal["location:update"] = LOCATION_UPDATE
    driver_id: str
    ride_id: Optional[str] = None
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    heading: Optional[float] = None
    last_updated: datetime


PushEvent = Annotated[
    Union[RideNewEvent, RideStatusEvent, NotificationSoundEvent, LocationUpdateEvent],
    Field(discriminator="event_type"),
]

_push_event_adapter = TypeAdapter(PushEvent)

PUSH_EVENT_TYPES = (RIDE_NEW, RIDE_STATUS_UPDATE, NOTIFICATION_SOUND, LOCATION_UPDATE)


def parse_push_event(payload: Dict[str, Any]) -> Optional[PushEventBase]:
    """
    Validate a raw push payload

    Returns:
        The typed event, or None for unknown or malformed payloads
    """
    if not isinstance(payload, dict) or payload.get("event_type") not in PUSH_EVENT_TYPES:
        logger.debug(f"Ignoring non-push message: {payload!r:.200}")
        return None

    try:
        return _push_event_adapter.validate_python(payload)
    except ValidationError as e:
        logger.warning(f"Dropping malformed {payload.get('event_type')} event: {e}")
        return None
