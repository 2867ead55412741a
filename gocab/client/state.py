"""
Client-side ride view and the merge rule shared by push and poll.

Every update, whether it came from a push event or a poll response, is
normalised into a RideView and folded into the local view with merge().
merge() never moves status backward, never leaves a terminal status and
never replaces a driver position with an older or equally old one, so the
same update may safely arrive twice, from either channel, in any order.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from gocab.models.events import (
    LocationUpdateEvent,
    PushEventBase,
    RideNewEvent,
    RideStatusEvent,
)
from gocab.models.ride_model import (
    STATUS_TIMESTAMP_FIELDS,
    STATUSES,
    TERMINAL_STATUSES,
)

# Position along the lifecycle; both terminal statuses share the last rank
STATUS_RANK = {
    "requested": 0,
    "matched": 1,
    "driver_en_route": 2,
    "arrived": 3,
    "in_progress": 4,
    "completed": 5,
    "cancelled": 5,
}


def parse_datetime(value) -> Optional[datetime]:
    """ISO string or datetime -> naive UTC datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@dataclass(frozen=True)
class DriverPosition:
    latitude: float
    longitude: float
    last_updated: datetime
    heading: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["DriverPosition"]:
        """Accepts the ride projection shape ({"coordinates": {...}}) or flat lat/lng"""
        if not data:
            return None
        coords = data.get("coordinates") or data
        latitude = coords.get("latitude", coords.get("lat"))
        longitude = coords.get("longitude", coords.get("lng"))
        last_updated = parse_datetime(data.get("last_updated") or data.get("lastUpdated"))
        if latitude is None or longitude is None or last_updated is None:
            return None
        return cls(
            latitude=float(latitude),
            longitude=float(longitude),
            last_updated=last_updated,
            heading=data.get("heading"),
        )

    def _order_key(self):
        return (self.last_updated, self.latitude, self.longitude, self.heading or 0.0)


@dataclass(frozen=True)
class RideView:
    """What a dashboard knows about one ride. Updates use the same shape."""

    ride_id: str
    status: Optional[str] = None
    driver_id: Optional[str] = None
    driver_contact: Optional[Dict[str, Any]] = None
    driver_location: Optional[DriverPosition] = None
    otp: Optional[str] = None
    pickup_code: Optional[str] = None
    estimated_fare: Optional[float] = None
    estimated_arrival: Optional[int] = None  # minutes
    trip_summary: Optional[Dict[str, Any]] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    status_timestamps: Dict[str, datetime] = field(default_factory=dict)
    # Server time the update describes; orders the estimated arrival
    as_of: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_projection(cls, data: Dict[str, Any]) -> "RideView":
        """Ride projection returned by the REST API (poll fallback)"""
        timestamps = {}
        for status, field_name in STATUS_TIMESTAMP_FIELDS.items():
            value = parse_datetime(data.get(field_name))
            if value is not None:
                timestamps[status] = value

        pricing = data.get("pricing") or {}
        return cls(
            ride_id=data["ride_id"],
            status=data.get("status"),
            driver_id=data.get("driver_id"),
            driver_contact=data.get("driver_contact"),
            driver_location=DriverPosition.from_dict(data.get("driver_location")),
            otp=data.get("otp"),
            pickup_code=data.get("pickup_code"),
            estimated_fare=pricing.get("total_estimated"),
            estimated_arrival=data.get("estimated_arrival"),
            trip_summary=data.get("trip_summary"),
            cancellation_reason=data.get("cancellation_reason"),
            cancelled_by=data.get("cancelled_by"),
            status_timestamps=timestamps,
            as_of=parse_datetime(data.get("updated_at")),
        )

    @classmethod
    def from_event(cls, event: PushEventBase) -> Optional["RideView"]:
        """Push event -> update; None for events that carry no ride state"""
        if isinstance(event, RideStatusEvent):
            timestamps = {}
            for status, raw in event.status_timestamps.items():
                value = parse_datetime(raw)
                if value is not None:
                    timestamps[status] = value
            return cls(
                ride_id=event.ride_id,
                status=event.status,
                driver_id=event.driver_id,
                driver_contact=event.driver_contact,
                driver_location=DriverPosition.from_dict(event.driver_location),
                otp=event.otp,
                pickup_code=event.pickup_code,
                estimated_arrival=event.estimated_arrival,
                trip_summary=event.trip_summary,
                cancellation_reason=event.cancellation_reason,
                cancelled_by=event.cancelled_by,
                status_timestamps=timestamps,
                as_of=parse_datetime(event.timestamp),
            )

        if isinstance(event, LocationUpdateEvent):
            if not event.ride_id:
                return None
            return cls(
                ride_id=event.ride_id,
                driver_id=event.driver_id,
                driver_location=DriverPosition(
                    latitude=event.latitude,
                    longitude=event.longitude,
                    last_updated=parse_datetime(event.last_updated),
                    heading=event.heading,
                ),
            )

        if isinstance(event, RideNewEvent):
            return cls(
                ride_id=event.ride_id,
                status=event.status,
                estimated_fare=event.estimated_fare,
            )

        return None


def _status_key(status: Optional[str]):
    if status is None:
        return (-1, -1)
    return (STATUS_RANK.get(status, -1), STATUSES.index(status) if status in STATUSES else -1)


def _first(a, b):
    return a if a is not None else b


def merge(current: Optional[RideView], update: RideView) -> RideView:
    """
    Fold an update into the local view.

    Idempotent and order-insensitive for updates the server produces: the
    furthest status wins, the freshest driver position wins, and write-once
    fields keep whichever side already has them.
    """
    if current is None:
        return update
    if update.ride_id != current.ride_id:
        raise ValueError(f"Cannot merge ride {update.ride_id} into {current.ride_id}")

    status = max(current.status, update.status, key=_status_key)
    if current.is_terminal:
        status = current.status

    locations = [loc for loc in (current.driver_location, update.driver_location) if loc]
    driver_location = max(locations, key=DriverPosition._order_key) if locations else None

    # Arrival estimates are only as good as the moment they were computed
    estimates = [
        (view.as_of or datetime.min, view.estimated_arrival)
        for view in (current, update)
        if view.estimated_arrival is not None
    ]
    estimated_arrival = max(estimates)[1] if estimates else None

    timestamps = dict(update.status_timestamps)
    timestamps.update(current.status_timestamps)

    as_of_values = [v for v in (current.as_of, update.as_of) if v is not None]

    return replace(
        current,
        status=status,
        driver_id=_first(current.driver_id, update.driver_id),
        driver_contact=_first(current.driver_contact, update.driver_contact),
        driver_location=driver_location,
        otp=_first(current.otp, update.otp),
        pickup_code=_first(current.pickup_code, update.pickup_code),
        estimated_fare=_first(current.estimated_fare, update.estimated_fare),
        estimated_arrival=estimated_arrival,
        trip_summary=_first(current.trip_summary, update.trip_summary),
        cancellation_reason=_first(current.cancellation_reason, update.cancellation_reason),
        cancelled_by=_first(current.cancelled_by, update.cancelled_by),
        status_timestamps=timestamps,
        as_of=max(as_of_values) if as_of_values else None,
    )
