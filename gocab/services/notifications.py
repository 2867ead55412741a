"""
Notification Fan-out
Builds push events from ride records and hands them to a sink.
Delivery is best-effort: every failure is logged here and never reaches the
caller whose state change triggered the event.
"""

import logging
from datetime import datetime
from typing import List, Optional, Protocol

from gocab.models.events import (
    LocationUpdateEvent,
    NotificationSoundEvent,
    PushEventBase,
    RideNewEvent,
    RideStatusEvent,
    driver_channel,
    rider_channel,
)
from gocab.models.ride_model import (
    DRIVER_EN_ROUTE,
    MATCHED,
    STATUS_TIMESTAMP_FIELDS,
    Ride,
)
from gocab.utils.helpers import calculate_distance, calculate_eta

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Anything that can deliver a JSON message to every subscriber of a channel"""

    async def publish(self, channel: str, message: dict) -> int:
        ...


class NullSink:
    """Sink that drops everything; used when no push transport is wired"""

    async def publish(self, channel: str, message: dict) -> int:
        return 0


def _estimated_arrival(ride: Ride) -> Optional[int]:
    if ride.status not in (MATCHED, DRIVER_EN_ROUTE) or not ride.driver_location:
        return None
    distance = calculate_distance(
        ride.driver_location.latitude,
        ride.driver_location.longitude,
        ride.pickup.latitude,
        ride.pickup.longitude,
    )
    return calculate_eta(distance)


def build_status_event(ride: Ride) -> RideStatusEvent:
    """Rider-facing snapshot of a ride after a transition"""
    timestamps = {}
    for status, field_name in STATUS_TIMESTAMP_FIELDS.items():
        value = getattr(ride, field_name)
        timestamps[status] = value.isoformat() if value else None

    return RideStatusEvent(
        ride_id=ride.ride_id,
        status=ride.status,
        status_display=ride.status_display,
        driver_id=ride.driver_id,
        driver_contact=ride.driver_contact.to_dict() if ride.driver_contact else None,
        driver_location=ride.driver_location.to_dict() if ride.driver_location else None,
        otp=ride.otp,
        pickup_code=ride.pickup_code,
        estimated_arrival=_estimated_arrival(ride),
        trip_summary=ride.trip_summary.to_dict() if ride.trip_summary else None,
        cancellation_reason=ride.cancellation_reason,
        cancelled_by=ride.cancelled_by,
        status_timestamps=timestamps,
        timestamp=ride.updated_at or datetime.utcnow(),
    )


def build_offer_event(
    ride: Ride, distance_to_pickup_km: Optional[float] = None, assigned: bool = False
) -> RideNewEvent:
    """Driver-facing ride card"""
    return RideNewEvent(
        ride_id=ride.ride_id,
        status=ride.status,
        pickup=ride.pickup.to_dict(),
        destination=ride.destination.to_dict(),
        estimated_fare=ride.pricing.total_estimated,
        distance_to_pickup_km=(
            round(distance_to_pickup_km, 2) if distance_to_pickup_km is not None else None
        ),
        estimated_time_to_pickup=(
            calculate_eta(distance_to_pickup_km) if distance_to_pickup_km is not None else None
        ),
        assigned=assigned,
    )


class RideNotifier:
    """Publishes ride events to rider-<id> and driver-<id> channels"""

    def __init__(self, sink: Optional[NotificationSink] = None):
        self.sink = sink or NullSink()

    async def _publish(self, channel: str, event: PushEventBase) -> bool:
        try:
            await self.sink.publish(channel, event.model_dump(mode="json"))
            return True
        except Exception as e:
            logger.error(
                f"Failed to publish {event.event_type} to {channel}: "
                f"{type(e).__name__}: {str(e)}"
            )
            return False

    async def ride_status_changed(self, ride: Ride) -> bool:
        """ride:status_update to the rider; the assigned driver gets a copy"""
        event = build_status_event(ride)
        delivered = await self._publish(rider_channel(ride.rider_id), event)
        if ride.driver_id:
            await self._publish(driver_channel(ride.driver_id), event)
        return delivered

    async def ride_offered(
        self,
        ride: Ride,
        driver_id: str,
        distance_to_pickup_km: Optional[float] = None,
        assigned: bool = False,
    ) -> bool:
        """ride:new followed by the sound cue to one driver"""
        channel = driver_channel(driver_id)
        delivered = await self._publish(
            channel, build_offer_event(ride, distance_to_pickup_km, assigned)
        )
        await self._publish(channel, NotificationSoundEvent())
        return delivered

    async def driver_location_changed(
        self,
        driver_id: str,
        latitude: float,
        longitude: float,
        last_updated: datetime,
        heading: Optional[float] = None,
        ride: Optional[Ride] = None,
    ) -> List[str]:
        """location:update to the driver's own channel and the rider of their ride"""
        event = LocationUpdateEvent(
            driver_id=driver_id,
            ride_id=ride.ride_id if ride else None,
            latitude=latitude,
            longitude=longitude,
            heading=heading,
            last_updated=last_updated,
            timestamp=last_updated,
        )

        channels = [driver_channel(driver_id)]
        if ride is not None:
            channels.append(rider_channel(ride.rider_id))

        return [channel for channel in channels if await self._publish(channel, event)]
