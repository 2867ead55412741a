"""
Real-time push endpoint for GoCab.

Clients connect to /ws/ride?token=..., are subscribed to their own
rider-<id> or driver-<id> channel, and receive ride events published by the
notification fan-out. Drivers may stream location_update messages over the
same socket.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from gocab.dependencies import Services, get_services
from gocab.errors import DispatchError
from gocab.models.actor import DRIVER
from gocab.services import ride_store
from gocab.sockets.manager import (
    HEARTBEAT_INTERVAL_SECONDS,
    ClientConnection,
    manager,
)
from gocab.sockets.ws_auth import authenticate_websocket

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# EVENT HANDLERS
# =============================================================================


def _parse_timestamp(raw) -> Optional[datetime]:
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


async def handle_location_update(
    connection: ClientConnection, data: dict, services: Services
) -> Optional[dict]:
    """location_update from a driver: persist, mirror onto the ride and fan out."""
    if connection.role != DRIVER:
        logger.warning(f"Non-driver {connection.user_id} attempted location update")
        return {"event_type": "error", "message": "Only drivers can send location updates"}

    latitude = data.get("latitude")
    longitude = data.get("longitude")
    if latitude is None or longitude is None:
        return {"event_type": "error", "message": "Missing latitude or longitude"}

    try:
        latitude = float(latitude)
        longitude = float(longitude)
        heading = float(data["heading"]) if data.get("heading") is not None else None
    except (TypeError, ValueError):
        return {"event_type": "error", "message": "Invalid coordinate format"}

    if connection.should_throttle_location(latitude, longitude):
        logger.debug(f"Throttled location update from {connection.user_id}")
        return None

    try:
        await services.lifecycle.update_driver_location(
            connection.user_id,
            latitude,
            longitude,
            heading=heading,
            at=_parse_timestamp(data.get("timestamp")),
        )
    except DispatchError as e:
        return {"event_type": "error", "code": e.code, "message": e.message}

    connection.update_heartbeat()
    connection.update_location_state(latitude, longitude)
    return None


async def handle_ping(connection: ClientConnection, data: dict, services: Services) -> dict:
    """Respond with pong for heartbeat."""
    connection.update_heartbeat()
    return {"event_type": "pong", "timestamp": datetime.utcnow().isoformat()}


async def handle_pong(
    connection: ClientConnection, data: dict, services: Services
) -> Optional[dict]:
    """Client answered a keepalive ping."""
    connection.update_heartbeat()
    connection.last_pong = connection.last_heartbeat
    return None


EVENT_HANDLERS = {
    "location_update": handle_location_update,
    "ping": handle_ping,
    "pong": handle_pong,
}


# =============================================================================
# WEBSOCKET ENDPOINT
# =============================================================================


@router.websocket("/ride")
async def websocket_endpoint(websocket: WebSocket, services: Services = Depends(get_services)):
    """Main WebSocket endpoint for real-time communication."""
    actor = await authenticate_websocket(websocket)
    if actor is None:
        return

    user_id = actor.user_id
    connection = await manager.connect(websocket, actor)

    try:
        active_rides = ride_store.find_rides_for_user(user_id, actor.role, limit=5)
        await manager.send_to_user(
            user_id,
            {
                "event_type": "connected",
                "message": "Connected to GoCab real-time service",
                "user_id": user_id,
                "role": actor.role,
                "channels": sorted(connection.channels),
                "active_rides": [
                    {"ride_id": ride.ride_id, "status": ride.status} for ride in active_rides
                ],
                "timestamp": datetime.utcnow().isoformat(),
            },
        )

        while True:
            try:
                raw_message = await asyncio.wait_for(
                    websocket.receive_text(), timeout=HEARTBEAT_INTERVAL_SECONDS
                )
            except asyncio.TimeoutError:
                if not connection.is_alive:
                    logger.info(f"Connection marked dead for {user_id}")
                    break
                continue

            connection.update_activity()

            try:
                data = json.loads(raw_message)
            except json.JSONDecodeError:
                await manager.send_to_user(
                    user_id, {"event_type": "error", "message": "Invalid JSON format"}
                )
                continue

            if not isinstance(data, dict):
                await manager.send_to_user(
                    user_id, {"event_type": "error", "message": "Expected a JSON object"}
                )
                continue

            event_type = data.get("event_type") or data.get("type")
            handler = EVENT_HANDLERS.get(event_type)
            if handler is None:
                await manager.send_to_user(
                    user_id,
                    {"event_type": "error", "message": f"Unknown event type: {event_type}"},
                )
                continue

            try:
                response = await handler(connection, data, services)
            except Exception as e:
                logger.error(
                    f"Message processing error for {user_id}: {type(e).__name__}: {str(e)}"
                )
                response = {"event_type": "error", "message": "Could not process message"}

            if response:
                await manager.send_to_user(user_id, response)

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally: {user_id}")
    except Exception as e:
        logger.error(f"WebSocket connection error for {user_id}: {type(e).__name__}: {str(e)}")
    finally:
        # A newer connection for the same user may already have replaced this one
        if manager.get_connection(user_id) is connection:
            await manager.disconnect(user_id, reason="Connection ended")


# =============================================================================
# ADMIN ENDPOINT
# =============================================================================


@router.get("/stats")
async def get_websocket_stats():
    """Get WebSocket statistics for monitoring."""
    stats = manager.get_stats()
    return {"success": True, "data": stats}
