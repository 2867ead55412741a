"""
WebSocket connection manager for GoCab dispatch.

Provides:
- Per-connection write locks so concurrent publishes never interleave frames
- Channel subscriptions (rider-<id>, driver-<id>) for event fan-out
- Automatic stale connection cleanup
- Server-initiated keepalive pings
- Driver location throttling
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Set

from fastapi import WebSocket, status

from gocab.models.actor import DRIVER, RIDER, Actor
from gocab.models.events import driver_channel, rider_channel

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

HEARTBEAT_INTERVAL_SECONDS = 15
HEARTBEAT_TIMEOUT_SECONDS = 45
SEND_TIMEOUT_SECONDS = 5
CLEANUP_INTERVAL_SECONDS = 30
PING_INTERVAL_SECONDS = 10

LOCATION_THROTTLE_MS = 400  # Minimum 400ms between location broadcasts
LOCATION_MIN_DISTANCE_METERS = 1  # Minimum distance change to broadcast


def own_channel(actor: Actor) -> Optional[str]:
    """The channel a user is subscribed to on connect"""
    if actor.role == RIDER:
        return rider_channel(actor.user_id)
    if actor.role == DRIVER:
        return driver_channel(actor.user_id)
    return None


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class ClientConnection:
    """A single WebSocket client connection with metadata."""

    websocket: WebSocket
    user_id: str
    role: str
    last_heartbeat: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    is_alive: bool = True
    channels: Set[str] = field(default_factory=set)
    last_location_broadcast: float = 0.0
    last_location_coords: Optional[tuple] = None
    last_pong: float = 0.0

    def update_heartbeat(self) -> None:
        self.last_heartbeat = time.time()
        self.last_activity = time.time()

    def update_activity(self) -> None:
        self.last_activity = time.time()

    def is_stale(self, timeout: float = HEARTBEAT_TIMEOUT_SECONDS) -> bool:
        return (time.time() - self.last_heartbeat) > timeout

    def needs_ping(self, interval: float = PING_INTERVAL_SECONDS) -> bool:
        return (time.time() - self.last_activity) > interval

    def should_throttle_location(self, lat: float, lon: float) -> bool:
        """Check if a location update should be throttled based on time and distance."""
        now = time.time() * 1000
        if now - self.last_location_broadcast >= LOCATION_THROTTLE_MS:
            return False

        if self.last_location_coords:
            prev_lat, prev_lon = self.last_location_coords
            # 1 degree ≈ 111km at the equator
            dist_lat = abs(lat - prev_lat) * 111000
            dist_lon = abs(lon - prev_lon) * 111000 * 0.9
            if (dist_lat**2 + dist_lon**2) ** 0.5 >= LOCATION_MIN_DISTANCE_METERS:
                return False

        return True

    def update_location_state(self, lat: float, lon: float) -> None:
        self.last_location_broadcast = time.time() * 1000
        self.last_location_coords = (lat, lon)


@dataclass
class Channel:
    """A named fan-out channel and the users subscribed to it."""

    name: str
    subscribers: Set[str] = field(default_factory=set)

    def add_subscriber(self, user_id: str) -> bool:
        """Returns True if newly added, False if already present."""
        if user_id in self.subscribers:
            return False
        self.subscribers.add(user_id)
        return True

    def remove_subscriber(self, user_id: str) -> None:
        self.subscribers.discard(user_id)

    def is_empty(self) -> bool:
        return len(self.subscribers) == 0


# =============================================================================
# CONNECTION MANAGER
# =============================================================================


class ConnectionManager:
    """WebSocket connection manager; also the push sink for ride notifications."""

    def __init__(self):
        self._connections: Dict[str, ClientConnection] = {}
        self._channels: Dict[str, Channel] = {}
        self._connections_lock = asyncio.Lock()
        self._channels_lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._is_running = False

    async def start(self) -> None:
        if self._is_running:
            return
        self._is_running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        logger.info("ConnectionManager started with background cleanup and keepalive")

    async def stop(self) -> None:
        self._is_running = False
        for task in [self._cleanup_task, self._keepalive_task]:
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._cleanup_task = None
        self._keepalive_task = None
        logger.info("ConnectionManager stopped")

    async def _cleanup_loop(self) -> None:
        while self._is_running:
            try:
                await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
                await self._cleanup_stale_connections()
                await self._cleanup_empty_channels()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Cleanup loop error: {type(e).__name__}: {str(e)}")

    async def _keepalive_loop(self) -> None:
        while self._is_running:
            try:
                await asyncio.sleep(PING_INTERVAL_SECONDS)
                await self._send_keepalive_pings()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Keepalive loop error: {type(e).__name__}: {str(e)}")

    async def _send_keepalive_pings(self) -> None:
        async with self._connections_lock:
            connections_to_ping = [
                user_id
                for user_id, conn in self._connections.items()
                if conn.is_alive and conn.needs_ping()
            ]

        for user_id in connections_to_ping:
            await self.send_to_user(
                user_id, {"event_type": "ping", "timestamp": datetime.utcnow().isoformat()}
            )

    async def _cleanup_stale_connections(self) -> None:
        async with self._connections_lock:
            stale_users = [
                user_id
                for user_id, conn in self._connections.items()
                if conn.is_stale() or not conn.is_alive
            ]

        for user_id in stale_users:
            logger.warning(f"Removing stale connection: {user_id}")
            await self.disconnect(user_id, reason="Heartbeat timeout")

    async def _cleanup_empty_channels(self) -> None:
        async with self._channels_lock:
            empty = [name for name, channel in self._channels.items() if channel.is_empty()]
            for name in empty:
                del self._channels[name]
                logger.debug(f"Cleaned up empty channel: {name}")

    # -------------------------------------------------------------------------
    # Connection Management
    # -------------------------------------------------------------------------

    async def connect(self, websocket: WebSocket, actor: Actor) -> ClientConnection:
        """Accept a WebSocket, register it and subscribe it to the user's own channel."""
        if not self._is_running:
            await self.start()

        if actor.user_id in self._connections:
            logger.info(f"Closing existing connection for user {actor.user_id} (new connection)")
            await self.disconnect(actor.user_id, reason="New connection established")

        await websocket.accept()

        connection = ClientConnection(websocket=websocket, user_id=actor.user_id, role=actor.role)
        async with self._connections_lock:
            self._connections[actor.user_id] = connection

        channel = own_channel(actor)
        if channel:
            await self.subscribe(channel, actor.user_id)

        logger.info(f"WebSocket connected: user_id={actor.user_id}, role={actor.role}")
        return connection

    async def disconnect(self, user_id: str, reason: str = "Client disconnected") -> None:
        """Disconnect and clean up a WebSocket connection."""
        async with self._connections_lock:
            connection = self._connections.pop(user_id, None)

        if connection is None:
            return

        connection.is_alive = False
        for channel in list(connection.channels):
            await self.unsubscribe(channel, user_id, connection)

        try:
            await connection.websocket.close(code=status.WS_1000_NORMAL_CLOSURE, reason=reason)
        except Exception as e:
            # Already closed by the peer
            logger.debug(f"Close failed for {user_id}: {type(e).__name__}")

        logger.info(f"WebSocket disconnected: user_id={user_id}, reason={reason}")

    def get_connection(self, user_id: str) -> Optional[ClientConnection]:
        return self._connections.get(user_id)

    # -------------------------------------------------------------------------
    # Channel Management
    # -------------------------------------------------------------------------

    async def subscribe(self, channel: str, user_id: str) -> bool:
        """Subscribe a user to a channel. Returns False if already subscribed."""
        connection = self.get_connection(user_id)

        async with self._channels_lock:
            if channel not in self._channels:
                self._channels[channel] = Channel(name=channel)
            added = self._channels[channel].add_subscriber(user_id)

        if connection:
            connection.channels.add(channel)

        if added:
            logger.debug(f"User {user_id} subscribed to {channel}")
        return added

    async def unsubscribe(
        self, channel: str, user_id: str, connection: Optional[ClientConnection] = None
    ) -> bool:
        connection = connection or self.get_connection(user_id)

        async with self._channels_lock:
            if channel not in self._channels:
                return False
            self._channels[channel].remove_subscriber(user_id)
            if self._channels[channel].is_empty():
                del self._channels[channel]

        if connection:
            connection.channels.discard(channel)

        logger.debug(f"User {user_id} unsubscribed from {channel}")
        return True

    def get_subscribers(self, channel: str) -> Set[str]:
        ch = self._channels.get(channel)
        return ch.subscribers.copy() if ch else set()

    # -------------------------------------------------------------------------
    # Messaging
    # -------------------------------------------------------------------------

    async def send_to_user(
        self, user_id: str, message: dict, timeout: float = SEND_TIMEOUT_SECONDS
    ) -> bool:
        """Send a message to a specific user with timeout protection."""
        connection = self.get_connection(user_id)
        if not connection or not connection.is_alive:
            return False

        ws_state = getattr(connection.websocket, "client_state", None)
        if ws_state is not None and ws_state.name != "CONNECTED":
            logger.debug(f"WebSocket not in CONNECTED state for {user_id}: {ws_state.name}")
            connection.is_alive = False
            return False

        try:
            async with connection.write_lock:
                await asyncio.wait_for(connection.websocket.send_json(message), timeout=timeout)
            connection.update_activity()
            logger.debug(f"Message sent to {user_id}: {message.get('event_type', 'unknown')}")
            return True

        except asyncio.TimeoutError:
            logger.warning(f"Send timeout for user {user_id}, marking as stale")
            connection.is_alive = False
            return False

        except RuntimeError as e:
            if "not connected" in str(e).lower() or "accept" in str(e).lower():
                logger.debug(f"WebSocket not connected for {user_id}, marking as dead")
            else:
                logger.error(f"RuntimeError sending to {user_id}: {str(e)}")
            connection.is_alive = False
            return False

        except Exception as e:
            logger.error(f"Error sending to {user_id}: {type(e).__name__}: {str(e)}")
            connection.is_alive = False
            return False

    async def publish(self, channel: str, message: dict) -> int:
        """Fan a message out to every subscriber of a channel; returns deliveries."""
        subscribers = self.get_subscribers(channel)
        if not subscribers:
            logger.debug(f"No subscribers on {channel} for {message.get('event_type')}")
            return 0

        results = await asyncio.gather(
            *[self.send_to_user(user_id, message) for user_id in subscribers],
            return_exceptions=True,
        )
        delivered = sum(1 for r in results if r is True)

        logger.debug(
            f"Published to {channel}: {delivered}/{len(subscribers)} delivered, "
            f"event={message.get('event_type', 'unknown')}"
        )
        return delivered

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict:
        counts = {RIDER: 0, DRIVER: 0}
        for conn in self._connections.values():
            if conn.role in counts:
                counts[conn.role] += 1

        return {
            "active_connections": len(self._connections),
            "active_channels": len(self._channels),
            "channels": {name: len(ch.subscribers) for name, ch in self._channels.items()},
            "connections_by_role": counts,
        }


manager = ConnectionManager()
