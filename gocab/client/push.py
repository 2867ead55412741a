"""
Push connection
Client side of /ws/ride. Keeps a WebSocket open, reconnecting with backoff,
answers keepalive pings and hands validated push events to listeners.
Listeners are also told about every connection state change so the sync
layer can switch its poll fallback on and off.
"""

import asyncio
import json
import logging
from typing import Callable, List, Optional

import websockets
from websockets.exceptions import WebSocketException

from gocab.models.events import PushEventBase, parse_push_event

logger = logging.getLogger(__name__)

CONNECTING = "connecting"
CONNECTED = "connected"
DISCONNECTED = "disconnected"

INITIAL_RECONNECT_DELAY_SECONDS = 1.0
MAX_RECONNECT_DELAY_SECONDS = 30.0

# Server control messages that are not push events
CONTROL_MESSAGES = ("connected", "pong", "error")

StateListener = Callable[[str], None]
EventListener = Callable[[PushEventBase], None]


class PushConnection:
    def __init__(
        self,
        url: str,
        token: str,
        connect=websockets.connect,
        initial_delay: float = INITIAL_RECONNECT_DELAY_SECONDS,
        max_delay: float = MAX_RECONNECT_DELAY_SECONDS,
    ):
        self.url = url
        self.token = token
        self._connect = connect
        self.initial_delay = initial_delay
        self.max_delay = max_delay

        self.state = DISCONNECTED
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._state_listeners: List[StateListener] = []
        self._event_listeners: List[EventListener] = []

    @property
    def is_connected(self) -> bool:
        return self.state == CONNECTED

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_event_listener(self, listener: EventListener) -> None:
        self._event_listeners.append(listener)

    def _set_state(self, state: str) -> None:
        if state == self.state:
            return
        logger.info(f"Push connection {self.state} -> {state}")
        self.state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Push state listener failed: {type(e).__name__}: {str(e)}")

    def _dispatch(self, event: PushEventBase) -> None:
        for listener in list(self._event_listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Push event listener failed: {type(e).__name__}: {str(e)}")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._closed = False
            self._task = asyncio.create_task(self.run())
        return self._task

    async def close(self) -> None:
        self._closed = True
        if self._ws is not None:
            try:
                await self._ws.close()
            except WebSocketException as e:
                logger.debug(f"Close failed: {e}")
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_state(DISCONNECTED)

    async def send(self, message: dict) -> bool:
        """Send a message (e.g. a driver's location_update); False while disconnected"""
        if self._ws is None or not self.is_connected:
            return False
        try:
            await self._ws.send(json.dumps(message))
            return True
        except (WebSocketException, OSError) as e:
            logger.warning(f"Push send failed: {type(e).__name__}: {str(e)}")
            return False

    async def run(self) -> None:
        """Connect, read until the socket drops, back off, repeat until closed"""
        delay = self.initial_delay
        uri = f"{self.url}?token={self.token}"

        while not self._closed:
            self._set_state(CONNECTING)
            try:
                async with self._connect(uri) as ws:
                    self._ws = ws
                    self._set_state(CONNECTED)
                    delay = self.initial_delay
                    async for raw in ws:
                        await self._handle_message(ws, raw)
            except asyncio.CancelledError:
                raise
            except (WebSocketException, OSError, asyncio.TimeoutError) as e:
                logger.warning(f"Push connection lost: {type(e).__name__}: {str(e)}")
            finally:
                self._ws = None
                self._set_state(DISCONNECTED)

            if self._closed:
                break
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_delay)

    async def _handle_message(self, ws, raw) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-JSON push message: {raw!r:.200}")
            return

        event_type = data.get("event_type") if isinstance(data, dict) else None
        if event_type == "ping":
            await ws.send(json.dumps({"event_type": "pong"}))
            return
        if event_type in CONTROL_MESSAGES:
            logger.debug(f"Push control message: {event_type}")
            return

        event = parse_push_event(data)
        if event is not None:
            self._dispatch(event)
