"""
Ride synchronisation for the dashboards.

Push is the primary channel. Whenever the push connection is not connected
the poll loop re-reads the rides from the API every POLL_INTERVAL_SECONDS;
as soon as push reconnects polling stops. Both channels feed the same
merge(), so an update seen on both is applied once in effect.
"""

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional

from gocab.client.api import ApiError
from gocab.client.push import CONNECTED, PushConnection
from gocab.client.state import RideView, merge
from gocab.config import POLL_INTERVAL_SECONDS
from gocab.models.events import PushEventBase

logger = logging.getLogger(__name__)

ViewListener = Callable[[RideView], None]


class RideSync:
    def __init__(
        self,
        api,
        push: Optional[PushConnection] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ):
        self.api = api
        self.push = push
        self.poll_interval = poll_interval

        self.views: Dict[str, RideView] = {}
        self._listeners: List[ViewListener] = []
        self._changed = asyncio.Event()
        self._push_up = asyncio.Event()
        self._push_down = asyncio.Event()
        self._push_down.set()
        self._poll_task: Optional[asyncio.Task] = None
        self.polls = 0

        if push is not None:
            push.add_state_listener(self.on_push_state)
            push.add_event_listener(self.on_push_event)
            self.on_push_state(push.state)

    @property
    def polling(self) -> bool:
        return self._push_down.is_set()

    def add_listener(self, listener: ViewListener) -> None:
        self._listeners.append(listener)

    def get(self, ride_id: str) -> Optional[RideView]:
        return self.views.get(ride_id)

    def track(self, ride_id: str) -> None:
        """Watch a ride even before any update for it has arrived"""
        if ride_id not in self.views:
            self.views[ride_id] = RideView(ride_id=ride_id)

    def apply(self, update: RideView) -> RideView:
        """Merge an update into the local view and wake anyone waiting"""
        current = self.views.get(update.ride_id)
        merged = merge(current, update)
        if merged == current:
            return merged

        self.views[update.ride_id] = merged
        if current is None or current.status != merged.status:
            logger.info(f"Ride {merged.ride_id} is now {merged.status}")

        for listener in list(self._listeners):
            try:
                listener(merged)
            except Exception as e:
                logger.error(f"Ride view listener failed: {type(e).__name__}: {str(e)}")

        self._changed.set()
        self._changed = asyncio.Event()
        return merged

    # Push side

    def on_push_event(self, event: PushEventBase) -> None:
        update = RideView.from_event(event)
        if update is not None:
            self.apply(update)

    def on_push_state(self, state: str) -> None:
        if state == CONNECTED:
            if self._push_down.is_set():
                logger.info("Push connected, suspending poll fallback")
            self._push_down.clear()
            self._push_up.set()
        else:
            if not self._push_down.is_set():
                logger.info(f"Push {state}, resuming poll fallback")
            self._push_up.clear()
            self._push_down.set()

    # Poll side

    async def poll_once(self) -> None:
        """Re-read active rides, plus any tracked ride that has left the active list"""
        self.polls += 1
        rows = await self.api.get_active_rides()
        seen = set()
        for row in rows:
            self.apply(RideView.from_projection(row))
            seen.add(row["ride_id"])

        # Rides that just finished drop out of the active list
        for ride_id, view in list(self.views.items()):
            if ride_id in seen or view.is_terminal:
                continue
            try:
                row = await self.api.get_ride(ride_id)
            except ApiError as e:
                if e.status_code in (403, 404):
                    # Taken by another driver or gone; nothing left to follow
                    logger.info(f"Stopped tracking ride {ride_id}: {e.status_code} {e.code}")
                    self.views.pop(ride_id, None)
                else:
                    logger.warning(f"Re-reading ride {ride_id} failed: {str(e)}")
                continue
            except Exception as e:
                logger.warning(f"Re-reading ride {ride_id} failed: {type(e).__name__}: {str(e)}")
                continue
            self.apply(RideView.from_projection(row))

    async def _poll_loop(self) -> None:
        while True:
            await self._push_down.wait()
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Poll failed: {type(e).__name__}: {str(e)}")

            try:
                await asyncio.wait_for(self._push_up.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())
        if self.push is not None:
            self.push.start()

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self.push is not None:
            await self.push.close()

    async def wait_for_status(
        self, ride_id: str, statuses: Iterable[str], timeout: Optional[float] = None
    ) -> RideView:
        """
        Wait until the local view of ride_id reaches one of statuses

        Raises:
            asyncio.TimeoutError if it does not happen within timeout
        """
        wanted = set(statuses)

        async def _wait():
            while True:
                view = self.views.get(ride_id)
                if view is not None and view.status in wanted:
                    return view
                await self._changed.wait()

        return await asyncio.wait_for(_wait(), timeout=timeout)
