"""
Rider search loop

After a ride is requested the rider waits up to SEARCH_TIMEOUT_SECONDS for a
match. On expiry the search is resubmitted through retry-match, up to
MAX_SEARCH_ATTEMPTS rounds in total (the initial request is round one).
After the last round the search ends in NO_DRIVERS and the ride stays
requested until the rider cancels it. Cancelling at any point cancels the
ride on the server, not just the local search.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from gocab.client.api import ApiError
from gocab.client.state import RideView
from gocab.client.sync import RideSync
from gocab.config import MAX_SEARCH_ATTEMPTS, SEARCH_TIMEOUT_SECONDS
from gocab.models.ride_model import (
    ARRIVED,
    CANCELLED,
    COMPLETED,
    DRIVER_EN_ROUTE,
    IN_PROGRESS,
    MATCHED,
    REQUESTED,
)

logger = logging.getLogger(__name__)

FOUND = "MATCHED"
NO_DRIVERS = "NO_DRIVERS"
CANCELLED_BY_USER = "CANCELLED"
EXPIRED = "EXPIRED"

# Cancel requests sent before giving up on a ride that keeps changing under us
CANCEL_ATTEMPTS = 3

STOP_STATUSES = (MATCHED, DRIVER_EN_ROUTE, ARRIVED, IN_PROGRESS, COMPLETED, CANCELLED)


@dataclass
class SearchResult:
    outcome: str
    ride_id: Optional[str]
    attempts: int
    view: Optional[RideView] = None


class RideSearch:
    def __init__(
        self,
        api,
        sync: RideSync,
        timeout: float = SEARCH_TIMEOUT_SECONDS,
        max_attempts: int = MAX_SEARCH_ATTEMPTS,
    ):
        self.api = api
        self.sync = sync
        self.timeout = timeout
        self.max_attempts = max_attempts

        self.ride_id: Optional[str] = None
        self.attempts = 0
        self.outcome: Optional[str] = None
        self.deadline: Optional[float] = None
        self._cancel_requested = asyncio.Event()
        self._finished = asyncio.Event()
        self._cancel_reason = "Cancelled by rider"
        self._running = False
        self._result: Optional[SearchResult] = None
        self._error: Optional[Exception] = None

    @property
    def seconds_remaining(self) -> Optional[float]:
        """Countdown shown to the rider; None when not searching"""
        if self.outcome is not None or self.deadline is None:
            return None
        return max(0.0, self.deadline - asyncio.get_running_loop().time())

    async def run(
        self,
        pickup_address: str,
        pickup: Tuple[float, float],
        destination_address: str,
        destination: Tuple[float, float],
        rider_notes: Optional[str] = None,
    ) -> SearchResult:
        """Request a ride and wait for a driver; see the module docstring"""
        self.outcome = None
        self._result = None
        self._error = None
        self._running = True
        self._finished.clear()
        try:
            response = await self.api.create_ride(
                pickup_address, pickup, destination_address, destination, rider_notes=rider_notes
            )
            self.ride_id = response["ride"]["ride_id"]
            self.attempts = 1
            self.sync.track(self.ride_id)
            self.sync.apply(RideView.from_projection(response["ride"]))
            logger.info(f"Searching for a driver for ride {self.ride_id}")

            return await self._search(response.get("match_status"))
        except Exception as e:
            self._error = e
            raise
        finally:
            self._running = False
            self._finished.set()

    async def _search(self, match_status: Optional[str]) -> SearchResult:
        loop = asyncio.get_running_loop()

        while True:
            if self._cancel_requested.is_set():
                return await self._cancel_server_side()
            if match_status == EXPIRED:
                return self._finish(EXPIRED)

            self.deadline = loop.time() + self.timeout
            waiter = asyncio.ensure_future(
                self.sync.wait_for_status(self.ride_id, STOP_STATUSES)
            )
            canceller = asyncio.ensure_future(self._cancel_requested.wait())
            done, pending = await asyncio.wait(
                {waiter, canceller},
                timeout=self.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()

            if canceller in done:
                return await self._cancel_server_side()

            if waiter in done:
                view = waiter.result()
                if view.status == CANCELLED:
                    outcome = EXPIRED if view.cancelled_by == "system" else CANCELLED_BY_USER
                    return self._finish(outcome)
                return self._finish(FOUND)

            if self.attempts >= self.max_attempts:
                logger.info(
                    f"No driver for ride {self.ride_id} after {self.attempts} attempts"
                )
                return self._finish(NO_DRIVERS)

            self.attempts += 1
            logger.info(f"Search round {self.attempts} for ride {self.ride_id}")
            try:
                response = await self.api.retry_match(self.ride_id)
            except ApiError as e:
                # The poll/push view decides what happened to the ride
                logger.warning(f"Retry match for ride {self.ride_id} failed: {e}")
                match_status = None
                continue

            self.sync.apply(RideView.from_projection(response["ride"]))
            match_status = response.get("match_status")

    def _finish(self, outcome: str) -> SearchResult:
        self.outcome = outcome
        self.deadline = None
        self._result = SearchResult(
            outcome=outcome,
            ride_id=self.ride_id,
            attempts=self.attempts,
            view=self.sync.get(self.ride_id) if self.ride_id else None,
        )
        return self._result

    async def cancel(self, reason: str = "Cancelled by rider") -> SearchResult:
        """
        Stop searching and cancel the ride on the server.
        Works during the search and after it ended in NO_DRIVERS. The result
        reports what the server row ended up as, which is a match when the
        ride completed or kept its driver despite the cancel.
        """
        self._cancel_reason = reason
        if self._running:
            # run() notices the request, cancels server-side and returns
            self._cancel_requested.set()
            await self._finished.wait()
            if self._error is not None:
                raise self._error
            return self._result or SearchResult(CANCELLED_BY_USER, self.ride_id, self.attempts)

        if self.outcome in (None, NO_DRIVERS):
            return await self._cancel_server_side()

        return self._result

    async def _cancel_server_side(self) -> SearchResult:
        if self.ride_id is None:
            return self._finish(CANCELLED_BY_USER)

        view = self.sync.get(self.ride_id)
        for _ in range(CANCEL_ATTEMPTS):
            try:
                row = await self.api.cancel_ride(self.ride_id, reason=self._cancel_reason)
            except ApiError as e:
                if not e.is_conflict:
                    raise
                # The ride moved on the server (usually a match landing); re-read it
                logger.info(f"Cancel of ride {self.ride_id} conflicted: {e.message}")
                row = await self.api.get_ride(self.ride_id)

            view = self.sync.apply(RideView.from_projection(row))
            if view.is_terminal:
                break
        else:
            logger.warning(
                f"Ride {self.ride_id} still {view.status} after {CANCEL_ATTEMPTS} cancel attempts"
            )

        outcome = self._outcome_for(view)
        logger.info(f"Search for ride {self.ride_id} stopped: {outcome}")
        return self._finish(outcome)

    @staticmethod
    def _outcome_for(view: Optional[RideView]) -> str:
        if view is None or view.status == REQUESTED:
            return NO_DRIVERS
        if view.status == CANCELLED:
            return EXPIRED if view.cancelled_by == "system" else CANCELLED_BY_USER
        return FOUND
