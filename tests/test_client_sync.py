"""
Tests for push/poll reconciliation in RideSync.
"""

import asyncio

import pytest

from gocab.client.api import ApiError
from gocab.client.push import CONNECTED, DISCONNECTED
from gocab.client.state import RideView
from gocab.client.sync import RideSync
from gocab.models.events import parse_push_event

RIDE_ID = "RIDE_1_ABCDEF"
POLL_INTERVAL = 0.01


def row(status, **fields):
    data = {
        "ride_id": RIDE_ID,
        "status": status,
        "requested_at": "2024-05-01T12:00:00",
        "updated_at": "2024-05-01T12:00:00",
    }
    data.update(fields)
    return data


class FakeApi:
    def __init__(self, active=None, rides=None):
        self.active = active or []
        self.rides = rides or {}
        self.get_ride_calls = []

    async def get_active_rides(self, statuses=None):
        return list(self.active)

    async def get_ride(self, ride_id):
        self.get_ride_calls.append(ride_id)
        result = self.rides[ride_id]
        if isinstance(result, Exception):
            raise result
        return result


class FakePush:
    def __init__(self, state=DISCONNECTED):
        self.state = state
        self.started = False
        self._state_listeners = []
        self._event_listeners = []

    def add_state_listener(self, listener):
        self._state_listeners.append(listener)

    def add_event_listener(self, listener):
        self._event_listeners.append(listener)

    def start(self):
        self.started = True

    async def close(self):
        self.set_state(DISCONNECTED)

    def set_state(self, state):
        self.state = state
        for listener in self._state_listeners:
            listener(state)

    def emit(self, payload):
        event = parse_push_event(payload)
        for listener in self._event_listeners:
            listener(event)


@pytest.fixture
async def stop_later():
    started = []
    yield started.append
    for sync in started:
        await sync.stop()


class TestPollFallback:
    async def test_polls_while_push_is_down(self, stop_later):
        api = FakeApi(active=[row("requested")])
        sync = RideSync(api, poll_interval=POLL_INTERVAL)
        stop_later(sync)

        sync.start()
        await asyncio.sleep(POLL_INTERVAL * 6)

        assert sync.polling
        assert sync.polls >= 2
        assert sync.get(RIDE_ID).status == "requested"

    async def test_connected_push_suspends_polling(self, stop_later):
        push = FakePush(state=CONNECTED)
        sync = RideSync(FakeApi(), push=push, poll_interval=POLL_INTERVAL)
        stop_later(sync)

        sync.start()
        await asyncio.sleep(POLL_INTERVAL * 5)

        assert push.started
        assert not sync.polling
        assert sync.polls == 0

    async def test_polling_follows_push_state(self, stop_later):
        push = FakePush(state=CONNECTED)
        sync = RideSync(FakeApi(active=[row("matched")]), push=push, poll_interval=POLL_INTERVAL)
        stop_later(sync)
        sync.start()

        push.set_state(DISCONNECTED)
        await asyncio.sleep(POLL_INTERVAL * 5)

        assert sync.polls >= 1
        assert sync.get(RIDE_ID).status == "matched"

        push.set_state(CONNECTED)
        await asyncio.sleep(POLL_INTERVAL)
        polls = sync.polls
        await asyncio.sleep(POLL_INTERVAL * 5)

        assert sync.polls <= polls + 1

    async def test_finished_ride_is_seen_after_it_leaves_active_list(self, stop_later):
        """A completed ride drops out of the active list but still reaches the view."""
        api = FakeApi(active=[row("in_progress")])
        sync = RideSync(api, poll_interval=POLL_INTERVAL)
        stop_later(sync)
        sync.start()
        await sync.wait_for_status(RIDE_ID, ["in_progress"], timeout=1)

        api.active = []
        api.rides[RIDE_ID] = row(
            "completed",
            completed_at="2024-05-01T12:20:00",
            trip_summary={"fare": 29.0},
        )
        final = await sync.wait_for_status(RIDE_ID, ["completed"], timeout=1)

        assert final.trip_summary == {"fare": 29.0}
        assert "completed" in final.status_timestamps

    async def test_terminal_rides_are_not_refetched(self):
        api = FakeApi(rides={RIDE_ID: row("cancelled")})
        sync = RideSync(api, poll_interval=POLL_INTERVAL)
        sync.track(RIDE_ID)

        await sync.poll_once()
        await sync.poll_once()

        assert api.get_ride_calls == [RIDE_ID]

    async def test_unreadable_ride_does_not_block_the_others(self):
        """An offer taken by another driver answers 403; the rides after it are still read."""
        taken, other = "RIDE_1_TAKEN1", "RIDE_2_OTHER2"
        api = FakeApi(
            rides={
                taken: ApiError(403, "UNAUTHORIZED", "Not allowed to view this ride"),
                other: row("completed", ride_id=other),
            }
        )
        sync = RideSync(api, poll_interval=POLL_INTERVAL)
        sync.track(taken)
        sync.track(other)

        await sync.poll_once()

        assert api.get_ride_calls == [taken, other]
        assert sync.get(taken) is None
        assert sync.get(other).status == "completed"

        await sync.poll_once()

        assert api.get_ride_calls == [taken, other]

    async def test_transient_reread_failure_keeps_tracking(self):
        api = FakeApi(rides={RIDE_ID: ConnectionError("api down")})
        sync = RideSync(api, poll_interval=POLL_INTERVAL)
        sync.track(RIDE_ID)

        await sync.poll_once()

        assert sync.get(RIDE_ID) is not None

        api.rides[RIDE_ID] = row("cancelled")
        await sync.poll_once()

        assert sync.get(RIDE_ID).status == "cancelled"

    async def test_poll_errors_do_not_stop_the_loop(self, stop_later):
        class FlakyApi(FakeApi):
            calls = 0

            async def get_active_rides(self, statuses=None):
                FlakyApi.calls += 1
                if FlakyApi.calls == 1:
                    raise ConnectionError("api down")
                return [row("requested")]

        sync = RideSync(FlakyApi(), poll_interval=POLL_INTERVAL)
        stop_later(sync)
        sync.start()

        view = await sync.wait_for_status(RIDE_ID, ["requested"], timeout=1)

        assert view.status == "requested"


class TestPushEvents:
    def test_push_event_updates_view(self):
        push = FakePush(state=CONNECTED)
        sync = RideSync(FakeApi(), push=push)
        sync.track(RIDE_ID)

        push.emit(
            {
                "event_type": "ride:status_update",
                "ride_id": RIDE_ID,
                "status": "matched",
                "driver_id": "d1",
            }
        )

        assert sync.get(RIDE_ID).status == "matched"
        assert sync.get(RIDE_ID).driver_id == "d1"

    def test_same_update_from_both_channels_notifies_once(self):
        sync = RideSync(FakeApi())
        seen = []
        sync.add_listener(seen.append)
        update = RideView(ride_id=RIDE_ID, status="arrived", driver_id="d1")

        sync.apply(update)
        sync.apply(update)

        assert len(seen) == 1

    def test_listener_failure_is_contained(self):
        sync = RideSync(FakeApi())

        def broken(view):
            raise RuntimeError("ui crashed")

        sync.add_listener(broken)

        assert sync.apply(RideView(ride_id=RIDE_ID, status="requested")).status == "requested"

    async def test_wait_for_status_times_out(self):
        sync = RideSync(FakeApi())
        sync.track(RIDE_ID)

        with pytest.raises(asyncio.TimeoutError):
            await sync.wait_for_status(RIDE_ID, ["matched"], timeout=0.02)
