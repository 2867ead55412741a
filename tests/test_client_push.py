"""
Tests for the push connection: state reporting, keepalive and event dispatch.
"""

import asyncio
import json

from gocab.client.push import CONNECTED, CONNECTING, DISCONNECTED, PushConnection
from gocab.models.events import RideStatusEvent


class FakeSocket:
    def __init__(self):
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)


class FakeConnector:
    def __init__(self):
        self.sockets = []
        self.uris = []

    def __call__(self, uri):
        self.uris.append(uri)
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestPushConnection:
    async def test_reports_state_changes(self):
        connector = FakeConnector()
        push = PushConnection("ws://test/ws/ride", "tok", connect=connector, initial_delay=10)
        states = []
        push.add_state_listener(states.append)

        push.start()
        await settle()

        assert push.is_connected
        assert connector.uris == ["ws://test/ws/ride?token=tok"]

        connector.sockets[0].incoming.put_nowait(None)
        await settle()

        assert states == [CONNECTING, CONNECTED, DISCONNECTED]
        await push.close()

    async def test_answers_ping_and_dispatches_events(self):
        connector = FakeConnector()
        push = PushConnection("ws://test/ws/ride", "tok", connect=connector)
        events = []
        push.add_event_listener(events.append)
        push.start()
        await settle()

        socket = connector.sockets[0]
        for message in (
            {"event_type": "connected", "channels": ["rider-r1"]},
            {"event_type": "ping"},
            {"event_type": "ride:status_update", "ride_id": "RIDE_1_ABCDEF", "status": "matched"},
            {"event_type": "ride:status_update", "status": "matched"},
        ):
            socket.incoming.put_nowait(json.dumps(message))
        socket.incoming.put_nowait("not json")
        await settle()

        assert socket.sent == [{"event_type": "pong"}]
        assert len(events) == 1
        assert isinstance(events[0], RideStatusEvent)
        await push.close()

    async def test_send_only_while_connected(self):
        connector = FakeConnector()
        push = PushConnection("ws://test/ws/ride", "tok", connect=connector)

        assert await push.send({"event_type": "location_update"}) is False

        push.start()
        await settle()
        assert await push.send({"event_type": "location_update", "latitude": 1}) is True
        assert connector.sockets[0].sent[-1]["latitude"] == 1

        await push.close()
        assert push.state == DISCONNECTED

    async def test_reconnects_after_drop(self):
        connector = FakeConnector()
        push = PushConnection("ws://test/ws/ride", "tok", connect=connector, initial_delay=0.01)
        push.start()
        await settle()

        connector.sockets[0].incoming.put_nowait(None)
        await asyncio.sleep(0.05)

        assert len(connector.sockets) == 2
        assert push.is_connected
        await push.close()
