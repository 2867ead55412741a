"""
Shared fixtures: an in-memory MongoDB per test, a recording notification
sink and factories for drivers and rides.
"""

from typing import List, Optional, Tuple

import mongomock
import pytest
from mongoengine import connect, disconnect

from gocab.dependencies import build_services
from gocab.models.actor import DRIVER, RIDER, Actor
from gocab.models.driver_model import Driver
from gocab.models.ride_model import Place, Ride
from gocab.services import ride_store
from gocab.utils.helpers import utc_now

# Downtown San Francisco
PICKUP = (37.7749, -122.4194)
DESTINATION = (37.8044, -122.2712)

ROUTE_INFO = {"distance_miles": 8.5, "duration_minutes": 22, "polyline": None, "source": "test"}


@pytest.fixture(autouse=True)
def db():
    disconnect(alias="default")
    connect(
        "gocab-test",
        host="mongodb://localhost",
        mongo_client_class=mongomock.MongoClient,
        alias="default",
    )
    yield
    Ride.drop_collection()
    Driver.drop_collection()
    disconnect(alias="default")


class RecordingSink:
    """Notification sink that remembers every published message"""

    def __init__(self):
        self.messages: List[Tuple[str, dict]] = []

    async def publish(self, channel: str, message: dict) -> int:
        self.messages.append((channel, message))
        return 1

    def events(self, channel: Optional[str] = None, event_type: Optional[str] = None):
        return [
            message
            for ch, message in self.messages
            if (channel is None or ch == channel)
            and (event_type is None or message.get("event_type") == event_type)
        ]


class FailingSink:
    """Push transport that is down"""

    def __init__(self):
        self.calls = 0

    async def publish(self, channel: str, message: dict) -> int:
        self.calls += 1
        raise ConnectionError("push transport unavailable")


async def fixed_route(origin, destination):
    return dict(ROUTE_INFO)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def services(sink):
    return build_services(sink=sink, route_provider=fixed_route)


@pytest.fixture
def make_driver():
    def _make_driver(
        name: str = "Driver",
        location: Optional[Tuple[float, float]] = PICKUP,
        online: bool = True,
        available: bool = True,
        approved: bool = True,
        **fields,
    ) -> Driver:
        driver = Driver(
            full_name=name,
            phone="+15550100",
            vehicle_make="Toyota",
            vehicle_model="Prius",
            vehicle_color="Blue",
            license_plate="GO-" + name[:4].upper(),
            is_approved=approved,
            is_online=online,
            is_available=available,
            **fields,
        )
        if location is not None:
            driver.latitude, driver.longitude = location
            driver.location_updated_at = utc_now()
        driver.save()
        return driver

    return _make_driver


@pytest.fixture
def make_ride():
    def _make_ride(
        rider_id: str = "rider-1",
        pickup: Tuple[float, float] = PICKUP,
        destination: Tuple[float, float] = DESTINATION,
    ) -> Ride:
        return ride_store.create_ride(
            rider_id,
            Place(address="1 Market St", latitude=pickup[0], longitude=pickup[1]),
            Place(address="Lake Merritt", latitude=destination[0], longitude=destination[1]),
            dict(ROUTE_INFO),
        )

    return _make_ride


def rider(user_id: str = "rider-1") -> Actor:
    return Actor(user_id=user_id, role=RIDER)


def driver_actor(driver: Driver) -> Actor:
    return Actor(user_id=str(driver.id), role=DRIVER)


def offset(point: Tuple[float, float], km_north: float) -> Tuple[float, float]:
    """A point roughly km_north kilometres north of point"""
    return (point[0] + km_north / 111.195, point[1])
