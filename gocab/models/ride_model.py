"""
Ride Model - Represents ride requests and their lifecycle
Status flow: requested → matched → (driver_en_route) → arrived → in_progress → completed,
with cancelled reachable from every non-terminal state before the trip starts
"""

from datetime import datetime

from mongoengine import (
    DateTimeField,
    Document,
    EmbeddedDocument,
    EmbeddedDocumentField,
    FloatField,
    StringField,
)

REQUESTED = "requested"
MATCHED = "matched"
DRIVER_EN_ROUTE = "driver_en_route"
ARRIVED = "arrived"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
CANCELLED = "cancelled"

STATUSES = (REQUESTED, MATCHED, DRIVER_EN_ROUTE, ARRIVED, IN_PROGRESS, COMPLETED, CANCELLED)
TERMINAL_STATUSES = (COMPLETED, CANCELLED)
ACTIVE_STATUSES = (REQUESTED, MATCHED, DRIVER_EN_ROUTE, ARRIVED, IN_PROGRESS)
# Statuses during which the driver is heading to or carrying the rider
TRACKED_STATUSES = (MATCHED, DRIVER_EN_ROUTE, ARRIVED, IN_PROGRESS)

# Timestamp field stamped the first time a status is entered
STATUS_TIMESTAMP_FIELDS = {
    REQUESTED: "requested_at",
    MATCHED: "matched_at",
    DRIVER_EN_ROUTE: "driver_en_route_at",
    ARRIVED: "arrived_at",
    IN_PROGRESS: "started_at",
    COMPLETED: "completed_at",
    CANCELLED: "cancelled_at",
}

STATUS_DISPLAY = {
    REQUESTED: "Looking for driver...",
    MATCHED: "Driver assigned",
    DRIVER_EN_ROUTE: "Driver on the way",
    ARRIVED: "Driver has arrived",
    IN_PROGRESS: "Ride in progress",
    COMPLETED: "Trip completed",
    CANCELLED: "Trip cancelled",
}


def _iso(value):
    return value.isoformat() if value else None


class Place(EmbeddedDocument):
    address = StringField(required=True, max_length=200)
    latitude = FloatField(required=True, min_value=-90, max_value=90)
    longitude = FloatField(required=True, min_value=-180, max_value=180)
    place_id = StringField(max_length=200)

    def to_dict(self):
        return {
            "address": self.address,
            "coordinates": {"latitude": self.latitude, "longitude": self.longitude},
            "place_id": self.place_id,
        }


class RouteInfo(EmbeddedDocument):
    distance_miles = FloatField(required=True, min_value=0)
    estimated_duration_minutes = FloatField(required=True, min_value=0)
    actual_distance_miles = FloatField(min_value=0)
    actual_duration_minutes = FloatField(min_value=0)
    polyline = StringField()

    def to_dict(self):
        return {
            "distance_miles": self.distance_miles,
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "actual_distance_miles": self.actual_distance_miles,
            "actual_duration_minutes": self.actual_duration_minutes,
            "polyline": self.polyline,
        }


class DriverContact(EmbeddedDocument):
    """Copy of the driver's details taken at match time"""

    name = StringField()
    phone = StringField()
    vehicle_info = StringField()
    license_plate = StringField()

    def to_dict(self):
        return {
            "name": self.name,
            "phone": self.phone,
            "vehicle_info": self.vehicle_info,
            "license_plate": self.license_plate,
        }


class DriverLocation(EmbeddedDocument):
    latitude = FloatField(required=True)
    longitude = FloatField(required=True)
    heading = FloatField()
    last_updated = DateTimeField(required=True)

    def to_dict(self):
        return {
            "coordinates": {"latitude": self.latitude, "longitude": self.longitude},
            "heading": self.heading,
            "last_updated": _iso(self.last_updated),
        }


class Pricing(EmbeddedDocument):
    base_fare = FloatField(required=True, min_value=0)
    distance_fee = FloatField(required=True, min_value=0)
    time_fee = FloatField(required=True, min_value=0)
    total_estimated = FloatField(required=True, min_value=0)
    total_actual = FloatField(min_value=0)
    currency = StringField(default="USD")

    def to_dict(self):
        return {
            "base_fare": self.base_fare,
            "distance_fee": self.distance_fee,
            "time_fee": self.time_fee,
            "total_estimated": self.total_estimated,
            "total_actual": self.total_actual,
            "currency": self.currency,
        }


class CarbonFootprint(EmbeddedDocument):
    estimated_saved = FloatField(required=True, min_value=0)
    actual_saved = FloatField(min_value=0)
    comparison_method = StringField(default="vs private car")
    calculation_method = StringField(default="EPA standard")

    def to_dict(self):
        return {
            "estimated_saved": self.estimated_saved,
            "actual_saved": self.actual_saved,
            "comparison_method": self.comparison_method,
            "calculation_method": self.calculation_method,
        }


class TripSummary(EmbeddedDocument):
    distance_miles = FloatField()
    duration_minutes = FloatField()
    fare = FloatField()
    carbon_saved = FloatField()
    tree_equivalent = FloatField()

    def to_dict(self):
        return {
            "distance_miles": self.distance_miles,
            "duration_minutes": self.duration_minutes,
            "fare": self.fare,
            "carbon_saved": self.carbon_saved,
            "tree_equivalent": self.tree_equivalent,
        }


class Ride(Document):
    """
    Ride model tracking the complete lifecycle of a ride request.
    Rides are never deleted; cancellation is a status.
    """

    meta = {
        "collection": "rides",
        "indexes": [
            "ride_id",
            ("rider_id", "status"),
            ("driver_id", "status"),
            ("status", "-requested_at"),
        ],
    }

    # Identification
    ride_id = StringField(required=True, unique=True)
    pickup_code = StringField(required=True, regex=r"^[0-9]{6}$")
    otp = StringField(required=True, regex=r"^[0-9]{4}$")

    # Participants
    rider_id = StringField(required=True)
    driver_id = StringField()

    # Locations
    pickup = EmbeddedDocumentField(Place, required=True)
    destination = EmbeddedDocumentField(Place, required=True)
    route = EmbeddedDocumentField(RouteInfo, required=True)

    # Status Management
    status = StringField(required=True, choices=STATUSES, default=REQUESTED)

    # Timestamps for lifecycle tracking
    requested_at = DateTimeField(required=True, default=datetime.utcnow)
    matched_at = DateTimeField()
    driver_en_route_at = DateTimeField()
    arrived_at = DateTimeField()
    started_at = DateTimeField()
    completed_at = DateTimeField()
    cancelled_at = DateTimeField()
    updated_at = DateTimeField(default=datetime.utcnow)

    # Driver details
    driver_contact = EmbeddedDocumentField(DriverContact)
    driver_location = EmbeddedDocumentField(DriverLocation)

    # Money and carbon
    pricing = EmbeddedDocumentField(Pricing, required=True)
    carbon_footprint = EmbeddedDocumentField(CarbonFootprint, required=True)
    trip_summary = EmbeddedDocumentField(TripSummary)

    # Additional Information
    rider_notes = StringField(max_length=500)
    cancellation_reason = StringField(max_length=500)
    cancelled_by = StringField(choices=("user", "driver", "system"))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def status_display(self) -> str:
        return STATUS_DISPLAY.get(self.status, self.status)

    def to_dict(self, include_codes: bool = True):
        """Convert ride to dictionary"""
        data = {
            "id": str(self.id),
            "ride_id": self.ride_id,
            "rider_id": self.rider_id,
            "driver_id": self.driver_id,
            "status": self.status,
            "status_display": self.status_display,
            "pickup": self.pickup.to_dict() if self.pickup else None,
            "destination": self.destination.to_dict() if self.destination else None,
            "route": self.route.to_dict() if self.route else None,
            "driver_contact": self.driver_contact.to_dict() if self.driver_contact else None,
            "driver_location": (
                self.driver_location.to_dict() if self.driver_location else None
            ),
            "pricing": self.pricing.to_dict() if self.pricing else None,
            "carbon_footprint": (
                self.carbon_footprint.to_dict() if self.carbon_footprint else None
            ),
            "trip_summary": self.trip_summary.to_dict() if self.trip_summary else None,
            "rider_notes": self.rider_notes,
            "cancellation_reason": self.cancellation_reason,
            "cancelled_by": self.cancelled_by,
            "requested_at": _iso(self.requested_at),
            "matched_at": _iso(self.matched_at),
            "driver_en_route_at": _iso(self.driver_en_route_at),
            "arrived_at": _iso(self.arrived_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "updated_at": _iso(self.updated_at),
        }

        if include_codes:
            data["pickup_code"] = self.pickup_code
            data["otp"] = self.otp

        return data

    def __str__(self):
        return f"Ride({self.ride_id}, {self.status})"
