"""
Driver Model - Availability record for a driver
Holds the online/available flags, last known position and the ride currently held
"""

from datetime import datetime

from mongoengine import BooleanField, DateTimeField, Document, FloatField, IntField, StringField

from gocab.models.ride_model import DriverContact


class Driver(Document):
    """
    Invariants:
      - is_available is only ever true while is_online is true
      - a driver holding a current_ride_id is never available
    """

    meta = {
        "collection": "drivers",
        "indexes": [
            ("is_online", "is_available", "is_approved"),
            ("latitude", "longitude"),
            "current_ride_id",
        ],
        "strict": False,
    }

    # Basic Information
    full_name = StringField(required=True, max_length=100)
    phone = StringField(required=True, max_length=20)

    # Vehicle
    vehicle_make = StringField(max_length=50)
    vehicle_model = StringField(max_length=50)
    vehicle_color = StringField(max_length=30)
    license_plate = StringField(max_length=20)

    # Verification and account status
    is_approved = BooleanField(default=False)
    is_active = BooleanField(default=True)

    # Availability
    is_online = BooleanField(default=False)
    is_available = BooleanField(default=False)
    current_ride_id = StringField()

    # Last known position
    latitude = FloatField(min_value=-90, max_value=90)
    longitude = FloatField(min_value=-180, max_value=180)
    location_updated_at = DateTimeField()

    # Stats
    total_rides = IntField(default=0)
    total_distance_miles = FloatField(default=0.0)
    carbon_saved_for_riders = FloatField(default=0.0)

    created_at = DateTimeField(default=datetime.utcnow)
    last_active = DateTimeField(default=datetime.utcnow)

    @property
    def vehicle_display_name(self) -> str:
        parts = [self.vehicle_make, self.vehicle_model]
        name = " ".join(p for p in parts if p)
        if self.vehicle_color:
            name = f"{name} ({self.vehicle_color})"
        return name

    def contact_snapshot(self) -> DriverContact:
        """Copy of the contact details stored on a ride at match time"""
        return DriverContact(
            name=self.full_name,
            phone=self.phone,
            vehicle_info=self.vehicle_display_name,
            license_plate=self.license_plate,
        )

    def to_dict(self):
        return {
            "id": str(self.id),
            "full_name": self.full_name,
            "phone": self.phone,
            "vehicle": self.vehicle_display_name,
            "license_plate": self.license_plate,
            "is_approved": self.is_approved,
            "is_online": self.is_online,
            "is_available": self.is_available,
            "current_ride_id": self.current_ride_id,
            "location": (
                {"latitude": self.latitude, "longitude": self.longitude}
                if self.latitude is not None and self.longitude is not None
                else None
            ),
            "location_updated_at": (
                self.location_updated_at.isoformat() if self.location_updated_at else None
            ),
            "total_rides": self.total_rides,
        }

    def __str__(self):
        return f"Driver({self.full_name}, online={self.is_online}, available={self.is_available})"
