"""
Request Models
Pydantic models validating REST payloads before they reach the services
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from gocab.models.ride_model import ACTIVE_STATUSES, STATUSES


class Coordinates(BaseModel):
    latitude: float = Field(..., ge=-90, le=90, description="Latitude coordinate")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude coordinate")

    def as_tuple(self):
        return (self.latitude, self.longitude)


class PlaceIn(BaseModel):
    address: str = Field(..., min_length=3, max_length=200)
    coordinates: Coordinates
    place_id: Optional[str] = Field(default=None, max_length=200)


class CreateRideRequest(BaseModel):
    pickup: PlaceIn
    destination: PlaceIn
    rider_notes: Optional[str] = Field(default=None, max_length=500)
    auto_assign: bool = Field(
        default=True, description="Auto-assign nearest available driver"
    )
    search_radius_km: Optional[float] = Field(default=None, gt=0)


class StatusTransitionRequest(BaseModel):
    status: str
    reason: Optional[str] = Field(default=None, max_length=500)
    otp: Optional[str] = Field(default=None, description="OTP read out by the rider at pickup")
    actual_distance_miles: Optional[float] = Field(default=None, ge=0)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v not in STATUSES:
            raise ValueError(f"Unknown ride status: {v}")
        return v


class CancelRideRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class AcceptRideRequest(BaseModel):
    driver_location: Optional[Coordinates] = None


class DriverLocationUpdate(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    heading: Optional[float] = Field(default=None, ge=0, lt=360)
    timestamp: Optional[datetime] = None


class DriverRegistration(BaseModel):
    full_name: str = Field(..., min_length=2, max_length=100)
    phone: str = Field(..., min_length=7, max_length=20)
    vehicle_make: str = Field(..., min_length=1, max_length=50)
    vehicle_model: str = Field(..., min_length=1, max_length=50)
    vehicle_color: Optional[str] = Field(default=None, max_length=30)
    license_plate: str = Field(..., min_length=2, max_length=20)


class DriverStatusUpdate(BaseModel):
    is_online: bool
    location: Optional[Coordinates] = None


def parse_status_filter(raw: Optional[List[str]]) -> List[str]:
    """
    Normalise a ?status= filter; empty means every non-terminal status.
    Accepts repeated params and comma separated values.
    """
    if not raw:
        return list(ACTIVE_STATUSES)

    statuses = []
    for item in raw:
        statuses.extend(s.strip() for s in item.split(",") if s.strip())

    unknown = [s for s in statuses if s not in STATUSES]
    if unknown:
        raise ValueError(f"Unknown ride status: {', '.join(unknown)}")

    return statuses or list(ACTIVE_STATUSES)
