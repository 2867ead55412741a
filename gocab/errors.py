"""
Dispatch Errors
Domain exceptions raised by the services and rendered by the API layer
"""

from fastapi import status


class DispatchError(Exception):
    """Base class carrying a stable error code and the HTTP status it maps to."""

    code = "DISPATCH_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Dispatch error"

    def __init__(self, message: str = None, code: str = None):
        self.message = message or self.default_message
        if code:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidRequest(DispatchError):
    code = "INVALID_REQUEST"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class RideNotFound(DispatchError):
    code = "RIDE_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Ride not found"


class DriverNotFound(DispatchError):
    code = "DRIVER_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Driver not found"


class DriverExists(DispatchError):
    code = "DRIVER_EXISTS"
    status_code = status.HTTP_409_CONFLICT
    default_message = "A driver with this phone or license plate already exists"


class RideCannotBeUpdated(DispatchError):
    code = "RIDE_CANNOT_BE_UPDATED"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Ride cannot be updated"


class RideAlreadyAssigned(DispatchError):
    code = "RIDE_ALREADY_ASSIGNED"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Ride is already assigned to another driver"


class DriverNotAvailable(DispatchError):
    code = "DRIVER_NOT_AVAILABLE"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Driver is not available for rides"


class ActiveRideExists(DispatchError):
    code = "ACTIVE_RIDE_EXISTS"
    status_code = status.HTTP_409_CONFLICT
    default_message = "User already has an active ride"

    def __init__(self, active_ride_id: str, message: str = None):
        self.active_ride_id = active_ride_id
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["active_ride_id"] = self.active_ride_id
        return data


class Unauthorized(DispatchError):
    code = "UNAUTHORIZED"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not authorized to perform this action"
