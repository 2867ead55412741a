"""
Actor - the authenticated party performing a dispatch operation
"""

from dataclasses import dataclass

RIDER = "rider"
DRIVER = "driver"
SYSTEM = "system"

ROLES = (RIDER, DRIVER, SYSTEM)

# cancelled_by values stored on the ride
CANCELLED_BY = {RIDER: "user", DRIVER: "driver", SYSTEM: "system"}


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str

    @property
    def is_system(self) -> bool:
        return self.role == SYSTEM

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id="system", role=SYSTEM)

    def __str__(self):
        return f"{self.role}:{self.user_id}"
