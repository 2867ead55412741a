"""
Service wiring shared by the REST routes and the WebSocket handlers
"""

from dataclasses import dataclass
from typing import Optional

from gocab.services.lifecycle import LifecycleController
from gocab.services.matching import MatchingService
from gocab.services.notifications import NotificationSink, RideNotifier
from gocab.sockets.manager import manager


@dataclass
class Services:
    notifier: RideNotifier
    lifecycle: LifecycleController
    matching: MatchingService


def build_services(sink: Optional[NotificationSink] = None, **matching_options) -> Services:
    notifier = RideNotifier(sink if sink is not None else manager)
    lifecycle = LifecycleController(notifier)
    matching = MatchingService(lifecycle, **matching_options)
    return Services(notifier=notifier, lifecycle=lifecycle, matching=matching)


_services: Optional[Services] = None


def get_services() -> Services:
    """FastAPI dependency; tests override it with their own wiring"""
    global _services
    if _services is None:
        _services = build_services()
    return _services
