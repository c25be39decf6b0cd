"""Application layer package - engine components and collaborator ports."""

from autocheckout.application.checkout_coordinator import CheckoutCoordinator
from autocheckout.application.engine import AutoCheckoutEngine
from autocheckout.application.position_tracker import PositionTracker
from autocheckout.application.scheduler import AsyncioScheduler, Scheduler
from autocheckout.application.zone_registry import ZoneRegistry

__all__ = [
    "AutoCheckoutEngine",
    "CheckoutCoordinator",
    "PositionTracker",
    "ZoneRegistry",
    "Scheduler",
    "AsyncioScheduler",
]
