"""Domain layer package - business rules and core models."""

from autocheckout.domain.errors import PersistenceError, ValidationError
from autocheckout.domain.models import (
    Checkout,
    CheckoutHistoryEntry,
    CheckoutMetadata,
    CheckoutMethod,
    CheckoutRequest,
    CheckoutStatus,
    FinalizeResult,
    GeolocationMeta,
    IgnoreReason,
    ManualMeta,
    Outcome,
    OutcomeKind,
    Parking,
    PositionSample,
    SensorEvent,
    SensorMeta,
    Ticket,
    TicketStatus,
    ZoneConfig,
    ZoneMethod,
)
from autocheckout.domain.services import ExitDetector, FareCalculator, distance_meters

__all__ = [
    # Errors
    "PersistenceError",
    "ValidationError",
    # Models
    "Checkout",
    "CheckoutHistoryEntry",
    "CheckoutMetadata",
    "CheckoutMethod",
    "CheckoutRequest",
    "CheckoutStatus",
    "FinalizeResult",
    "GeolocationMeta",
    "IgnoreReason",
    "ManualMeta",
    "Outcome",
    "OutcomeKind",
    "Parking",
    "PositionSample",
    "SensorEvent",
    "SensorMeta",
    "Ticket",
    "TicketStatus",
    "ZoneConfig",
    "ZoneMethod",
    # Services
    "ExitDetector",
    "FareCalculator",
    "distance_meters",
]
