"""
Domain models for the Auto-Checkout Engine.

These are pure domain objects with no infrastructure dependencies.
Timestamps are integer epoch milliseconds throughout.
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from numbers import Real
from typing import Any, Union

from autocheckout.domain.errors import ValidationError

DEFAULT_ACCURACY_METERS = 10.0
DEFAULT_EXIT_RADIUS_METERS = 100.0
DEFAULT_CONFIRMATION_DELAY_SECONDS = 30
DEFAULT_GRACE_PERIOD_SECONDS = 300


class ZoneMethod(str, Enum):
    """How a parking lot detects that a vehicle has left."""

    GEOLOCATION = "geolocation"
    SENSOR = "sensor"
    HYBRID = "hybrid"

    @property
    def accepts_geolocation(self) -> bool:
        return self in (ZoneMethod.GEOLOCATION, ZoneMethod.HYBRID)

    @property
    def accepts_sensor(self) -> bool:
        return self in (ZoneMethod.SENSOR, ZoneMethod.HYBRID)


class CheckoutMethod(str, Enum):
    """Signal that opened a checkout."""

    GEOLOCATION = "geolocation"
    SENSOR = "sensor"
    MANUAL = "manual"


class CheckoutStatus(str, Enum):
    """
    Checkout state machine.

    PENDING is the only non-terminal state. A checkout moves from
    PENDING to exactly one of the other three and never leaves it.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TicketStatus(str, Enum):
    """Statuses of the external parking ticket the engine cares about."""

    ACTIVE = "active"
    COMPLETED = "completed"
    USED = "used"
    CANCELLED = "cancelled"


class FinalizeResult(str, Enum):
    """
    Result of closing a checkout and its ticket together.

    Anything but COMPLETED means neither row was changed.
    """

    COMPLETED = "completed"
    NOT_PENDING = "not_pending"
    TICKET_NOT_ACTIVE = "ticket_not_active"


class OutcomeKind(str, Enum):
    INITIATED = "initiated"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    IGNORED = "ignored"
    FAILED = "failed"


class IgnoreReason(str, Enum):
    """Why an entry point decided that nothing should happen."""

    NOT_EXIT_ACTION = "not_exit_action"
    UNKNOWN_SENSOR = "unknown_sensor"
    NO_MATCHING_TICKET = "no_matching_ticket"
    TICKET_NOT_FOUND = "ticket_not_found"
    CHECKOUT_NOT_FOUND = "checkout_not_found"
    NOT_PENDING = "not_pending"
    TICKET_NOT_ACTIVE = "ticket_not_active"
    NO_EXIT_DETECTED = "no_exit_detected"


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and not math.isnan(value)


@dataclass(frozen=True)
class PositionSample:
    """
    One GPS fix reported for a subject.

    Attributes:
        lat: Latitude in degrees, [-90, 90].
        lng: Longitude in degrees, [-180, 180].
        timestamp_ms: Epoch milliseconds; None means "stamp on arrival".
        accuracy_meters: Reported horizontal accuracy, non-negative.

    Raises:
        ValidationError: On any out-of-range or non-numeric field.
    """

    lat: float
    lng: float
    timestamp_ms: int | None = None
    accuracy_meters: float = DEFAULT_ACCURACY_METERS

    def __post_init__(self) -> None:
        if not _is_number(self.lat):
            raise ValidationError("Invalid latitude: must be a number")
        if not _is_number(self.lng):
            raise ValidationError("Invalid longitude: must be a number")
        if not -90 <= self.lat <= 90:
            raise ValidationError("Latitude must be between -90 and 90")
        if not -180 <= self.lng <= 180:
            raise ValidationError("Longitude must be between -180 and 180")
        if not _is_number(self.accuracy_meters) or self.accuracy_meters < 0:
            raise ValidationError("Accuracy must be a non-negative number")
        if self.timestamp_ms is not None and not _is_number(self.timestamp_ms):
            raise ValidationError("Timestamp must be epoch milliseconds")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "PositionSample":
        """
        Build a sample from a loose payload.

        Accepts both ``lat``/``lng`` and ``latitude``/``longitude`` keys.
        A missing accuracy falls back to the default of 10 meters.
        """
        if not isinstance(data, Mapping):
            raise ValidationError("Position data is required and must be an object")

        lat = data.get("lat", data.get("latitude"))
        lng = data.get("lng", data.get("longitude"))
        accuracy = data.get("accuracy", data.get("accuracy_meters"))
        timestamp = data.get("timestamp", data.get("timestamp_ms"))

        return cls(
            lat=lat,
            lng=lng,
            timestamp_ms=timestamp,
            accuracy_meters=DEFAULT_ACCURACY_METERS if accuracy is None else accuracy,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "timestamp": self.timestamp_ms,
            "accuracy": self.accuracy_meters,
        }


@dataclass(frozen=True)
class ZoneConfig:
    """
    Auto-checkout configuration of one parking lot.

    ``exit_zones`` is carried for display and future polygon support;
    exit decisions only use the radius around the lot's coordinates.
    """

    parking_id: str
    method: ZoneMethod = ZoneMethod.GEOLOCATION
    exit_radius_meters: float = DEFAULT_EXIT_RADIUS_METERS
    confirmation_delay_seconds: int = DEFAULT_CONFIRMATION_DELAY_SECONDS
    exit_zones: tuple[Any, ...] = ()
    sensor_ids: frozenset[str] = frozenset()
    grace_period_seconds: int = DEFAULT_GRACE_PERIOD_SECONDS
    notifications_enabled: bool = True

    def __post_init__(self) -> None:
        if not self.parking_id:
            raise ValidationError("Zone config requires a parking id")
        if not _is_number(self.exit_radius_meters) or self.exit_radius_meters <= 0:
            raise ValidationError("Exit radius must be a positive number")
        if self.confirmation_delay_seconds < 0:
            raise ValidationError("Confirmation delay cannot be negative")

    def has_sensor(self, sensor_id: str) -> bool:
        return sensor_id in self.sensor_ids


@dataclass(frozen=True)
class Parking:
    id: str
    name: str
    lat: float
    lng: float
    total_spots: int = 0
    available_spots: int = 0


@dataclass(frozen=True)
class Ticket:
    """
    Parking ticket as seen by the engine.

    Owned by the ticketing system; the lot name and coordinates are
    joined in by the ticket store for exit evaluation and notifications.
    """

    id: str
    user_id: str
    parking_id: str
    status: str
    start_time_ms: int
    end_time_ms: int | None = None
    spot_number: int | None = None
    zone: str | None = None
    license_plate: str | None = None
    parking_name: str | None = None
    parking_lat: float | None = None
    parking_lng: float | None = None

    @property
    def is_active(self) -> bool:
        return self.status == TicketStatus.ACTIVE.value


@dataclass(frozen=True)
class GeolocationMeta:
    exit_position: PositionSample
    confirmation_delay_seconds: int = DEFAULT_CONFIRMATION_DELAY_SECONDS

    method = CheckoutMethod.GEOLOCATION

    def to_payload(self) -> dict[str, Any]:
        return {
            "exitPosition": self.exit_position.to_payload(),
            "confirmationDelay": self.confirmation_delay_seconds,
        }


@dataclass(frozen=True)
class SensorMeta:
    sensor_id: str
    vehicle_id: str | None
    timestamp_ms: int

    method = CheckoutMethod.SENSOR

    @property
    def confirmation_delay_seconds(self) -> int:
        return 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "sensorId": self.sensor_id,
            "vehicleId": self.vehicle_id,
            "timestamp": self.timestamp_ms,
        }


@dataclass(frozen=True)
class ManualMeta:
    requested_by: str
    timestamp_ms: int

    method = CheckoutMethod.MANUAL

    @property
    def confirmation_delay_seconds(self) -> int:
        return 0

    def to_payload(self) -> dict[str, Any]:
        return {"requestedBy": self.requested_by, "timestamp": self.timestamp_ms}


CheckoutMetadata = Union[GeolocationMeta, SensorMeta, ManualMeta]


def metadata_from_payload(method: CheckoutMethod, payload: Mapping[str, Any]) -> CheckoutMetadata:
    """Rebuild typed metadata from the JSON payload stored with a checkout."""
    if method is CheckoutMethod.GEOLOCATION:
        position = payload.get("exitPosition") or {}
        return GeolocationMeta(
            exit_position=PositionSample.from_mapping(position),
            confirmation_delay_seconds=int(payload.get("confirmationDelay") or 0),
        )
    if method is CheckoutMethod.SENSOR:
        return SensorMeta(
            sensor_id=str(payload.get("sensorId", "")),
            vehicle_id=payload.get("vehicleId"),
            timestamp_ms=int(payload.get("timestamp") or 0),
        )
    return ManualMeta(
        requested_by=str(payload.get("requestedBy", "")),
        timestamp_ms=int(payload.get("timestamp") or 0),
    )


@dataclass(frozen=True)
class CheckoutRequest:
    """An exit signal ready to be turned into a pending checkout."""

    ticket: Ticket
    metadata: CheckoutMetadata

    @property
    def method(self) -> CheckoutMethod:
        return self.metadata.method

    @property
    def ticket_id(self) -> str:
        return self.ticket.id


@dataclass
class Checkout:
    """
    Persisted checkout, the subject of the state machine.

    Attributes:
        id: Generated unique identifier.
        ticket_id: Ticket being checked out.
        user_id: Owner of the ticket.
        parking_id: Lot of the ticket.
        method: Signal that opened the checkout.
        status: Current state.
        initiated_at_ms: When the checkout was opened.
        metadata: Method-specific metadata captured at initiation.
        completed_at_ms: Set only on completion.
        cancelled_at_ms: Set only on cancellation.
        final_amount: Charge computed on completion.
        error_message: Set only on failure.
        cancel_reason: Set only on cancellation.
    """

    id: str
    ticket_id: str
    user_id: str
    parking_id: str
    method: CheckoutMethod
    status: CheckoutStatus
    initiated_at_ms: int
    metadata: CheckoutMetadata | None = None
    completed_at_ms: int | None = None
    cancelled_at_ms: int | None = None
    final_amount: float | None = None
    error_message: str | None = None
    cancel_reason: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status is CheckoutStatus.PENDING


@dataclass(frozen=True)
class CheckoutHistoryEntry:
    """A checkout joined with lot and spot details for display."""

    checkout: Checkout
    parking_name: str | None = None
    zone: str | None = None
    spot_number: int | None = None


@dataclass(frozen=True)
class SensorEvent:
    """
    Event reported by an IoT proximity sensor.

    ``vehicle_id`` is either a license plate or a spot number.
    """

    sensor_id: str
    action: str
    vehicle_id: str | None = None
    timestamp_ms: int | None = None
    confidence: float = 1.0

    @property
    def is_exit(self) -> bool:
        return self.action == "exit"


@dataclass(frozen=True)
class Outcome:
    """
    Result of an engine entry point.

    Distinguishes "did something" from "deliberately did nothing"
    without relying on exceptions.
    """

    kind: OutcomeKind
    checkout_id: str | None = None
    reason: IgnoreReason | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def initiated(cls, checkout_id: str) -> "Outcome":
        return cls(OutcomeKind.INITIATED, checkout_id=checkout_id)

    @classmethod
    def completed(cls, checkout_id: str, final_amount: float) -> "Outcome":
        return cls(
            OutcomeKind.COMPLETED,
            checkout_id=checkout_id,
            details={"final_amount": final_amount},
        )

    @classmethod
    def cancelled(cls, checkout_id: str, reason: IgnoreReason | None = None) -> "Outcome":
        return cls(OutcomeKind.CANCELLED, checkout_id=checkout_id, reason=reason)

    @classmethod
    def ignored(cls, reason: IgnoreReason, checkout_id: str | None = None) -> "Outcome":
        return cls(OutcomeKind.IGNORED, checkout_id=checkout_id, reason=reason)

    @classmethod
    def failed(cls, error: str, checkout_id: str | None = None) -> "Outcome":
        return cls(OutcomeKind.FAILED, checkout_id=checkout_id, error=error)

    @property
    def is_ignored(self) -> bool:
        return self.kind is OutcomeKind.IGNORED
