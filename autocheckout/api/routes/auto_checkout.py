"""
Auto-checkout API routes.

Thin adapters over the engine: position updates from the mobile app,
IoT sensor events, manual checkout requests, cancellation, history and
per-lot configuration. Every engine entry point answers with its
outcome kind and reason, including deliberate no-ops.
"""

from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Path, Query, status
from pydantic import AliasChoices, BaseModel, Field

from autocheckout.api.deps import ApiKeyAuth, CurrentUserId, Engine, RateLimited
from autocheckout.core.config import get_settings
from autocheckout.core.logging import get_logger
from autocheckout.domain.errors import PersistenceError, ValidationError
from autocheckout.domain.models import (
    Checkout,
    CheckoutStatus,
    Outcome,
    OutcomeKind,
    PositionSample,
    SensorEvent,
    ZoneConfig,
    ZoneMethod,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/auto-checkout", tags=["auto-checkout"])

DEFAULT_CANCEL_REASON = "user_cancelled"


class OutcomeResponse(BaseModel):
    """Result of one engine entry point."""

    kind: OutcomeKind = Field(description="What the engine did", examples=["initiated"])
    checkout_id: str | None = Field(default=None, description="Affected checkout")
    reason: str | None = Field(
        default=None,
        description="Why nothing happened, or why a checkout was cancelled",
        examples=["no_exit_detected"],
    )
    error: str | None = Field(default=None, description="Failure message")
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_outcome(cls, outcome: Outcome) -> "OutcomeResponse":
        return cls(
            kind=outcome.kind,
            checkout_id=outcome.checkout_id,
            reason=outcome.reason.value if outcome.reason else None,
            error=outcome.error,
            details=dict(outcome.details),
        )


class PositionUpdateRequest(BaseModel):
    """GPS fix reported by the mobile app."""

    lat: float = Field(validation_alias=AliasChoices("lat", "latitude"), examples=[18.4861])
    lng: float = Field(validation_alias=AliasChoices("lng", "longitude"), examples=[-69.9312])
    accuracy: float | None = Field(default=None, description="Horizontal accuracy in meters")
    timestamp: int | None = Field(default=None, description="Epoch milliseconds")


class PositionUpdateResponse(BaseModel):
    outcomes: list[OutcomeResponse]


class SensorEventRequest(BaseModel):
    """Event pushed by an exit proximity sensor."""

    sensor_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("sensorId", "sensor_id"),
        examples=["SENSOR-EXIT-01"],
    )
    action: str = Field(min_length=1, examples=["exit"])
    vehicle_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("vehicleId", "vehicle_id"),
        description="License plate or spot number",
    )
    timestamp: int | None = Field(default=None, description="Epoch milliseconds")
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=100)


class CheckoutResponse(BaseModel):
    """Response model for a checkout."""

    id: str
    ticket_id: str
    user_id: str
    parking_id: str
    method: str
    status: CheckoutStatus
    initiated_at: int
    completed_at: int | None = None
    cancelled_at: int | None = None
    final_amount: float | None = None
    metadata: dict[str, Any] | None = None
    error_message: str | None = None
    cancel_reason: str | None = None

    @classmethod
    def from_checkout(cls, checkout: Checkout) -> "CheckoutResponse":
        return cls(
            id=checkout.id,
            ticket_id=checkout.ticket_id,
            user_id=checkout.user_id,
            parking_id=checkout.parking_id,
            method=checkout.method.value,
            status=checkout.status,
            initiated_at=checkout.initiated_at_ms,
            completed_at=checkout.completed_at_ms,
            cancelled_at=checkout.cancelled_at_ms,
            final_amount=checkout.final_amount,
            metadata=checkout.metadata.to_payload() if checkout.metadata else None,
            error_message=checkout.error_message,
            cancel_reason=checkout.cancel_reason,
        )


class CheckoutHistoryItem(CheckoutResponse):
    parking_name: str | None = None
    zone: str | None = None
    spot_number: int | None = None


class CheckoutHistoryResponse(BaseModel):
    entries: list[CheckoutHistoryItem]
    count: int


class ZoneConfigResponse(BaseModel):
    """Auto-checkout configuration of one lot."""

    parking_id: str
    enabled: bool
    method: ZoneMethod
    exit_radius: float
    confirmation_delay: int
    exit_zones: list[Any]
    sensor_ids: list[str]
    grace_period: int
    notifications_enabled: bool

    @classmethod
    def from_config(cls, config: ZoneConfig, enabled: bool) -> "ZoneConfigResponse":
        return cls(
            parking_id=config.parking_id,
            enabled=enabled,
            method=config.method,
            exit_radius=config.exit_radius_meters,
            confirmation_delay=config.confirmation_delay_seconds,
            exit_zones=list(config.exit_zones),
            sensor_ids=sorted(config.sensor_ids),
            grace_period=config.grace_period_seconds,
            notifications_enabled=config.notifications_enabled,
        )


class ZoneConfigUpdateRequest(BaseModel):
    """Request to replace a lot's auto-checkout configuration."""

    enabled: bool = False
    method: ZoneMethod = ZoneMethod.GEOLOCATION
    exit_radius: float = Field(
        default=100.0,
        gt=0,
        validation_alias=AliasChoices("exitRadius", "exit_radius"),
    )
    confirmation_delay: int = Field(
        default=30,
        ge=0,
        validation_alias=AliasChoices("confirmationDelay", "confirmation_delay"),
    )
    exit_zones: list[Any] = Field(
        default_factory=list,
        validation_alias=AliasChoices("exitZones", "exit_zones"),
    )
    sensor_ids: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("sensorIds", "sensor_ids"),
    )
    grace_period: int = Field(
        default=300,
        ge=0,
        validation_alias=AliasChoices("gracePeriod", "grace_period"),
    )
    notifications_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("notificationsEnabled", "notifications_enabled"),
    )


class EngineHealthResponse(BaseModel):
    status: str
    engine_running: bool
    zones: int
    tracked_subjects: int


@router.post(
    "/position",
    response_model=PositionUpdateResponse,
    summary="Report vehicle position",
    description="Record a GPS fix for the caller and check every active ticket for a lot exit.",
    responses={
        400: {"description": "Invalid position"},
        401: {"description": "Missing user identity"},
        429: {"description": "Rate limit exceeded"},
    },
)
async def update_position(
    request: PositionUpdateRequest,
    engine: Engine,
    user_id: CurrentUserId,
    _: RateLimited,
) -> PositionUpdateResponse:
    """
    Track the caller's position.

    A response with a ``no_exit_detected`` outcome is the normal case;
    an ``initiated`` outcome means a checkout is waiting for confirmation.
    """
    try:
        sample = PositionSample.from_mapping(request.model_dump())
        outcomes = await engine.track_position(user_id, sample)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return PositionUpdateResponse(
        outcomes=[OutcomeResponse.from_outcome(o) for o in outcomes]
    )


@router.post(
    "/sensor",
    response_model=OutcomeResponse,
    summary="Ingest sensor event",
    description="Record an IoT sensor event and check out the matching ticket on exit.",
)
async def ingest_sensor_event(
    request: SensorEventRequest,
    engine: Engine,
    _: ApiKeyAuth,
) -> OutcomeResponse:
    event = SensorEvent(
        sensor_id=request.sensor_id,
        action=request.action,
        vehicle_id=request.vehicle_id,
        timestamp_ms=request.timestamp,
        confidence=request.confidence,
    )
    outcome = await engine.ingest_sensor_event(event)
    return OutcomeResponse.from_outcome(outcome)


@router.post(
    "/manual/{ticket_id}",
    response_model=OutcomeResponse,
    summary="Check out now",
    description="Check out one of the caller's active tickets immediately.",
)
async def manual_checkout(
    ticket_id: Annotated[str, Path(description="Ticket to check out")],
    engine: Engine,
    user_id: CurrentUserId,
) -> OutcomeResponse:
    outcome = await engine.request_manual_checkout(ticket_id, user_id)
    return OutcomeResponse.from_outcome(outcome)


@router.post(
    "/cancel/{checkout_id}",
    response_model=OutcomeResponse,
    summary="Cancel pending checkout",
    description="Cancel a checkout that is still waiting for confirmation.",
    responses={404: {"description": "Checkout not found"}},
)
async def cancel_checkout(
    checkout_id: Annotated[str, Path(description="Checkout to cancel")],
    engine: Engine,
    user_id: CurrentUserId,
    request: CancelRequest | None = None,
) -> OutcomeResponse:
    """Cancelling a checkout that is no longer pending is a no-op."""
    checkout = await engine.get_checkout(checkout_id)

    if checkout is None or checkout.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Checkout not found",
        )

    reason = (request.reason if request else None) or DEFAULT_CANCEL_REASON
    outcome = await engine.cancel_checkout(checkout_id, reason)
    logger.info(
        "checkout_cancel_requested",
        checkout_id=checkout_id,
        user_id=user_id,
        outcome=outcome.kind.value,
    )
    return OutcomeResponse.from_outcome(outcome)


@router.get(
    "/history",
    response_model=CheckoutHistoryResponse,
    summary="Checkout history",
    description="The caller's checkouts, newest first.",
)
async def checkout_history(
    engine: Engine,
    user_id: CurrentUserId,
    limit: int | None = Query(default=None, ge=1, le=200),
) -> CheckoutHistoryResponse:
    limit = limit or get_settings().history_default_limit
    entries = await engine.get_checkout_history(user_id, limit)

    items = [
        CheckoutHistoryItem(
            **CheckoutResponse.from_checkout(entry.checkout).model_dump(),
            parking_name=entry.parking_name,
            zone=entry.zone,
            spot_number=entry.spot_number,
        )
        for entry in entries
    ]
    return CheckoutHistoryResponse(entries=items, count=len(items))


@router.get(
    "/checkouts/{checkout_id}",
    response_model=CheckoutResponse,
    summary="Get checkout",
    responses={404: {"description": "Checkout not found"}},
)
async def get_checkout(
    checkout_id: Annotated[str, Path(description="Checkout ID")],
    engine: Engine,
    user_id: CurrentUserId,
) -> CheckoutResponse:
    checkout = await engine.get_checkout(checkout_id)

    if checkout is None or checkout.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Checkout not found",
        )

    return CheckoutResponse.from_checkout(checkout)


@router.get(
    "/config/{parking_id}",
    response_model=ZoneConfigResponse,
    summary="Get lot configuration",
    description="Stored configuration, or a disabled default for lots never configured.",
)
async def get_zone_config(
    parking_id: Annotated[str, Path(description="Parking lot ID")],
    engine: Engine,
) -> ZoneConfigResponse:
    try:
        config, enabled = await engine.get_zone_config(parking_id)
    except PersistenceError as e:
        logger.error("zone_config_read_failed", parking_id=parking_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to get checkout configuration",
        )
    return ZoneConfigResponse.from_config(config, enabled)


@router.put(
    "/config/{parking_id}",
    response_model=ZoneConfigResponse,
    summary="Update lot configuration",
    description="Replace a lot's configuration and reload the registered zones. Admin only.",
)
async def update_zone_config(
    parking_id: Annotated[str, Path(description="Parking lot ID")],
    request: ZoneConfigUpdateRequest,
    engine: Engine,
    _: ApiKeyAuth,
) -> ZoneConfigResponse:
    try:
        config = ZoneConfig(
            parking_id=parking_id,
            method=request.method,
            exit_radius_meters=request.exit_radius,
            confirmation_delay_seconds=request.confirmation_delay,
            exit_zones=tuple(request.exit_zones),
            sensor_ids=frozenset(request.sensor_ids),
            grace_period_seconds=request.grace_period,
            notifications_enabled=request.notifications_enabled,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        await engine.update_zone_config(config, request.enabled)
    except PersistenceError as e:
        logger.error("zone_config_update_failed", parking_id=parking_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to update configuration",
        )

    return ZoneConfigResponse.from_config(config, request.enabled)


@router.get(
    "/health",
    response_model=EngineHealthResponse,
    tags=["health"],
)
async def engine_health(engine: Engine) -> EngineHealthResponse:
    """Liveness of the engine and size of its in-memory state."""
    return EngineHealthResponse(
        status="healthy" if engine.is_running else "stopped",
        engine_running=engine.is_running,
        zones=len(engine.registered_zones()),
        tracked_subjects=len(engine.tracker.tracked_subjects()),
    )
