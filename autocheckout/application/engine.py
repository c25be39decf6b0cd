"""
Auto-checkout engine.

Single owner of the zone registry, position tracker, checkout
coordinator and scheduler. The HTTP layer holds one instance and calls
only the methods below.
"""

from collections.abc import Sequence
from dataclasses import replace

from autocheckout.application.checkout_coordinator import CheckoutCoordinator
from autocheckout.application.ports import (
    CheckoutStore,
    Clock,
    NotificationSink,
    ParkingInventory,
    SensorEventLog,
    SystemClock,
    TicketStore,
    ZoneConfigStore,
)
from autocheckout.application.position_tracker import PositionTracker
from autocheckout.application.scheduler import AsyncioScheduler, Scheduler
from autocheckout.application.zone_registry import ZoneRegistry
from autocheckout.core.logging import get_logger
from autocheckout.domain.errors import PersistenceError
from autocheckout.domain.models import (
    Checkout,
    CheckoutHistoryEntry,
    IgnoreReason,
    Outcome,
    PositionSample,
    SensorEvent,
    ZoneConfig,
)
from autocheckout.domain.services import FareCalculator

logger = get_logger(__name__)


class AutoCheckoutEngine:
    """
    Facade over the auto-checkout subsystem.

    Example:
        engine = AutoCheckoutEngine(tickets, inventory, zones, checkouts, notifications)
        await engine.start()
        outcomes = await engine.track_position("user-1", PositionSample(18.48, -69.93))
        await engine.stop()
    """

    def __init__(
        self,
        ticket_store: TicketStore,
        inventory: ParkingInventory,
        zone_store: ZoneConfigStore,
        checkout_store: CheckoutStore,
        notifications: NotificationSink,
        sensor_log: SensorEventLog | None = None,
        scheduler: Scheduler | None = None,
        clock: Clock | None = None,
        hourly_rate: float = 100.0,
        history_max_samples: int = 50,
        history_retention_seconds: int = 2 * 60 * 60,
        cleanup_interval_seconds: int = 5 * 60,
        min_exit_samples: int = 3,
        default_exit_radius_meters: float = 100.0,
        default_confirmation_delay_seconds: int = 30,
    ):
        self._zone_store = zone_store
        self._sensor_log = sensor_log
        self._clock = clock or SystemClock()
        self._scheduler = scheduler or AsyncioScheduler()
        self._cleanup_interval = cleanup_interval_seconds
        self._default_radius = default_exit_radius_meters
        self._default_delay = default_confirmation_delay_seconds
        self._started = False

        self.zones = ZoneRegistry(zone_store)
        self.tracker = PositionTracker(
            ticket_store=ticket_store,
            zone_registry=self.zones,
            clock=self._clock,
            max_samples=history_max_samples,
            retention_seconds=history_retention_seconds,
            min_samples=min_exit_samples,
        )
        self.coordinator = CheckoutCoordinator(
            checkout_store=checkout_store,
            ticket_store=ticket_store,
            inventory=inventory,
            notifications=notifications,
            scheduler=self._scheduler,
            clock=self._clock,
            zone_registry=self.zones,
            fare_calculator=FareCalculator(hourly_rate=hourly_rate),
        )

    @property
    def is_running(self) -> bool:
        return self._started

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Load zones and start the periodic history sweep."""
        if self._started:
            return
        await self.zones.load()
        self._scheduler.every(self._cleanup_interval, self.maintenance_tick)
        self._started = True
        logger.info(
            "engine_started",
            zones=len(self.zones),
            cleanup_interval=self._cleanup_interval,
        )

    async def stop(self) -> None:
        """
        Stop all timers.

        Checkouts whose confirmation timer had not fired stay pending.
        """
        await self._scheduler.shutdown()
        self._started = False
        logger.info("engine_stopped")

    def maintenance_tick(self) -> int:
        return self.tracker.sweep()

    # -- exposed operations -------------------------------------------------

    async def track_position(self, subject_id: str, sample: PositionSample) -> list[Outcome]:
        """
        Record a position and initiate a checkout for every lot just left.

        Raises:
            ValidationError: If the subject id or sample is malformed.
        """
        requests = await self.tracker.record_position(subject_id, sample)
        if not requests:
            return [Outcome.ignored(IgnoreReason.NO_EXIT_DETECTED)]
        return [await self.coordinator.initiate(request) for request in requests]

    async def ingest_sensor_event(self, event: SensorEvent) -> Outcome:
        """Log the raw sensor event, then act on it if it is an exit."""
        if event.timestamp_ms is None:
            event = replace(event, timestamp_ms=self._clock.now())

        if self._sensor_log is not None:
            try:
                event_id = await self._sensor_log.record(event)
                logger.debug("sensor_event_recorded", event_id=event_id, sensor_id=event.sensor_id)
            except PersistenceError as e:
                logger.error("sensor_event_record_failed", sensor_id=event.sensor_id, error=str(e))

        return await self.coordinator.process_sensor_event(event)

    async def request_manual_checkout(self, ticket_id: str, user_id: str) -> Outcome:
        return await self.coordinator.process_manual_checkout(ticket_id, user_id)

    async def cancel_checkout(self, checkout_id: str, reason: str | None = None) -> Outcome:
        return await self.coordinator.cancel(checkout_id, reason)

    async def get_checkout_history(self, user_id: str, limit: int = 20) -> list[CheckoutHistoryEntry]:
        return await self.coordinator.history(user_id, limit)

    async def get_checkout(self, checkout_id: str) -> Checkout | None:
        return await self.coordinator.get_checkout(checkout_id)

    # -- zone configuration -------------------------------------------------

    async def get_zone_config(self, parking_id: str) -> tuple[ZoneConfig, bool]:
        """
        Stored configuration of a lot and whether it is enabled.

        Lots never configured get a disabled default.

        Raises:
            PersistenceError: If the config store cannot be read.
        """
        stored = await self._zone_store.get_config(parking_id)
        if stored is None:
            return self.default_zone_config(parking_id), False
        return stored

    async def update_zone_config(self, config: ZoneConfig, enabled: bool) -> int:
        """
        Save a lot's configuration and reload the registry.

        Returns:
            int: Number of zones registered after the reload.

        Raises:
            PersistenceError: If the config cannot be saved.
        """
        await self._zone_store.save_config(config, enabled)
        logger.info(
            "zone_config_updated",
            parking_id=config.parking_id,
            method=config.method.value,
            enabled=enabled,
        )
        return await self.zones.load()

    def default_zone_config(self, parking_id: str) -> ZoneConfig:
        return ZoneConfig(
            parking_id=parking_id,
            exit_radius_meters=self._default_radius,
            confirmation_delay_seconds=self._default_delay,
        )

    def registered_zones(self) -> Sequence[ZoneConfig]:
        return self.zones.all()
