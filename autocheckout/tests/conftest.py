"""
Pytest configuration and fixtures.

Provides shared fixtures for testing including:
- A controllable clock and a scheduler that records timers
- In-memory ticket and checkout stores with guarded transitions
- Mocked inventory, notification and zone config collaborators
- An in-memory SQLite database for repository tests
"""

import math
from collections.abc import Sequence
from dataclasses import replace
from typing import AsyncIterator
from unittest.mock import MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autocheckout.application.checkout_coordinator import CheckoutCoordinator
from autocheckout.application.ports import (
    CheckoutStore,
    Clock,
    NotificationSink,
    ParkingInventory,
    TicketStore,
    ZoneConfigStore,
)
from autocheckout.application.scheduler import Callback, Scheduler
from autocheckout.application.zone_registry import ZoneRegistry
from autocheckout.domain.models import (
    Checkout,
    CheckoutHistoryEntry,
    CheckoutStatus,
    FinalizeResult,
    PositionSample,
    Ticket,
    TicketStatus,
    ZoneConfig,
    ZoneMethod,
)
from autocheckout.domain.services import EARTH_RADIUS_METERS
from autocheckout.infrastructure.db.session import (
    create_test_engine,
    init_db,
    make_session_factory,
)

START_MS = 1_700_000_000_000

LOT_ID = "parking-1"
LOT_LAT = 18.4861
LOT_LNG = -69.9312

SENSOR_LOT_ID = "parking-2"
SENSOR_ID = "SENSOR-EXIT-01"

METERS_PER_DEGREE = EARTH_RADIUS_METERS * math.pi / 180


def position_at(meters_north: float, timestamp_ms: int | None = None) -> PositionSample:
    """Sample ``meters_north`` of the test lot's center."""
    return PositionSample(
        lat=LOT_LAT + meters_north / METERS_PER_DEGREE,
        lng=LOT_LNG,
        timestamp_ms=timestamp_ms,
    )


def make_ticket(**overrides) -> Ticket:
    values = dict(
        id="ticket-1",
        user_id="user-1",
        parking_id=LOT_ID,
        status=TicketStatus.ACTIVE.value,
        start_time_ms=START_MS - 61 * 60_000,
        spot_number=12,
        zone="A",
        license_plate="A123456",
        parking_name="Downtown Garage",
        parking_lat=LOT_LAT,
        parking_lng=LOT_LNG,
    )
    values.update(overrides)
    return Ticket(**values)


class FakeClock(Clock):
    def __init__(self, now_ms: int = START_MS):
        self.now_ms = now_ms

    def now(self) -> int:
        return self.now_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)


class RecordingScheduler(Scheduler):
    """Records timers instead of running them; tests fire them explicitly."""

    def __init__(self):
        self.delayed: list[tuple[float, Callback]] = []
        self.periodic: list[tuple[float, Callback]] = []
        self.shut_down = False

    def after(self, delay_seconds: float, callback: Callback) -> None:
        self.delayed.append((delay_seconds, callback))

    def every(self, interval_seconds: float, callback: Callback) -> None:
        self.periodic.append((interval_seconds, callback))

    async def shutdown(self) -> None:
        self.shut_down = True

    async def fire_all(self) -> list:
        """Run and forget every recorded one-shot timer."""
        pending, self.delayed = self.delayed, []
        results = []
        for _, callback in pending:
            results.append(await callback())
        return results


class InMemoryTicketStore(TicketStore):
    def __init__(self, tickets: Sequence[Ticket] = ()):
        self.tickets: dict[str, Ticket] = {t.id: t for t in tickets}
        self.final_amounts: dict[str, float] = {}

    def add(self, ticket: Ticket) -> None:
        self.tickets[ticket.id] = ticket

    async def find_active_tickets_for_subject(self, subject_id: str) -> list[Ticket]:
        return [t for t in self.tickets.values() if t.user_id == subject_id and t.is_active]

    async def find_active_ticket(self, ticket_id: str) -> Ticket | None:
        ticket = self.tickets.get(ticket_id)
        return ticket if ticket is not None and ticket.is_active else None

    async def find_active_ticket_for_user(self, ticket_id: str, user_id: str) -> Ticket | None:
        ticket = await self.find_active_ticket(ticket_id)
        return ticket if ticket is not None and ticket.user_id == user_id else None

    async def find_active_ticket_by_vehicle(self, parking_id: str, vehicle_id: str) -> Ticket | None:
        matches = [
            t
            for t in self.tickets.values()
            if t.parking_id == parking_id
            and t.is_active
            and (t.license_plate == vehicle_id or str(t.spot_number) == vehicle_id)
        ]
        return max(matches, key=lambda t: t.start_time_ms, default=None)

    def close(self, ticket_id: str, end_time_ms: int, final_amount: float) -> None:
        ticket = self.tickets[ticket_id]
        self.tickets[ticket_id] = replace(
            ticket, status=TicketStatus.COMPLETED.value, end_time_ms=end_time_ms
        )
        self.final_amounts[ticket_id] = final_amount


class InMemoryCheckoutStore(CheckoutStore):
    """Checkout rows sharing a ticket store, as both tables share a database."""

    def __init__(self, ticket_store: InMemoryTicketStore):
        self.checkouts: dict[str, Checkout] = {}
        self.ticket_store = ticket_store

    async def create(self, checkout: Checkout) -> None:
        self.checkouts[checkout.id] = replace(checkout)

    async def get(self, checkout_id: str) -> Checkout | None:
        checkout = self.checkouts.get(checkout_id)
        return replace(checkout) if checkout is not None else None

    async def finalize(
        self,
        checkout_id: str,
        ticket_id: str,
        completed_at_ms: int,
        final_amount: float,
    ) -> FinalizeResult:
        checkout = self.checkouts.get(checkout_id)
        if checkout is None or not checkout.is_pending:
            return FinalizeResult.NOT_PENDING
        ticket = self.ticket_store.tickets.get(ticket_id)
        if ticket is None or not ticket.is_active:
            return FinalizeResult.TICKET_NOT_ACTIVE

        self._transition(
            checkout_id,
            status=CheckoutStatus.COMPLETED,
            completed_at_ms=completed_at_ms,
            final_amount=final_amount,
        )
        self.ticket_store.close(ticket_id, completed_at_ms, final_amount)
        return FinalizeResult.COMPLETED

    async def mark_failed(self, checkout_id: str, error_message: str) -> bool:
        return self._transition(checkout_id, status=CheckoutStatus.FAILED, error_message=error_message)

    async def cancel(self, checkout_id: str, cancelled_at_ms: int, reason: str) -> bool:
        return self._transition(
            checkout_id,
            status=CheckoutStatus.CANCELLED,
            cancelled_at_ms=cancelled_at_ms,
            cancel_reason=reason,
        )

    async def history(self, user_id: str, limit: int) -> list[CheckoutHistoryEntry]:
        mine = [c for c in self.checkouts.values() if c.user_id == user_id]
        mine.sort(key=lambda c: c.initiated_at_ms, reverse=True)
        return [CheckoutHistoryEntry(checkout=replace(c)) for c in mine[:limit]]

    def _transition(self, checkout_id: str, **changes) -> bool:
        checkout = self.checkouts.get(checkout_id)
        if checkout is None or not checkout.is_pending:
            return False
        for name, value in changes.items():
            setattr(checkout, name, value)
        return True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def geolocation_zone() -> ZoneConfig:
    return ZoneConfig(
        parking_id=LOT_ID,
        method=ZoneMethod.GEOLOCATION,
        exit_radius_meters=100.0,
        confirmation_delay_seconds=30,
    )


@pytest.fixture
def sensor_zone() -> ZoneConfig:
    return ZoneConfig(
        parking_id=SENSOR_LOT_ID,
        method=ZoneMethod.SENSOR,
        sensor_ids=frozenset({SENSOR_ID}),
    )


@pytest.fixture
def zone_store(geolocation_zone: ZoneConfig, sensor_zone: ZoneConfig) -> MagicMock:
    """Create mock zone config store holding one geolocation and one sensor lot."""
    store = MagicMock(spec=ZoneConfigStore)
    store.load_enabled_zones.return_value = [geolocation_zone, sensor_zone]
    store.get_config.return_value = None
    return store


@pytest.fixture
async def zone_registry(zone_store: MagicMock) -> ZoneRegistry:
    registry = ZoneRegistry(zone_store)
    await registry.load()
    return registry


@pytest.fixture
def ticket_store() -> InMemoryTicketStore:
    return InMemoryTicketStore([make_ticket()])


@pytest.fixture
def checkout_store(ticket_store: InMemoryTicketStore) -> InMemoryCheckoutStore:
    return InMemoryCheckoutStore(ticket_store)


@pytest.fixture
def inventory() -> MagicMock:
    """Create mock parking inventory."""
    inventory = MagicMock(spec=ParkingInventory)
    inventory.get_parking.return_value = None
    return inventory


@pytest.fixture
def notifications() -> MagicMock:
    """Create mock notification sink."""
    return MagicMock(spec=NotificationSink)


@pytest.fixture
def coordinator(
    checkout_store: InMemoryCheckoutStore,
    ticket_store: InMemoryTicketStore,
    inventory: MagicMock,
    notifications: MagicMock,
    scheduler: RecordingScheduler,
    clock: FakeClock,
    zone_registry: ZoneRegistry,
) -> CheckoutCoordinator:
    return CheckoutCoordinator(
        checkout_store=checkout_store,
        ticket_store=ticket_store,
        inventory=inventory,
        notifications=notifications,
        scheduler=scheduler,
        clock=clock,
        zone_registry=zone_registry,
    )


@pytest.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Create a session factory over a fresh in-memory database."""
    engine = create_test_engine()
    await init_db(engine)

    yield make_session_factory(engine)

    await engine.dispose()
