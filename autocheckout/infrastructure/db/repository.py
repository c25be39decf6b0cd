"""
Repository implementations of the engine's collaborator interfaces.

Each call runs in its own short transaction opened from the session
factory. SQLAlchemy errors are re-raised as PersistenceError so the
engine can handle storage failures without knowing about SQLAlchemy.
"""

import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager

from sqlalchemy import String, cast, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

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
from autocheckout.core.logging import get_logger
from autocheckout.domain.errors import PersistenceError, ValidationError
from autocheckout.domain.models import (
    Checkout,
    CheckoutHistoryEntry,
    CheckoutMethod,
    CheckoutStatus,
    FinalizeResult,
    Parking,
    SensorEvent,
    Ticket,
    TicketStatus,
    ZoneConfig,
    ZoneMethod,
    metadata_from_payload,
)
from autocheckout.infrastructure.db.models import (
    AutoCheckoutConfigDB,
    AutoCheckoutDB,
    NotificationDB,
    ParkingDB,
    SensorEventDB,
    TicketDB,
    UserDB,
)

logger = get_logger(__name__)


class _TicketNotActive(Exception):
    """Raised inside a transaction to roll back a finalize."""


class _SqlRepository:
    """Shared session handling for the repositories below."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock | None = None,
    ):
        """
        Initialize repository with a session factory.

        Args:
            session_factory: Factory for async SQLAlchemy sessions.
            clock: Time source for audit columns.
        """
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e


class SqlTicketStore(_SqlRepository, TicketStore):
    """
    Ticket lookups joined with lot details and the owner's plate.
    """

    def _select_active(self):
        return (
            select(TicketDB, ParkingDB, UserDB.license_plate)
            .join(ParkingDB, TicketDB.parking_id == ParkingDB.id)
            .outerjoin(UserDB, TicketDB.user_id == UserDB.id)
            .where(TicketDB.status == TicketStatus.ACTIVE.value)
        )

    async def find_active_tickets_for_subject(self, subject_id: str) -> list[Ticket]:
        stmt = self._select_active().where(TicketDB.user_id == subject_id)
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [self._to_domain(*row) for row in result.all()]

    async def find_active_ticket(self, ticket_id: str) -> Ticket | None:
        stmt = self._select_active().where(TicketDB.id == ticket_id)
        return await self._first(stmt)

    async def find_active_ticket_for_user(self, ticket_id: str, user_id: str) -> Ticket | None:
        stmt = self._select_active().where(
            TicketDB.id == ticket_id,
            TicketDB.user_id == user_id,
        )
        return await self._first(stmt)

    async def find_active_ticket_by_vehicle(self, parking_id: str, vehicle_id: str) -> Ticket | None:
        """
        Match a sensor's vehicle identifier against plate or spot number.

        Several matches resolve to the most recently started ticket.
        """
        stmt = (
            self._select_active()
            .where(
                TicketDB.parking_id == parking_id,
                or_(
                    UserDB.license_plate == vehicle_id,
                    cast(TicketDB.spot_number, String) == vehicle_id,
                ),
            )
            .order_by(TicketDB.start_time.desc())
            .limit(1)
        )
        return await self._first(stmt)

    async def _first(self, stmt) -> Ticket | None:
        async with self._transaction() as session:
            result = await session.execute(stmt)
            row = result.first()
        if row is None:
            return None
        return self._to_domain(*row)

    def _to_domain(self, db_ticket: TicketDB, db_parking: ParkingDB, license_plate: str | None) -> Ticket:
        """Convert database rows to the domain ticket."""
        return Ticket(
            id=db_ticket.id,
            user_id=db_ticket.user_id,
            parking_id=db_ticket.parking_id,
            status=db_ticket.status,
            start_time_ms=db_ticket.start_time,
            end_time_ms=db_ticket.end_time,
            spot_number=db_ticket.spot_number,
            zone=db_ticket.zone,
            license_plate=license_plate,
            parking_name=db_parking.name,
            parking_lat=db_parking.lat,
            parking_lng=db_parking.lng,
        )


class SqlParkingInventory(_SqlRepository, ParkingInventory):
    async def increment_available(self, parking_id: str) -> None:
        """Free one spot, never exceeding the lot's total."""
        stmt = (
            update(ParkingDB)
            .where(
                ParkingDB.id == parking_id,
                ParkingDB.available_spots < ParkingDB.total_spots,
            )
            .values(available_spots=ParkingDB.available_spots + 1)
        )
        async with self._transaction() as session:
            await session.execute(stmt)

    async def get_parking(self, parking_id: str) -> Parking | None:
        async with self._transaction() as session:
            db_parking = await session.get(ParkingDB, parking_id)
            if db_parking is None:
                return None
            return Parking(
                id=db_parking.id,
                name=db_parking.name,
                lat=db_parking.lat,
                lng=db_parking.lng,
                total_spots=db_parking.total_spots,
                available_spots=db_parking.available_spots,
            )


class SqlZoneConfigStore(_SqlRepository, ZoneConfigStore):
    """
    Per-lot auto-checkout configuration.

    Rows that cannot be turned into a valid ZoneConfig are skipped with
    a warning instead of disabling every other lot.
    """

    async def load_enabled_zones(self) -> list[ZoneConfig]:
        stmt = select(AutoCheckoutConfigDB).where(AutoCheckoutConfigDB.enabled == True)
        async with self._transaction() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()

        configs = []
        for row in rows:
            try:
                configs.append(self._to_domain(row))
            except (ValidationError, ValueError, TypeError) as e:
                logger.warning("zone_config_invalid", parking_id=row.parking_id, error=str(e))
        return configs

    async def get_config(self, parking_id: str) -> tuple[ZoneConfig, bool] | None:
        async with self._transaction() as session:
            row = await session.get(AutoCheckoutConfigDB, parking_id)
            if row is None:
                return None
            return self._to_domain(row), row.enabled

    async def save_config(self, config: ZoneConfig, enabled: bool) -> None:
        now = self._clock.now()
        async with self._transaction() as session:
            row = await session.get(AutoCheckoutConfigDB, config.parking_id)
            if row is None:
                row = AutoCheckoutConfigDB(parking_id=config.parking_id, created_at=now)
                session.add(row)
            row.enabled = enabled
            row.method = config.method.value
            row.exit_radius = config.exit_radius_meters
            row.confirmation_delay = config.confirmation_delay_seconds
            row.exit_zones = list(config.exit_zones)
            row.sensor_ids = sorted(config.sensor_ids)
            row.grace_period = config.grace_period_seconds
            row.notifications_enabled = config.notifications_enabled
            row.updated_at = now

    def _to_domain(self, row: AutoCheckoutConfigDB) -> ZoneConfig:
        return ZoneConfig(
            parking_id=row.parking_id,
            method=ZoneMethod(row.method or ZoneMethod.GEOLOCATION.value),
            exit_radius_meters=float(row.exit_radius or 100.0),
            confirmation_delay_seconds=int(
                30 if row.confirmation_delay is None else row.confirmation_delay
            ),
            exit_zones=tuple(row.exit_zones or ()),
            sensor_ids=frozenset(str(s) for s in (row.sensor_ids or ())),
            grace_period_seconds=int(300 if row.grace_period is None else row.grace_period),
            notifications_enabled=bool(row.notifications_enabled),
        )


class SqlCheckoutStore(_SqlRepository, CheckoutStore):
    """
    Checkout rows.

    Transitions are UPDATE statements guarded on the pending status;
    the rowcount tells the caller whether it won. Completion also
    closes the ticket row in the same transaction.
    """

    async def create(self, checkout: Checkout) -> None:
        db_checkout = AutoCheckoutDB(
            id=checkout.id,
            ticket_id=checkout.ticket_id,
            user_id=checkout.user_id,
            parking_id=checkout.parking_id,
            method=checkout.method.value,
            status=checkout.status.value,
            initiated_at=checkout.initiated_at_ms,
            metadata_json=checkout.metadata.to_payload() if checkout.metadata else None,
        )
        async with self._transaction() as session:
            session.add(db_checkout)

    async def get(self, checkout_id: str) -> Checkout | None:
        async with self._transaction() as session:
            db_checkout = await session.get(AutoCheckoutDB, checkout_id)
            if db_checkout is None:
                return None
            return self._to_domain(db_checkout)

    async def finalize(
        self,
        checkout_id: str,
        ticket_id: str,
        completed_at_ms: int,
        final_amount: float,
    ) -> FinalizeResult:
        """
        Complete the checkout and close its ticket in one transaction.

        The checkout is claimed first; if the ticket is then found not
        active the claim is rolled back.
        """
        claim = (
            update(AutoCheckoutDB)
            .where(
                AutoCheckoutDB.id == checkout_id,
                AutoCheckoutDB.status == CheckoutStatus.PENDING.value,
            )
            .values(
                status=CheckoutStatus.COMPLETED.value,
                completed_at=completed_at_ms,
                final_amount=final_amount,
            )
        )
        close_ticket = (
            update(TicketDB)
            .where(
                TicketDB.id == ticket_id,
                TicketDB.status == TicketStatus.ACTIVE.value,
            )
            .values(
                status=TicketStatus.COMPLETED.value,
                used_at=completed_at_ms,
                actual_end_time=completed_at_ms,
                final_amount=final_amount,
            )
        )

        try:
            async with self._transaction() as session:
                claimed = await session.execute(claim)
                if claimed.rowcount == 0:
                    return FinalizeResult.NOT_PENDING
                closed = await session.execute(close_ticket)
                if closed.rowcount == 0:
                    raise _TicketNotActive(ticket_id)
        except _TicketNotActive:
            return FinalizeResult.TICKET_NOT_ACTIVE

        return FinalizeResult.COMPLETED

    async def mark_failed(self, checkout_id: str, error_message: str) -> bool:
        return await self._transition(
            checkout_id,
            status=CheckoutStatus.FAILED.value,
            error_message=error_message,
        )

    async def cancel(self, checkout_id: str, cancelled_at_ms: int, reason: str) -> bool:
        return await self._transition(
            checkout_id,
            status=CheckoutStatus.CANCELLED.value,
            cancelled_at=cancelled_at_ms,
            cancel_reason=reason,
        )

    async def history(self, user_id: str, limit: int) -> Sequence[CheckoutHistoryEntry]:
        stmt = (
            select(AutoCheckoutDB, ParkingDB.name, TicketDB.zone, TicketDB.spot_number)
            .join(ParkingDB, AutoCheckoutDB.parking_id == ParkingDB.id)
            .join(TicketDB, AutoCheckoutDB.ticket_id == TicketDB.id)
            .where(AutoCheckoutDB.user_id == user_id)
            .order_by(AutoCheckoutDB.initiated_at.desc())
            .limit(limit)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [
                CheckoutHistoryEntry(
                    checkout=self._to_domain(db_checkout),
                    parking_name=parking_name,
                    zone=zone,
                    spot_number=spot_number,
                )
                for db_checkout, parking_name, zone, spot_number in result.all()
            ]

    async def _transition(self, checkout_id: str, **values) -> bool:
        stmt = (
            update(AutoCheckoutDB)
            .where(
                AutoCheckoutDB.id == checkout_id,
                AutoCheckoutDB.status == CheckoutStatus.PENDING.value,
            )
            .values(**values)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount > 0

    def _to_domain(self, db_checkout: AutoCheckoutDB) -> Checkout:
        """Convert database model to domain model."""
        method = CheckoutMethod(db_checkout.method)
        metadata = None
        if db_checkout.metadata_json:
            try:
                metadata = metadata_from_payload(method, db_checkout.metadata_json)
            except (ValidationError, ValueError, TypeError) as e:
                logger.warning("checkout_metadata_unreadable", checkout_id=db_checkout.id, error=str(e))

        return Checkout(
            id=db_checkout.id,
            ticket_id=db_checkout.ticket_id,
            user_id=db_checkout.user_id,
            parking_id=db_checkout.parking_id,
            method=method,
            status=CheckoutStatus(db_checkout.status),
            initiated_at_ms=db_checkout.initiated_at,
            metadata=metadata,
            completed_at_ms=db_checkout.completed_at,
            cancelled_at_ms=db_checkout.cancelled_at,
            final_amount=db_checkout.final_amount,
            error_message=db_checkout.error_message,
            cancel_reason=db_checkout.cancel_reason,
        )


class SqlNotificationSink(_SqlRepository, NotificationSink):
    """Delivers notifications by storing them for the user's inbox."""

    NOTIFICATION_TYPE = "auto_checkout"

    async def send(self, user_id: str, title: str, message: str, related_id: str) -> None:
        notification = NotificationDB(
            id=f"notif_{uuid.uuid4().hex}",
            user_id=user_id,
            type=self.NOTIFICATION_TYPE,
            title=title,
            message=message,
            related_id=related_id,
            created_at=self._clock.now(),
        )
        async with self._transaction() as session:
            session.add(notification)


class SqlSensorEventLog(_SqlRepository, SensorEventLog):
    async def record(self, event: SensorEvent) -> str:
        event_id = f"sensor_{uuid.uuid4().hex}"
        db_event = SensorEventDB(
            id=event_id,
            sensor_id=event.sensor_id,
            event_type=event.action,
            vehicle_id=event.vehicle_id,
            timestamp=event.timestamp_ms if event.timestamp_ms is not None else self._clock.now(),
            confidence=event.confidence,
        )
        async with self._transaction() as session:
            session.add(db_event)
        return event_id
