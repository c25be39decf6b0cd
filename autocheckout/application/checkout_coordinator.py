"""
Checkout state machine.

Turns exit signals into pending checkouts, confirms them after the
lot's confirmation delay and settles each one into exactly one terminal
state:

    pending -> completed   ticket billed and closed
    pending -> failed      a mutation failed, ticket left active
    pending -> cancelled   user/operator abort, or the ticket was
                           already closed by the time the timer fired

Every transition is a guarded "pending -> X" write in the checkout
store, so concurrent confirms, or a confirm racing a cancel, settle on
a single outcome without in-memory locks. Completion claims the
checkout and closes the ticket in one store call that commits both or
neither.
"""

import math
import uuid
from collections.abc import Callable
from functools import partial

from autocheckout.application.ports import (
    CheckoutStore,
    Clock,
    NotificationSink,
    ParkingInventory,
    TicketStore,
)
from autocheckout.application.scheduler import Scheduler
from autocheckout.application.zone_registry import ZoneRegistry
from autocheckout.core.logging import get_logger
from autocheckout.domain.errors import PersistenceError
from autocheckout.domain.models import (
    Checkout,
    CheckoutHistoryEntry,
    CheckoutRequest,
    CheckoutStatus,
    FinalizeResult,
    IgnoreReason,
    ManualMeta,
    Outcome,
    SensorEvent,
    SensorMeta,
    Ticket,
)
from autocheckout.domain.services import FareCalculator

logger = get_logger(__name__)

NOTIFICATION_TITLE = "Auto-checkout completed"
DEFAULT_CANCEL_REASON = "user_cancelled"


def generate_checkout_id() -> str:
    return f"checkout_{uuid.uuid4().hex}"


class CheckoutCoordinator:
    """
    Drives checkouts from initiation to their terminal state.

    Storage failures never escape: they are logged and reported as a
    failed Outcome, or recorded on the checkout itself during confirm.

    Example:
        coordinator = CheckoutCoordinator(checkouts, tickets, inventory, notifications,
                                          scheduler, clock, zone_registry)
        outcome = await coordinator.process_manual_checkout("ticket-1", "user-1")
    """

    def __init__(
        self,
        checkout_store: CheckoutStore,
        ticket_store: TicketStore,
        inventory: ParkingInventory,
        notifications: NotificationSink,
        scheduler: Scheduler,
        clock: Clock,
        zone_registry: ZoneRegistry,
        fare_calculator: FareCalculator | None = None,
        id_factory: Callable[[], str] = generate_checkout_id,
    ):
        self._checkouts = checkout_store
        self._tickets = ticket_store
        self._inventory = inventory
        self._notifications = notifications
        self._scheduler = scheduler
        self._clock = clock
        self._zones = zone_registry
        self._fare = fare_calculator or FareCalculator()
        self._new_id = id_factory

    # -- entry points -------------------------------------------------------

    async def process_sensor_event(self, event: SensorEvent) -> Outcome:
        """
        Open a checkout for the vehicle a sensor saw leaving.

        Anything other than a matched exit is ignored: non-exit actions,
        sensors no sensor-capable lot claims, and vehicles with no
        active ticket at that lot are all expected noise.
        """
        if not event.is_exit:
            return Outcome.ignored(IgnoreReason.NOT_EXIT_ACTION)

        zone = self._zones.find_by_sensor(event.sensor_id)
        if zone is None:
            logger.debug("sensor_not_registered", sensor_id=event.sensor_id)
            return Outcome.ignored(IgnoreReason.UNKNOWN_SENSOR)

        if not event.vehicle_id:
            return Outcome.ignored(IgnoreReason.NO_MATCHING_TICKET)

        try:
            ticket = await self._tickets.find_active_ticket_by_vehicle(
                zone.parking_id, event.vehicle_id
            )
        except PersistenceError as e:
            logger.error("sensor_ticket_lookup_failed", sensor_id=event.sensor_id, error=str(e))
            return Outcome.failed(str(e))

        if ticket is None:
            logger.debug(
                "sensor_exit_unmatched",
                sensor_id=event.sensor_id,
                vehicle_id=event.vehicle_id,
                parking_id=zone.parking_id,
            )
            return Outcome.ignored(IgnoreReason.NO_MATCHING_TICKET)

        metadata = SensorMeta(
            sensor_id=event.sensor_id,
            vehicle_id=event.vehicle_id,
            timestamp_ms=event.timestamp_ms or self._clock.now(),
        )
        return await self.initiate(CheckoutRequest(ticket=ticket, metadata=metadata))

    async def process_manual_checkout(self, ticket_id: str, user_id: str) -> Outcome:
        """
        Check out a ticket at its owner's request.

        A ticket that is missing, not owned by ``user_id`` or no longer
        active is ignored, so a double tap on "leave now" is harmless.
        """
        try:
            ticket = await self._tickets.find_active_ticket_for_user(ticket_id, user_id)
        except PersistenceError as e:
            logger.error("manual_ticket_lookup_failed", ticket_id=ticket_id, error=str(e))
            return Outcome.failed(str(e))

        if ticket is None:
            return Outcome.ignored(IgnoreReason.TICKET_NOT_FOUND)

        metadata = ManualMeta(requested_by=user_id, timestamp_ms=self._clock.now())
        return await self.initiate(CheckoutRequest(ticket=ticket, metadata=metadata))

    # -- state machine ------------------------------------------------------

    async def initiate(self, request: CheckoutRequest) -> Outcome:
        """
        Persist a pending checkout and schedule its confirmation.

        A positive confirmation delay defers ``confirm`` to a timer;
        zero confirms before returning.
        """
        ticket = request.ticket
        checkout = Checkout(
            id=self._new_id(),
            ticket_id=ticket.id,
            user_id=ticket.user_id,
            parking_id=ticket.parking_id,
            method=request.method,
            status=CheckoutStatus.PENDING,
            initiated_at_ms=self._clock.now(),
            metadata=request.metadata,
        )

        try:
            await self._checkouts.create(checkout)
        except PersistenceError as e:
            logger.error(
                "checkout_initiation_failed",
                ticket_id=ticket.id,
                method=request.method.value,
                error=str(e),
            )
            return Outcome.failed(str(e))

        delay = request.metadata.confirmation_delay_seconds
        logger.info(
            "checkout_initiated",
            checkout_id=checkout.id,
            ticket_id=ticket.id,
            method=request.method.value,
            confirmation_delay=delay,
        )

        if delay and delay > 0:
            self._scheduler.after(delay, partial(self.confirm, checkout.id))
        else:
            await self.confirm(checkout.id)

        return Outcome.initiated(checkout.id)

    async def confirm(self, checkout_id: str) -> Outcome:
        """
        Finalize a pending checkout: bill and close the ticket.

        Safe to call any number of times for the same id; only a
        checkout still pending is acted on.
        """
        try:
            checkout = await self._checkouts.get(checkout_id)
        except PersistenceError as e:
            logger.error("checkout_lookup_failed", checkout_id=checkout_id, error=str(e))
            return Outcome.failed(str(e), checkout_id)

        if checkout is None:
            return Outcome.ignored(IgnoreReason.CHECKOUT_NOT_FOUND, checkout_id)
        if not checkout.is_pending:
            return Outcome.ignored(IgnoreReason.NOT_PENDING, checkout_id)

        try:
            ticket = await self._tickets.find_active_ticket(checkout.ticket_id)
            if ticket is None:
                return await self._cancel_stale(checkout)

            end_time = self._clock.now()
            duration = self._fare.duration_minutes(ticket.start_time_ms, end_time)
            amount = self._fare.final_amount(duration)

            result = await self._checkouts.finalize(checkout_id, ticket.id, end_time, amount)
            if result is FinalizeResult.TICKET_NOT_ACTIVE:
                # Closed through another checkout between the lookup and the write
                return await self._cancel_stale(checkout)
            if result is FinalizeResult.NOT_PENDING:
                logger.warning(
                    "checkout_settled_during_confirm",
                    checkout_id=checkout_id,
                    ticket_id=ticket.id,
                )
                return Outcome.ignored(IgnoreReason.NOT_PENDING, checkout_id)
        except Exception as e:
            logger.error(
                "checkout_failed",
                checkout_id=checkout_id,
                ticket_id=checkout.ticket_id,
                error=str(e),
                exc_info=True,
            )
            await self._mark_failed(checkout_id, str(e))
            return Outcome.failed(str(e), checkout_id)

        logger.info(
            "checkout_completed",
            checkout_id=checkout_id,
            ticket_id=ticket.id,
            method=checkout.method.value,
            duration_minutes=round(duration, 2),
            final_amount=amount,
        )

        await self._release_spot(ticket)
        await self._notify(ticket, amount, duration)

        return Outcome.completed(checkout_id, amount)

    async def cancel(self, checkout_id: str, reason: str | None = None) -> Outcome:
        """
        Cancel a checkout that is still pending.

        Cancelling a settled or unknown checkout changes nothing.
        A timer already scheduled for it will find it not pending.
        """
        reason = reason or DEFAULT_CANCEL_REASON
        try:
            cancelled = await self._checkouts.cancel(checkout_id, self._clock.now(), reason)
        except PersistenceError as e:
            logger.error("checkout_cancel_failed", checkout_id=checkout_id, error=str(e))
            return Outcome.failed(str(e), checkout_id)

        if not cancelled:
            return Outcome.ignored(IgnoreReason.NOT_PENDING, checkout_id)

        logger.info("checkout_cancelled", checkout_id=checkout_id, reason=reason)
        return Outcome.cancelled(checkout_id)

    # -- queries ------------------------------------------------------------

    async def history(self, user_id: str, limit: int = 20) -> list[CheckoutHistoryEntry]:
        """Checkouts of a user, newest first; empty on read failure."""
        try:
            return list(await self._checkouts.history(user_id, limit))
        except PersistenceError as e:
            logger.error("checkout_history_failed", user_id=user_id, error=str(e))
            return []

    async def get_checkout(self, checkout_id: str) -> Checkout | None:
        try:
            return await self._checkouts.get(checkout_id)
        except PersistenceError as e:
            logger.error("checkout_lookup_failed", checkout_id=checkout_id, error=str(e))
            return None

    # -- helpers ------------------------------------------------------------

    async def _cancel_stale(self, checkout: Checkout) -> Outcome:
        reason = IgnoreReason.TICKET_NOT_ACTIVE
        cancelled = await self._checkouts.cancel(checkout.id, self._clock.now(), reason.value)
        logger.info(
            "checkout_superseded",
            checkout_id=checkout.id,
            ticket_id=checkout.ticket_id,
            cancelled=cancelled,
        )
        if not cancelled:
            return Outcome.ignored(IgnoreReason.NOT_PENDING, checkout.id)
        return Outcome.cancelled(checkout.id, reason)

    async def _mark_failed(self, checkout_id: str, error_message: str) -> None:
        try:
            await self._checkouts.mark_failed(checkout_id, error_message)
        except PersistenceError as e:
            logger.error("checkout_mark_failed_failed", checkout_id=checkout_id, error=str(e))

    async def _release_spot(self, ticket: Ticket) -> None:
        try:
            await self._inventory.increment_available(ticket.parking_id)
        except Exception as e:
            logger.error("spot_release_failed", parking_id=ticket.parking_id, error=str(e))

    async def _notify(self, ticket: Ticket, amount: float, duration: float) -> None:
        """Tell the owner their ticket was closed. Failures are only logged."""
        zone = self._zones.get(ticket.parking_id)
        if zone is not None and not zone.notifications_enabled:
            return

        try:
            parking_name = ticket.parking_name or await self._lot_name(ticket.parking_id)
            minutes = math.floor(duration + 0.5)
            message = (
                f"Your vehicle has left {parking_name}. "
                f"Total time: {minutes} minutes. Final amount: ${amount:.2f}"
            )
            await self._notifications.send(ticket.user_id, NOTIFICATION_TITLE, message, ticket.id)
        except Exception as e:
            logger.error(
                "checkout_notification_failed",
                ticket_id=ticket.id,
                error=str(e),
                exc_info=True,
            )

    async def _lot_name(self, parking_id: str) -> str:
        try:
            parking = await self._inventory.get_parking(parking_id)
        except PersistenceError as e:
            logger.warning("lot_lookup_failed", parking_id=parking_id, error=str(e))
            return parking_id
        return parking.name if parking is not None and parking.name else parking_id
