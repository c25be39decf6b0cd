"""
Unit tests for the checkout state machine.

Tests initiation from every entry point, delayed confirmation,
cancellation and the failure paths of CheckoutCoordinator.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from autocheckout.application.checkout_coordinator import CheckoutCoordinator
from autocheckout.application.ports import CheckoutStore
from autocheckout.application.zone_registry import ZoneRegistry
from autocheckout.domain.errors import PersistenceError
from autocheckout.domain.models import (
    CheckoutMethod,
    CheckoutRequest,
    CheckoutStatus,
    GeolocationMeta,
    IgnoreReason,
    OutcomeKind,
    Parking,
    SensorEvent,
    TicketStatus,
    ZoneConfig,
    ZoneMethod,
)
from conftest import (
    LOT_ID,
    SENSOR_ID,
    SENSOR_LOT_ID,
    START_MS,
    FakeClock,
    InMemoryCheckoutStore,
    InMemoryTicketStore,
    RecordingScheduler,
    make_ticket,
    position_at,
)


def geolocation_request(ticket_id: str = "ticket-1", delay: int = 30) -> CheckoutRequest:
    return CheckoutRequest(
        ticket=make_ticket(id=ticket_id),
        metadata=GeolocationMeta(exit_position=position_at(170), confirmation_delay_seconds=delay),
    )


class TestManualCheckout:
    """Tests for the manual entry point."""

    @pytest.mark.asyncio
    async def test_completes_immediately(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
        ticket_store: InMemoryTicketStore,
        scheduler: RecordingScheduler,
        inventory: MagicMock,
        notifications: MagicMock,
    ):
        outcome = await coordinator.process_manual_checkout("ticket-1", "user-1")

        assert outcome.kind is OutcomeKind.INITIATED
        assert scheduler.delayed == []

        checkout = checkout_store.checkouts[outcome.checkout_id]
        assert checkout.status is CheckoutStatus.COMPLETED
        assert checkout.method is CheckoutMethod.MANUAL
        assert checkout.final_amount == 101.67
        assert checkout.completed_at_ms == START_MS
        assert checkout.metadata.requested_by == "user-1"

        assert ticket_store.tickets["ticket-1"].status == TicketStatus.COMPLETED.value
        assert ticket_store.final_amounts["ticket-1"] == 101.67
        inventory.increment_available.assert_awaited_once_with(LOT_ID)
        notifications.send.assert_awaited_once_with(
            "user-1",
            "Auto-checkout completed",
            "Your vehicle has left Downtown Garage. Total time: 61 minutes. Final amount: $101.67",
            "ticket-1",
        )

    @pytest.mark.asyncio
    async def test_used_ticket_is_ignored(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
        ticket_store: InMemoryTicketStore,
    ):
        """Test a manual checkout on a used ticket creates nothing and does not raise."""
        ticket_store.add(make_ticket(status=TicketStatus.USED.value))

        outcome = await coordinator.process_manual_checkout("ticket-1", "user-1")

        assert outcome.kind is OutcomeKind.IGNORED
        assert outcome.reason is IgnoreReason.TICKET_NOT_FOUND
        assert checkout_store.checkouts == {}

    @pytest.mark.asyncio
    async def test_other_users_ticket_is_ignored(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
    ):
        outcome = await coordinator.process_manual_checkout("ticket-1", "user-2")

        assert outcome.reason is IgnoreReason.TICKET_NOT_FOUND
        assert checkout_store.checkouts == {}

    @pytest.mark.asyncio
    async def test_double_tap_is_harmless(
        self,
        coordinator: CheckoutCoordinator,
        notifications: MagicMock,
    ):
        first = await coordinator.process_manual_checkout("ticket-1", "user-1")
        second = await coordinator.process_manual_checkout("ticket-1", "user-1")

        assert first.kind is OutcomeKind.INITIATED
        assert second.is_ignored
        assert notifications.send.await_count == 1


class TestDelayedConfirmation:
    """Tests for geolocation checkouts confirmed by a timer."""

    @pytest.mark.asyncio
    async def test_initiate_schedules_confirm(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
        scheduler: RecordingScheduler,
    ):
        outcome = await coordinator.initiate(geolocation_request())

        assert outcome.kind is OutcomeKind.INITIATED
        assert [delay for delay, _ in scheduler.delayed] == [30]
        checkout = checkout_store.checkouts[outcome.checkout_id]
        assert checkout.status is CheckoutStatus.PENDING
        assert checkout.initiated_at_ms == START_MS
        assert checkout.metadata.confirmation_delay_seconds == 30

    @pytest.mark.asyncio
    async def test_timer_completes_checkout(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
        scheduler: RecordingScheduler,
        clock: FakeClock,
        notifications: MagicMock,
    ):
        outcome = await coordinator.initiate(geolocation_request())
        clock.advance(30)

        [result] = await scheduler.fire_all()

        assert result.kind is OutcomeKind.COMPLETED
        assert result.details["final_amount"] == 102.5
        checkout = checkout_store.checkouts[outcome.checkout_id]
        assert checkout.status is CheckoutStatus.COMPLETED
        assert checkout.completed_at_ms == START_MS + 30_000
        message = notifications.send.await_args.args[2]
        assert "Total time: 62 minutes" in message

    @pytest.mark.asyncio
    async def test_zero_delay_confirms_inline(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
        scheduler: RecordingScheduler,
    ):
        outcome = await coordinator.initiate(geolocation_request(delay=0))

        assert scheduler.delayed == []
        assert checkout_store.checkouts[outcome.checkout_id].status is CheckoutStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_confirm_twice_is_idempotent(
        self,
        coordinator: CheckoutCoordinator,
        ticket_store: InMemoryTicketStore,
        notifications: MagicMock,
        inventory: MagicMock,
    ):
        outcome = await coordinator.initiate(geolocation_request())

        first = await coordinator.confirm(outcome.checkout_id)
        second = await coordinator.confirm(outcome.checkout_id)

        assert first.kind is OutcomeKind.COMPLETED
        assert second.kind is OutcomeKind.IGNORED
        assert second.reason is IgnoreReason.NOT_PENDING
        assert notifications.send.await_count == 1
        assert inventory.increment_available.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_confirms_settle_once(
        self,
        coordinator: CheckoutCoordinator,
        notifications: MagicMock,
    ):
        outcome = await coordinator.initiate(geolocation_request())

        results = await asyncio.gather(
            coordinator.confirm(outcome.checkout_id),
            coordinator.confirm(outcome.checkout_id),
        )

        kinds = sorted(r.kind.value for r in results)
        assert kinds == ["completed", "ignored"]
        assert notifications.send.await_count == 1

    @pytest.mark.asyncio
    async def test_duplicate_initiation_never_double_bills(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
        ticket_store: InMemoryTicketStore,
        scheduler: RecordingScheduler,
    ):
        """Test a second pending checkout for a closed ticket ends cancelled."""
        first = await coordinator.initiate(geolocation_request())
        second = await coordinator.initiate(geolocation_request())

        results = await scheduler.fire_all()

        assert [r.kind for r in results] == [OutcomeKind.COMPLETED, OutcomeKind.CANCELLED]
        assert results[1].reason is IgnoreReason.TICKET_NOT_ACTIVE
        assert checkout_store.checkouts[first.checkout_id].status is CheckoutStatus.COMPLETED
        stale = checkout_store.checkouts[second.checkout_id]
        assert stale.status is CheckoutStatus.CANCELLED
        assert stale.cancel_reason == "ticket_not_active"
        assert stale.final_amount is None

    @pytest.mark.asyncio
    async def test_unknown_checkout(self, coordinator: CheckoutCoordinator):
        outcome = await coordinator.confirm("checkout_missing")
        assert outcome.reason is IgnoreReason.CHECKOUT_NOT_FOUND


class TestCancel:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_pending_blocks_timer(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
        ticket_store: InMemoryTicketStore,
        scheduler: RecordingScheduler,
        notifications: MagicMock,
    ):
        outcome = await coordinator.initiate(geolocation_request())

        cancelled = await coordinator.cancel(outcome.checkout_id)
        [fired] = await scheduler.fire_all()

        assert cancelled.kind is OutcomeKind.CANCELLED
        assert fired.reason is IgnoreReason.NOT_PENDING
        checkout = checkout_store.checkouts[outcome.checkout_id]
        assert checkout.status is CheckoutStatus.CANCELLED
        assert checkout.cancel_reason == "user_cancelled"
        assert checkout.cancelled_at_ms == START_MS
        assert ticket_store.tickets["ticket-1"].is_active
        notifications.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_keeps_given_reason(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
    ):
        outcome = await coordinator.initiate(geolocation_request())

        await coordinator.cancel(outcome.checkout_id, "still_parked")

        assert checkout_store.checkouts[outcome.checkout_id].cancel_reason == "still_parked"

    @pytest.mark.asyncio
    async def test_cancel_completed_is_noop(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
    ):
        outcome = await coordinator.process_manual_checkout("ticket-1", "user-1")

        result = await coordinator.cancel(outcome.checkout_id)

        assert result.reason is IgnoreReason.NOT_PENDING
        checkout = checkout_store.checkouts[outcome.checkout_id]
        assert checkout.status is CheckoutStatus.COMPLETED
        assert checkout.cancelled_at_ms is None

    @pytest.mark.asyncio
    async def test_cancel_twice_is_noop(self, coordinator: CheckoutCoordinator):
        outcome = await coordinator.initiate(geolocation_request())

        await coordinator.cancel(outcome.checkout_id)
        again = await coordinator.cancel(outcome.checkout_id, "other")

        assert again.is_ignored

    @pytest.mark.asyncio
    async def test_cancel_unknown_is_noop(self, coordinator: CheckoutCoordinator):
        assert (await coordinator.cancel("checkout_missing")).is_ignored


class TestSensorEvents:
    """Tests for the sensor entry point."""

    @pytest.fixture(autouse=True)
    def sensor_lot_tickets(self, ticket_store: InMemoryTicketStore):
        ticket_store.add(
            make_ticket(
                id="ticket-s1",
                user_id="user-2",
                parking_id=SENSOR_LOT_ID,
                license_plate="ABC123",
                spot_number=7,
                start_time_ms=START_MS - 30 * 60_000,
            )
        )

    @pytest.mark.asyncio
    async def test_exit_by_plate_completes(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
    ):
        event = SensorEvent(SENSOR_ID, "exit", vehicle_id="ABC123", timestamp_ms=START_MS - 5)

        outcome = await coordinator.process_sensor_event(event)

        checkout = checkout_store.checkouts[outcome.checkout_id]
        assert checkout.method is CheckoutMethod.SENSOR
        assert checkout.ticket_id == "ticket-s1"
        assert checkout.status is CheckoutStatus.COMPLETED
        assert checkout.final_amount == 50.0
        assert checkout.metadata.to_payload() == {
            "sensorId": SENSOR_ID,
            "vehicleId": "ABC123",
            "timestamp": START_MS - 5,
        }

    @pytest.mark.asyncio
    async def test_exit_by_spot_number(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
    ):
        outcome = await coordinator.process_sensor_event(SensorEvent(SENSOR_ID, "exit", vehicle_id="7"))

        assert checkout_store.checkouts[outcome.checkout_id].ticket_id == "ticket-s1"
        assert checkout_store.checkouts[outcome.checkout_id].metadata.timestamp_ms == START_MS

    @pytest.mark.asyncio
    async def test_most_recent_ticket_wins(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
        ticket_store: InMemoryTicketStore,
    ):
        ticket_store.add(
            make_ticket(
                id="ticket-s2",
                user_id="user-2",
                parking_id=SENSOR_LOT_ID,
                license_plate="ABC123",
                start_time_ms=START_MS - 10 * 60_000,
            )
        )

        outcome = await coordinator.process_sensor_event(SensorEvent(SENSOR_ID, "exit", vehicle_id="ABC123"))

        assert checkout_store.checkouts[outcome.checkout_id].ticket_id == "ticket-s2"
        assert ticket_store.tickets["ticket-s1"].is_active

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event,reason",
        [
            (SensorEvent(SENSOR_ID, "enter", vehicle_id="ABC123"), IgnoreReason.NOT_EXIT_ACTION),
            (SensorEvent("SENSOR-UNKNOWN", "exit", vehicle_id="ABC123"), IgnoreReason.UNKNOWN_SENSOR),
            (SensorEvent(SENSOR_ID, "exit", vehicle_id="ZZZ999"), IgnoreReason.NO_MATCHING_TICKET),
            (SensorEvent(SENSOR_ID, "exit"), IgnoreReason.NO_MATCHING_TICKET),
        ],
    )
    async def test_noise_is_ignored(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
        event: SensorEvent,
        reason: IgnoreReason,
    ):
        outcome = await coordinator.process_sensor_event(event)

        assert outcome.is_ignored
        assert outcome.reason is reason
        assert checkout_store.checkouts == {}

    @pytest.mark.asyncio
    async def test_geolocation_lot_sensor_is_unknown(self, coordinator: CheckoutCoordinator):
        """Test a lot without sensor support never claims a sensor."""
        outcome = await coordinator.process_sensor_event(SensorEvent("CAM-1", "exit", vehicle_id="A123456"))
        assert outcome.reason is IgnoreReason.UNKNOWN_SENSOR


class TestFailures:
    """Tests for storage failures."""

    @pytest.mark.asyncio
    async def test_finalize_failure_marks_checkout_failed(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
        ticket_store: InMemoryTicketStore,
        inventory: MagicMock,
        notifications: MagicMock,
    ):
        """Test a failed confirm records the error and leaves the ticket active and unbilled."""
        checkout_store.finalize = AsyncMock(side_effect=PersistenceError("write failed"))
        outcome = await coordinator.initiate(geolocation_request())

        result = await coordinator.confirm(outcome.checkout_id)

        assert result.kind is OutcomeKind.FAILED
        assert result.error == "write failed"
        checkout = checkout_store.checkouts[outcome.checkout_id]
        assert checkout.status is CheckoutStatus.FAILED
        assert checkout.error_message == "write failed"
        assert ticket_store.tickets["ticket-1"].is_active
        assert ticket_store.final_amounts == {}
        inventory.increment_available.assert_not_awaited()
        notifications.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_checkout_can_be_retried_manually(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
        ticket_store: InMemoryTicketStore,
    ):
        checkout_store.finalize = AsyncMock(side_effect=PersistenceError("write failed"))
        await coordinator.process_manual_checkout("ticket-1", "user-1")

        del checkout_store.finalize
        retry = await coordinator.process_manual_checkout("ticket-1", "user-1")

        assert retry.kind is OutcomeKind.INITIATED
        assert not ticket_store.tickets["ticket-1"].is_active

    @pytest.mark.asyncio
    async def test_cancel_during_confirm_leaves_ticket_unbilled(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
        ticket_store: InMemoryTicketStore,
        inventory: MagicMock,
        notifications: MagicMock,
    ):
        """Test a cancel landing after the ticket lookup wins over the confirm."""
        outcome = await coordinator.initiate(geolocation_request())
        lookup = ticket_store.find_active_ticket

        async def lookup_then_cancel(ticket_id):
            ticket = await lookup(ticket_id)
            await coordinator.cancel(outcome.checkout_id)
            return ticket

        ticket_store.find_active_ticket = lookup_then_cancel
        result = await coordinator.confirm(outcome.checkout_id)

        assert result.kind is OutcomeKind.IGNORED
        assert result.reason is IgnoreReason.NOT_PENDING
        checkout = checkout_store.checkouts[outcome.checkout_id]
        assert checkout.status is CheckoutStatus.CANCELLED
        assert checkout.cancel_reason == "user_cancelled"
        assert ticket_store.tickets["ticket-1"].is_active
        assert ticket_store.final_amounts == {}
        inventory.increment_available.assert_not_awaited()
        notifications.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_failure_abandons_initiation(
        self,
        ticket_store: InMemoryTicketStore,
        inventory: MagicMock,
        notifications: MagicMock,
        scheduler: RecordingScheduler,
        clock: FakeClock,
        zone_registry: ZoneRegistry,
    ):
        store = MagicMock(spec=CheckoutStore)
        store.create.side_effect = PersistenceError("insert failed")
        coordinator = CheckoutCoordinator(
            store, ticket_store, inventory, notifications, scheduler, clock, zone_registry
        )

        outcome = await coordinator.initiate(geolocation_request())

        assert outcome.kind is OutcomeKind.FAILED
        assert scheduler.delayed == []
        assert ticket_store.tickets["ticket-1"].is_active

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_checkout(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
        notifications: MagicMock,
        inventory: MagicMock,
    ):
        notifications.send.side_effect = PersistenceError("inbox full")
        inventory.increment_available.side_effect = PersistenceError("locked")

        outcome = await coordinator.process_manual_checkout("ticket-1", "user-1")

        assert checkout_store.checkouts[outcome.checkout_id].status is CheckoutStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_history_failure_is_empty(
        self,
        ticket_store: InMemoryTicketStore,
        inventory: MagicMock,
        notifications: MagicMock,
        scheduler: RecordingScheduler,
        clock: FakeClock,
        zone_registry: ZoneRegistry,
    ):
        store = MagicMock(spec=CheckoutStore)
        store.history.side_effect = PersistenceError("timeout")
        store.get.side_effect = PersistenceError("timeout")
        coordinator = CheckoutCoordinator(
            store, ticket_store, inventory, notifications, scheduler, clock, zone_registry
        )

        assert await coordinator.history("user-1") == []
        assert await coordinator.get_checkout("checkout_1") is None
        assert (await coordinator.confirm("checkout_1")).kind is OutcomeKind.FAILED


class TestNotifications:
    """Tests for the completion notification."""

    @pytest.mark.asyncio
    async def test_disabled_for_lot(
        self,
        zone_store: MagicMock,
        ticket_store: InMemoryTicketStore,
        checkout_store: InMemoryCheckoutStore,
        inventory: MagicMock,
        notifications: MagicMock,
        scheduler: RecordingScheduler,
        clock: FakeClock,
    ):
        zone_store.load_enabled_zones.return_value = [
            ZoneConfig(parking_id=LOT_ID, method=ZoneMethod.GEOLOCATION, notifications_enabled=False)
        ]
        registry = ZoneRegistry(zone_store)
        await registry.load()
        coordinator = CheckoutCoordinator(
            checkout_store, ticket_store, inventory, notifications, scheduler, clock, registry
        )

        outcome = await coordinator.process_manual_checkout("ticket-1", "user-1")

        assert checkout_store.checkouts[outcome.checkout_id].status is CheckoutStatus.COMPLETED
        notifications.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_falls_back_to_lot_id(
        self,
        coordinator: CheckoutCoordinator,
        ticket_store: InMemoryTicketStore,
        notifications: MagicMock,
    ):
        ticket_store.add(make_ticket(parking_name=None))

        await coordinator.process_manual_checkout("ticket-1", "user-1")

        assert f"has left {LOT_ID}." in notifications.send.await_args.args[2]

    @pytest.mark.asyncio
    async def test_uses_lot_name_from_inventory(
        self,
        coordinator: CheckoutCoordinator,
        ticket_store: InMemoryTicketStore,
        inventory: MagicMock,
        notifications: MagicMock,
    ):
        ticket_store.add(make_ticket(parking_name=None))
        inventory.get_parking.return_value = Parking(
            id=LOT_ID, name="Harbor Lot", lat=18.4861, lng=-69.9312
        )

        await coordinator.process_manual_checkout("ticket-1", "user-1")

        inventory.get_parking.assert_awaited_once_with(LOT_ID)
        assert "has left Harbor Lot." in notifications.send.await_args.args[2]

    @pytest.mark.asyncio
    async def test_any_sink_error_is_contained(
        self,
        coordinator: CheckoutCoordinator,
        checkout_store: InMemoryCheckoutStore,
        notifications: MagicMock,
    ):
        """Test a sink raising something other than a storage error still completes."""
        notifications.send.side_effect = RuntimeError("smtp down")

        outcome = await coordinator.process_manual_checkout("ticket-1", "user-1")

        assert outcome.kind is OutcomeKind.INITIATED
        assert checkout_store.checkouts[outcome.checkout_id].status is CheckoutStatus.COMPLETED


@pytest.mark.asyncio
async def test_history_newest_first(coordinator: CheckoutCoordinator, clock: FakeClock, ticket_store):
    ticket_store.add(make_ticket(id="ticket-2"))
    first = await coordinator.process_manual_checkout("ticket-1", "user-1")
    clock.advance(60)
    second = await coordinator.process_manual_checkout("ticket-2", "user-1")

    history = await coordinator.history("user-1", limit=20)

    assert [e.checkout.id for e in history] == [second.checkout_id, first.checkout_id]
    assert await coordinator.history("user-1", limit=1) == history[:1]
