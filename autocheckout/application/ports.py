"""
Collaborator interfaces consumed by the engine.

The engine owns none of the persistence, inventory or delivery
mechanics. It talks to them through these abstract classes, which the
infrastructure layer implements on top of SQLAlchemy and tests replace
with mocks. Implementations raise PersistenceError on storage failure.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Sequence

from autocheckout.domain.models import (
    Checkout,
    CheckoutHistoryEntry,
    FinalizeResult,
    Parking,
    SensorEvent,
    Ticket,
    ZoneConfig,
)


class Clock(ABC):
    """Wall-clock source, injectable for deterministic tests."""

    @abstractmethod
    def now(self) -> int:
        """Current time in epoch milliseconds."""
        pass


class SystemClock(Clock):
    def now(self) -> int:
        return time.time_ns() // 1_000_000


class TicketStore(ABC):
    """Lookup of active parking tickets."""

    @abstractmethod
    async def find_active_tickets_for_subject(self, subject_id: str) -> list[Ticket]:
        """Active tickets owned by a user, joined with lot name and coordinates."""
        pass

    @abstractmethod
    async def find_active_ticket(self, ticket_id: str) -> Ticket | None:
        pass

    @abstractmethod
    async def find_active_ticket_for_user(self, ticket_id: str, user_id: str) -> Ticket | None:
        """Active ticket with exactly this id and owner."""
        pass

    @abstractmethod
    async def find_active_ticket_by_vehicle(self, parking_id: str, vehicle_id: str) -> Ticket | None:
        """
        Most recently started active ticket at a lot whose owner's
        license plate or whose spot number matches ``vehicle_id``.
        """
        pass


class ParkingInventory(ABC):
    @abstractmethod
    async def increment_available(self, parking_id: str) -> None:
        pass

    @abstractmethod
    async def get_parking(self, parking_id: str) -> Parking | None:
        pass


class ZoneConfigStore(ABC):
    @abstractmethod
    async def load_enabled_zones(self) -> list[ZoneConfig]:
        pass

    @abstractmethod
    async def get_config(self, parking_id: str) -> tuple[ZoneConfig, bool] | None:
        """Stored config and its enabled flag, or None if never configured."""
        pass

    @abstractmethod
    async def save_config(self, config: ZoneConfig, enabled: bool) -> None:
        pass


class NotificationSink(ABC):
    @abstractmethod
    async def send(self, user_id: str, title: str, message: str, related_id: str) -> None:
        pass


class CheckoutStore(ABC):
    """
    Persistence of Checkout rows.

    Every transition is guarded on ``status = pending`` and reports
    whether it actually happened.
    """

    @abstractmethod
    async def create(self, checkout: Checkout) -> None:
        pass

    @abstractmethod
    async def get(self, checkout_id: str) -> Checkout | None:
        pass

    @abstractmethod
    async def finalize(
        self,
        checkout_id: str,
        ticket_id: str,
        completed_at_ms: int,
        final_amount: float,
    ) -> FinalizeResult:
        """
        Complete a pending checkout and close its active ticket atomically.

        Both writes commit together or not at all, so a checkout that
        loses a race to a cancel never leaves its ticket billed.
        """
        pass

    @abstractmethod
    async def mark_failed(self, checkout_id: str, error_message: str) -> bool:
        pass

    @abstractmethod
    async def cancel(self, checkout_id: str, cancelled_at_ms: int, reason: str) -> bool:
        pass

    @abstractmethod
    async def history(self, user_id: str, limit: int) -> Sequence[CheckoutHistoryEntry]:
        """Checkouts of a user, newest first."""
        pass


class SensorEventLog(ABC):
    @abstractmethod
    async def record(self, event: SensorEvent) -> str:
        """Persist a raw sensor event and return its id."""
        pass
