"""
Per-subject position tracking and geofence exit detection.
"""

import threading
from collections import deque
from dataclasses import replace

from autocheckout.application.ports import Clock, TicketStore
from autocheckout.application.zone_registry import ZoneRegistry
from autocheckout.core.logging import get_logger
from autocheckout.domain.errors import PersistenceError, ValidationError
from autocheckout.domain.models import (
    CheckoutRequest,
    GeolocationMeta,
    PositionSample,
    ZoneMethod,
)
from autocheckout.domain.services import ExitDetector

logger = get_logger(__name__)

GEOLOCATION_METHODS = frozenset({ZoneMethod.GEOLOCATION, ZoneMethod.HYBRID})


class PositionTracker:
    """
    Keeps a bounded history of recent positions per subject and decides
    when a subject has left the lot of one of its active tickets.

    The history map is the only shared mutable state. It is guarded by a
    lock that is never held across an await: evaluation works on a
    snapshot copied out under the lock.

    Example:
        tracker = PositionTracker(ticket_store, registry, clock)
        requests = await tracker.record_position("user-1", PositionSample(18.48, -69.93))
    """

    def __init__(
        self,
        ticket_store: TicketStore,
        zone_registry: ZoneRegistry,
        clock: Clock,
        detector: ExitDetector | None = None,
        max_samples: int = 50,
        retention_seconds: int = 2 * 60 * 60,
        min_samples: int = 3,
    ):
        """
        Initialize the tracker.

        Args:
            ticket_store: Source of the subject's active tickets.
            zone_registry: Zone configuration per lot.
            clock: Time source for default timestamps and sweeps.
            detector: Exit rule, defaults to the two-window detector.
            max_samples: History cap per subject; oldest evicted first.
            retention_seconds: Age after which the sweep drops a sample.
            min_samples: Samples required before any exit decision.
        """
        self._ticket_store = ticket_store
        self._zone_registry = zone_registry
        self._clock = clock
        self._detector = detector or ExitDetector()
        self._max_samples = max_samples
        self._retention_ms = retention_seconds * 1000
        self._min_samples = max(min_samples, self._detector.min_samples)

        self._histories: dict[str, deque[PositionSample]] = {}
        self._lock = threading.Lock()

    def history(self, subject_id: str) -> list[PositionSample]:
        """Snapshot of a subject's history, oldest first."""
        with self._lock:
            return list(self._histories.get(subject_id, ()))

    def tracked_subjects(self) -> list[str]:
        with self._lock:
            return list(self._histories)

    def append(self, subject_id: str, sample: PositionSample) -> list[PositionSample]:
        """
        Validate and store a sample without evaluating exits.

        Returns:
            list: Snapshot of the subject's history after the append.

        Raises:
            ValidationError: If the subject id is empty or the sample malformed.
        """
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise ValidationError("Valid user ID is required")
        if not isinstance(sample, PositionSample):
            raise ValidationError("Position data is required and must be a position sample")

        if sample.timestamp_ms is None:
            sample = replace(sample, timestamp_ms=self._clock.now())

        with self._lock:
            history = self._histories.get(subject_id)
            if history is None:
                history = deque(maxlen=self._max_samples)
                self._histories[subject_id] = history
            history.append(sample)
            return list(history)

    async def record_position(
        self,
        subject_id: str,
        sample: PositionSample,
    ) -> list[CheckoutRequest]:
        """
        Store a sample and evaluate exits for the subject.

        Returns:
            list: Checkout requests for every lot the subject just left.

        Raises:
            ValidationError: If the subject id is empty or the sample malformed.
        """
        self.append(subject_id, sample)
        return await self.evaluate_exit(subject_id)

    async def evaluate_exit(self, subject_id: str) -> list[CheckoutRequest]:
        """
        Check every active ticket of the subject against its lot's geofence.

        Lookup failures are logged and yield no requests.
        """
        positions = self.history(subject_id)
        if len(positions) < self._min_samples:
            return []

        try:
            tickets = await self._ticket_store.find_active_tickets_for_subject(subject_id)
        except PersistenceError as e:
            logger.error("exit_evaluation_failed", subject_id=subject_id, error=str(e))
            return []

        requests: list[CheckoutRequest] = []
        for ticket in tickets:
            zone = self._zone_registry.find_by_method(ticket.parking_id, GEOLOCATION_METHODS)
            if zone is None:
                continue
            if ticket.parking_lat is None or ticket.parking_lng is None:
                logger.warning(
                    "lot_coordinates_missing",
                    parking_id=ticket.parking_id,
                    ticket_id=ticket.id,
                )
                continue

            exited = self._detector.has_exited(
                positions,
                ticket.parking_lat,
                ticket.parking_lng,
                zone.exit_radius_meters,
            )
            if not exited:
                continue

            logger.info(
                "geofence_exit_detected",
                subject_id=subject_id,
                ticket_id=ticket.id,
                parking_id=ticket.parking_id,
            )
            requests.append(
                CheckoutRequest(
                    ticket=ticket,
                    metadata=GeolocationMeta(
                        exit_position=positions[-1],
                        confirmation_delay_seconds=zone.confirmation_delay_seconds,
                    ),
                )
            )

        return requests

    def sweep(self) -> int:
        """
        Drop samples past the retention window and forget empty subjects.

        Returns:
            int: Number of subjects removed entirely.
        """
        cutoff = self._clock.now() - self._retention_ms
        removed = 0

        with self._lock:
            for subject_id in list(self._histories):
                history = self._histories[subject_id]
                kept = [pos for pos in history if pos.timestamp_ms > cutoff]
                if not kept:
                    del self._histories[subject_id]
                    removed += 1
                elif len(kept) != len(history):
                    self._histories[subject_id] = deque(kept, maxlen=self._max_samples)
            remaining = len(self._histories)

        logger.debug("tracking_sweep_completed", removed=removed, remaining=remaining)
        return removed
