"""
Domain services for exit detection and billing.

These services contain pure business logic with no infrastructure
dependencies. They can be easily unit tested.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import ClassVar

from autocheckout.domain.models import PositionSample

EARTH_RADIUS_METERS = 6_371_000.0

MS_PER_MINUTE = 60_000


def distance_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Great-circle distance between two points using the Haversine formula.

    NaN inputs propagate to a NaN result; callers validate upstream.

    Example:
        >>> round(distance_meters(0.0, 0.0, 0.0, 1.0))
        111195
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(delta_phi / 2) * math.sin(delta_phi / 2)
        + math.cos(phi1) * math.cos(phi2)
        * math.sin(delta_lambda / 2) * math.sin(delta_lambda / 2)
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


@dataclass
class ExitDetector:
    """
    Decides whether a position history shows a vehicle leaving a lot.

    Uses two windows over the most recent samples:

    - the last 3 samples must all be farther than the exit radius
      ("currently outside"), and
    - at least one of the 2 samples immediately before them must be
      within the radius ("was inside").

    Both must hold. A single noisy fix cannot satisfy the first window,
    and a subject that was never seen inside cannot satisfy the second.

    Example:
        >>> detector = ExitDetector()
        >>> detector.has_exited(history, lot_lat, lot_lng, exit_radius=100)
        True
    """

    RECENT_WINDOW: ClassVar[int] = 3
    EARLIER_WINDOW: ClassVar[int] = 2

    @property
    def min_samples(self) -> int:
        return self.RECENT_WINDOW

    def is_outside(
        self,
        sample: PositionSample,
        lot_lat: float,
        lot_lng: float,
        exit_radius: float,
    ) -> bool:
        return distance_meters(sample.lat, sample.lng, lot_lat, lot_lng) > exit_radius

    def has_exited(
        self,
        positions: Sequence[PositionSample],
        lot_lat: float,
        lot_lng: float,
        exit_radius: float,
    ) -> bool:
        """
        Apply the two-window exit rule.

        Args:
            positions: Samples in arrival order, most recent last.
            lot_lat: Latitude of the lot center.
            lot_lng: Longitude of the lot center.
            exit_radius: Radius in meters around the lot center.

        Returns:
            bool: True only for an observed inside-to-outside transition.
        """
        if len(positions) < self.RECENT_WINDOW:
            return False

        recent = positions[-self.RECENT_WINDOW:]
        currently_outside = all(
            self.is_outside(pos, lot_lat, lot_lng, exit_radius) for pos in recent
        )
        if not currently_outside:
            return False

        window = self.RECENT_WINDOW + self.EARLIER_WINDOW
        if len(positions) < window:
            return False

        earlier = positions[-window:-self.RECENT_WINDOW]
        return any(
            not self.is_outside(pos, lot_lat, lot_lng, exit_radius) for pos in earlier
        )


@dataclass
class FareCalculator:
    """
    Computes the final charge of a parking session.

    A flat hourly rate, charged per minute and rounded up to the next
    currency minor unit.

    Attributes:
        hourly_rate: Charge per hour of parking.

    Example:
        >>> FareCalculator(hourly_rate=100).final_amount(61)
        101.67
    """

    hourly_rate: float = 100.0

    def duration_minutes(self, start_time_ms: int, end_time_ms: int) -> float:
        return (end_time_ms - start_time_ms) / MS_PER_MINUTE

    def final_amount(self, duration_minutes: float) -> float:
        """
        Charge for a duration, rounded up to the nearest minor unit.

        Args:
            duration_minutes: Session length in minutes.

        Returns:
            float: ``ceil(duration / 60 * rate * 100) / 100``.
        """
        return math.ceil(duration_minutes / 60 * self.hourly_rate * 100) / 100
