"""Lookahead window resolution over forecast series.

A window always begins at the first period that starts strictly after
``now``. The period containing ``now`` is partially elapsed and is never
included, so aggregates are not biased by stale values.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from charge_pilot.errors import DataUnavailable
from charge_pilot.forecast.series import ForecastPoint, ForecastSeries
from charge_pilot.timezone_utils import ensure_utc

logger = logging.getLogger(__name__)


class LookAheadUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


_UNIT_DELTAS: dict[LookAheadUnit, timedelta] = {
    LookAheadUnit.MINUTES: timedelta(minutes=1),
    LookAheadUnit.HOURS: timedelta(hours=1),
    LookAheadUnit.DAYS: timedelta(days=1),
}


def lookahead_duration(amount: float, unit: LookAheadUnit | str) -> timedelta:
    """Convert an amount + unit into a duration."""
    return _UNIT_DELTAS[LookAheadUnit(unit)] * amount


@dataclass(frozen=True)
class WindowSlice:
    """The periods of a series covered by a lookahead window."""

    points: tuple[ForecastPoint, ...]
    requested_periods: int
    start: datetime
    end: datetime  # Requested end; may lie beyond the data when incomplete

    @property
    def complete(self) -> bool:
        return len(self.points) >= self.requested_periods

    @property
    def values(self) -> list[float]:
        return [p.value for p in self.points]

    def __len__(self) -> int:
        return len(self.points)


def resolve_window(
    series: ForecastSeries,
    now: datetime,
    amount: float,
    unit: LookAheadUnit | str,
) -> WindowSlice:
    """Slice ``series`` to the requested lookahead after ``now``.

    Returns a partial slice with ``complete=False`` when the series runs out
    before the requested range ends. Raises ``DataUnavailable`` when no
    period starts after ``now``.
    """
    if amount <= 0:
        raise ValueError(f"lookahead amount must be positive, got {amount}")

    now = ensure_utc(now)
    duration = lookahead_duration(amount, unit)
    requested = max(1, math.ceil(duration / series.period))

    upcoming = [p for p in series.points if ensure_utc(p.timestamp) > now]
    if not upcoming:
        raise DataUnavailable(series.name, "no forecast periods after now")

    start = ensure_utc(upcoming[0].timestamp)
    end = start + series.period * requested
    selected = tuple(p for p in upcoming if ensure_utc(p.timestamp) < end)

    window = WindowSlice(
        points=selected,
        requested_periods=requested,
        start=start,
        end=end,
    )
    if not window.complete:
        logger.debug(
            "Partial %s window: %d of %d periods available from %s",
            series.name, len(selected), requested, start.isoformat(),
        )
    return window
