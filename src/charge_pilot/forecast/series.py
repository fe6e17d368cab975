"""Forecast series data model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone


@dataclass(frozen=True)
class ForecastPoint:
    """A single period of a forecast series, keyed by its start time (UTC)."""

    timestamp: datetime
    value: float


@dataclass(frozen=True)
class ForecastSeries:
    """Ordered fixed-period series of forecast values.

    ``anchor`` is when the series was fetched. Series are never mutated;
    a cache refresh replaces the whole object.
    """

    name: str
    period: timedelta
    points: tuple[ForecastPoint, ...] = ()
    anchor: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.period <= timedelta(0):
            raise ValueError("ForecastSeries period must be positive")
        ordered = tuple(sorted(self.points, key=lambda p: p.timestamp))
        object.__setattr__(self, "points", ordered)

    def __len__(self) -> int:
        return len(self.points)

    @classmethod
    def from_pairs(
        cls,
        name: str,
        period: timedelta,
        pairs: list[tuple[datetime, float]],
        anchor: datetime | None = None,
    ) -> ForecastSeries:
        points = tuple(ForecastPoint(timestamp=t, value=float(v)) for t, v in pairs)
        if anchor is None:
            return cls(name=name, period=period, points=points)
        return cls(name=name, period=period, points=points, anchor=anchor)
