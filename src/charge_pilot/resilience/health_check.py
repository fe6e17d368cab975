"""Upstream source health, as seen by the data layer.

A source is ``ok`` after a fresh fetch, ``stale`` while the cache papers
over failed fetches, and ``down`` when nothing usable came back. Stale and
down both count towards the consecutive-failure limit that marks a source
unhealthy in the status report.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class SourceState(str, Enum):
    OK = "ok"
    STALE = "stale"
    DOWN = "down"


@dataclass
class SourceHealth:
    name: str
    state: SourceState = SourceState.OK
    consecutive_failures: int = 0
    last_ok_at: datetime | None = None
    failing_since: datetime | None = None
    last_error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "last_ok_at": self.last_ok_at.isoformat() if self.last_ok_at else None,
            "failing_since": self.failing_since.isoformat() if self.failing_since else None,
            "last_error": self.last_error,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthChecker:
    """Per-source outcome tracking shared by every user's fetches."""

    def __init__(
        self,
        max_consecutive_failures: int = 3,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._limit = max_consecutive_failures
        self._clock = clock
        self._sources: dict[str, SourceHealth] = {}

    def _source(self, name: str) -> SourceHealth:
        return self._sources.setdefault(name, SourceHealth(name))

    def _unhealthy(self, source: SourceHealth) -> bool:
        return source.consecutive_failures >= self._limit

    def record_success(self, name: str) -> None:
        source = self._source(name)
        if self._unhealthy(source):
            logger.info(
                "Source %s back after %d failed fetch(es) since %s",
                name, source.consecutive_failures,
                source.failing_since.isoformat() if source.failing_since else "?",
            )
        source.state = SourceState.OK
        source.consecutive_failures = 0
        source.failing_since = None
        source.last_ok_at = self._clock()

    def record_stale(self, name: str, error: str = "") -> None:
        self._fail(name, SourceState.STALE, error or "serving stale cache")

    def record_failure(self, name: str, error: str = "") -> None:
        self._fail(name, SourceState.DOWN, error)

    def _fail(self, name: str, state: SourceState, error: str) -> None:
        source = self._source(name)
        if source.failing_since is None:
            source.failing_since = self._clock()
        source.state = state
        source.consecutive_failures += 1
        source.last_error = error
        if source.consecutive_failures == self._limit:
            logger.warning(
                "Source %s unhealthy: %d failed fetches in a row (%s, %s)",
                name, source.consecutive_failures, state.value, error,
            )

    def get_unhealthy(self) -> list[str]:
        return sorted(name for name, s in self._sources.items() if self._unhealthy(s))

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: s.to_dict() for name, s in sorted(self._sources.items())}
