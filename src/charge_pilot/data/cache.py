"""Single-flight TTL cache in front of the external data fetchers.

Concurrent callers for the same key share one in-flight fetch. When a
refresh fails, the last good value is served (flagged stale) for a grace
period past its TTL; with nothing usable cached, ``DataUnavailable`` is
raised rather than inventing a value.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from charge_pilot.errors import DataUnavailable, FetchTimeout
from charge_pilot.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry:
    value: Any
    stored_at: float  # monotonic seconds


@dataclass(frozen=True)
class CacheResult(Generic[T]):
    """A cached or freshly fetched value."""

    data: T
    from_cache: bool
    stale: bool = False
    age_seconds: float = 0.0


class DataCache:
    """Keyed TTL cache with at most one in-flight fetch per key."""

    def __init__(
        self,
        stale_grace_seconds: float = 3600.0,
        fetch_timeout_seconds: float | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._grace = stale_grace_seconds
        self._timeout = fetch_timeout_seconds
        self._retry = retry_policy or RetryPolicy(max_attempts=1)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    async def get_cached(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        ttl: float,
    ) -> CacheResult[T]:
        """Return the value for ``key``, fetching it if the cached copy has expired."""
        entry = self._entries.get(key)
        if entry is not None:
            age = self._clock() - entry.stored_at
            if age < ttl:
                return CacheResult(data=entry.value, from_cache=True, age_seconds=age)

        # No await between lookup and registration, so the event loop cannot
        # interleave a second caller here; the marker check is race-free.
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(key, fetcher))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        else:
            logger.debug("Joining in-flight fetch for %s", key)

        try:
            # Shielded so one caller giving up does not cancel the shared fetch
            value = await asyncio.shield(task)
            return CacheResult(data=value, from_cache=False)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._fallback(key, ttl, e)

    async def _refresh(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> T:
        async def attempt() -> T:
            if self._timeout is None:
                return await fetcher()
            try:
                return await asyncio.wait_for(fetcher(), timeout=self._timeout)
            except asyncio.TimeoutError as e:
                raise FetchTimeout(key, f"no response within {self._timeout:.0f}s") from e

        value = await retry_async(attempt, self._retry, description=f"fetch {key}")
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())
        return value

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the exception retrieved; callers handle it via _fallback
            task.exception()

    def _fallback(self, key: str, ttl: float, error: Exception) -> CacheResult:
        entry = self._entries.get(key)
        if entry is not None:
            age = self._clock() - entry.stored_at
            if age < ttl + self._grace:
                logger.warning(
                    "Fetch for %s failed (%s); serving stale value aged %.0fs",
                    key, error, age,
                )
                return CacheResult(data=entry.value, from_cache=True, stale=True, age_seconds=age)
        logger.warning("Fetch for %s failed with no usable cache: %s", key, error)
        if isinstance(error, DataUnavailable):
            raise error
        raise DataUnavailable(key, str(error)) from error
