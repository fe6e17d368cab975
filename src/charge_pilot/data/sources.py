"""Parallel, cache-backed fetch of the three automation inputs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Generic, TypeVar

from charge_pilot.config.schema import CacheConfig, UserConfig
from charge_pilot.data.cache import DataCache
from charge_pilot.errors import DataUnavailable
from charge_pilot.forecast.openmeteo import Location, WeatherData
from charge_pilot.hardware.base import Telemetry
from charge_pilot.resilience.health_check import HealthChecker
from charge_pilot.tariff.amber import PriceData

logger = logging.getLogger(__name__)

T = TypeVar("T")

TelemetryFetcher = Callable[[str], Awaitable[Telemetry]]
PriceFetcher = Callable[[str, datetime, datetime], Awaitable[PriceData]]
WeatherFetcher = Callable[[Location], Awaitable[WeatherData]]

PRICE_HORIZON = timedelta(hours=24)


class DataSource(str, Enum):
    TELEMETRY = "telemetry"
    PRICES = "prices"
    WEATHER = "weather"


@dataclass(frozen=True)
class SourceReading(Generic[T]):
    """Outcome of fetching one source: a value, or the reason there is none."""

    source: DataSource
    value: T | None = None
    error: str | None = None
    from_cache: bool = False
    stale: bool = False
    requested: bool = True

    @property
    def available(self) -> bool:
        return self.value is not None

    def require(self) -> T:
        """Return the value or raise ``DataUnavailable``."""
        if self.value is None:
            reason = self.error or ("not fetched" if not self.requested else "no data")
            raise DataUnavailable(self.source.value, reason)
        return self.value

    def describe(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "from_cache": self.from_cache,
            "stale": self.stale,
            "error": self.error,
        }


@dataclass(frozen=True)
class CycleData:
    """Everything the evaluators see for one cycle."""

    telemetry: SourceReading[Telemetry]
    prices: SourceReading[PriceData]
    weather: SourceReading[WeatherData]
    fetched_at: datetime | None = None
    diagnostics: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_values(
        cls,
        telemetry: Telemetry | None = None,
        prices: PriceData | None = None,
        weather: WeatherData | None = None,
    ) -> CycleData:
        """Build cycle data from already-known values (simulation and tests)."""
        return cls(
            telemetry=SourceReading(DataSource.TELEMETRY, value=telemetry),
            prices=SourceReading(DataSource.PRICES, value=prices),
            weather=SourceReading(DataSource.WEATHER, value=weather),
        )

    def describe(self) -> dict[str, Any]:
        return {
            DataSource.TELEMETRY.value: self.telemetry.describe(),
            DataSource.PRICES.value: self.prices.describe(),
            DataSource.WEATHER.value: self.weather.describe(),
        }


class DataSources:
    """Fetches telemetry, prices and weather through the shared cache."""

    def __init__(
        self,
        cache: DataCache,
        config: CacheConfig,
        fetch_telemetry: TelemetryFetcher,
        fetch_prices: PriceFetcher,
        fetch_weather: WeatherFetcher,
        location: Location,
        health: HealthChecker | None = None,
    ) -> None:
        self._cache = cache
        self._config = config
        self._fetch_telemetry = fetch_telemetry
        self._fetch_prices = fetch_prices
        self._fetch_weather = fetch_weather
        self._location = location
        self._health = health or HealthChecker()

    @property
    def health(self) -> HealthChecker:
        return self._health

    async def fetch_all(
        self,
        user: UserConfig,
        now: datetime,
        needed: set[DataSource] | None = None,
    ) -> CycleData:
        """Fetch the needed sources concurrently; failures become empty readings."""
        needed = set(DataSource) if needed is None else needed

        async def telemetry() -> Telemetry:
            return await self._fetch_telemetry(user.device_id)

        async def prices() -> PriceData:
            return await self._fetch_prices(user.site_id, now, now + PRICE_HORIZON)

        async def weather() -> WeatherData:
            return await self._fetch_weather(self._location)

        loc = self._location
        readings = await asyncio.gather(
            self._read(
                DataSource.TELEMETRY, f"telemetry:{user.device_id}", telemetry,
                self._config.telemetry_ttl_seconds, needed,
            ),
            self._read(
                DataSource.PRICES, f"prices:{user.site_id}", prices,
                self._config.price_ttl_seconds, needed,
            ),
            self._read(
                DataSource.WEATHER, f"weather:{loc.latitude:.4f},{loc.longitude:.4f}", weather,
                self._config.weather_ttl_seconds, needed,
            ),
        )
        return CycleData(
            telemetry=readings[0],
            prices=readings[1],
            weather=readings[2],
            fetched_at=now,
        )

    async def _read(
        self,
        source: DataSource,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: float,
        needed: set[DataSource],
    ) -> SourceReading:
        if source not in needed:
            return SourceReading(source, requested=False)
        try:
            result = await self._cache.get_cached(key, fetcher, ttl)
        except DataUnavailable as e:
            self._health.record_failure(source.value, str(e))
            return SourceReading(source, error=str(e))

        if result.stale:
            self._health.record_stale(source.value)
        elif not result.from_cache:
            self._health.record_success(source.value)
        return SourceReading(
            source, value=result.data, from_cache=result.from_cache, stale=result.stale,
        )
