"""Open-Meteo weather forecast fetcher.

Free, no authentication required.
API docs: https://open-meteo.com/en/docs
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import httpx

from charge_pilot.config.schema import WeatherProviderConfig
from charge_pilot.forecast.series import ForecastSeries

logger = logging.getLogger(__name__)

FORECAST_URL = "https://api.open-meteo.com/v1/forecast"

HOUR = timedelta(hours=1)


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class WeatherData:
    """Hourly solar radiation (W/m²) and cloud cover (%) series."""

    solar_radiation: ForecastSeries
    cloud_cover: ForecastSeries
    temperature_c: float | None = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class OpenMeteoWeatherFetcher:
    """Open-Meteo REST API weather fetcher."""

    def __init__(
        self,
        config: WeatherProviderConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=config.request_timeout_seconds)

    @property
    def default_location(self) -> Location:
        return Location(self._config.latitude, self._config.longitude)

    async def fetch_weather_forecast(self, location: Location) -> WeatherData:
        """Fetch the hourly forecast for ``location``."""
        params = {
            "latitude": location.latitude,
            "longitude": location.longitude,
            "hourly": "shortwave_radiation,cloud_cover",
            "current_weather": "true",
            "forecast_hours": self._config.forecast_hours,
            "timezone": "UTC",
        }
        resp = await self._client.get(FORECAST_URL, params=params)
        resp.raise_for_status()
        weather = self.parse_hourly(resp.json())
        logger.info(
            "Open-Meteo forecast fetched: %d radiation / %d cloud cover periods",
            len(weather.solar_radiation), len(weather.cloud_cover),
        )
        return weather

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def parse_hourly(data: dict) -> WeatherData:
        """Parse an Open-Meteo hourly response into series.

        Null entries (hours the model has not produced yet) are skipped.
        """
        fetched_at = datetime.now(timezone.utc)
        hourly = data.get("hourly", {})
        times = hourly.get("time", [])
        radiation = hourly.get("shortwave_radiation", [])
        clouds = hourly.get("cloud_cover", hourly.get("cloudcover", []))

        radiation_points: list[tuple[datetime, float]] = []
        cloud_points: list[tuple[datetime, float]] = []
        for i, time_str in enumerate(times):
            dt = datetime.fromisoformat(time_str).replace(tzinfo=timezone.utc)
            if i < len(radiation) and radiation[i] is not None:
                radiation_points.append((dt, radiation[i]))
            if i < len(clouds) and clouds[i] is not None:
                cloud_points.append((dt, clouds[i]))

        current = data.get("current_weather") or {}
        return WeatherData(
            solar_radiation=ForecastSeries.from_pairs(
                "solar_radiation", HOUR, radiation_points, fetched_at,
            ),
            cloud_cover=ForecastSeries.from_pairs("cloud_cover", HOUR, cloud_points, fetched_at),
            temperature_c=current.get("temperature"),
            fetched_at=fetched_at,
        )
