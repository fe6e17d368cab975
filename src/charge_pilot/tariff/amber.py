"""Amber Electric price fetcher.

API docs: https://app.amber.com.au/developers/documentation/
Rate limit: 50 calls per 5 minutes. Bearer token auth.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import httpx

from charge_pilot.config.schema import TariffProviderConfig
from charge_pilot.errors import DataUnavailable
from charge_pilot.forecast.series import ForecastSeries
from charge_pilot.timezone_utils import ensure_utc

logger = logging.getLogger(__name__)

INTERVAL = timedelta(minutes=5)


@dataclass(frozen=True)
class PriceData:
    """Current prices plus forward forecast series for both channels (c/kWh).

    Feed-in values are what the user earns for exporting: positive means
    revenue, negative means exporting costs money.
    """

    buy_now: float | None
    feed_in_now: float | None
    buy_forecast: ForecastSeries
    feed_in_forecast: ForecastSeries
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AmberPriceFetcher:
    """Fetches current and forecast 5-minute prices for a site."""

    def __init__(
        self,
        config: TariffProviderConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            headers={"Authorization": f"Bearer {config.api_key}"},
            timeout=config.request_timeout_seconds,
        )

    async def fetch_price_series(
        self, site_id: str, from_time: datetime, to_time: datetime,
    ) -> PriceData:
        """Fetch prices covering [from_time, to_time)."""
        if not site_id:
            raise DataUnavailable("prices", "no Amber site configured")

        resp = await self._client.get(
            f"/sites/{site_id}/prices/current",
            params={
                "resolution": 5,
                "next": self._config.forecast_intervals,
                "previous": 0,
            },
        )
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, list):
            raise DataUnavailable("prices", "unexpected Amber response shape")

        prices = self.parse_prices(data, from_time, to_time)
        logger.info(
            "Amber prices fetched: buy=%s feedIn=%s forecast=%d/%d intervals",
            prices.buy_now, prices.feed_in_now,
            len(prices.buy_forecast), len(prices.feed_in_forecast),
        )
        return prices

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def parse_prices(
        data: list[dict], from_time: datetime, to_time: datetime,
    ) -> PriceData:
        """Split an Amber price list into current values and per-channel forecasts."""
        from_time = ensure_utc(from_time)
        to_time = ensure_utc(to_time)
        fetched_at = datetime.now(timezone.utc)

        buy_now: float | None = None
        feed_in_now: float | None = None
        buy_points: list[tuple[datetime, float]] = []
        feed_in_points: list[tuple[datetime, float]] = []

        for entry in data:
            channel = entry.get("channelType", "general")
            if channel not in ("general", "feedIn"):
                continue
            per_kwh = entry.get("perKwh")
            if per_kwh is None:
                continue
            # Amber reports feed-in as a cost; flip it to what the user earns
            price = -float(per_kwh) if channel == "feedIn" else float(per_kwh)

            interval_type = entry.get("type", "")
            if interval_type == "CurrentInterval":
                if channel == "general":
                    buy_now = price
                else:
                    feed_in_now = price

            start_str = entry.get("startTime", "")
            try:
                start = ensure_utc(datetime.fromisoformat(start_str.replace("Z", "+00:00")))
            except (ValueError, AttributeError) as e:
                logger.warning("Failed to parse Amber startTime %r: %s", start_str, e)
                continue
            # Amber's startTime is one second past the boundary
            start = start.replace(second=0, microsecond=0)
            if not (from_time - INTERVAL < start < to_time):
                continue

            target = buy_points if channel == "general" else feed_in_points
            target.append((start, price))

        return PriceData(
            buy_now=buy_now,
            feed_in_now=feed_in_now,
            buy_forecast=ForecastSeries.from_pairs("buy_price", INTERVAL, buy_points, fetched_at),
            feed_in_forecast=ForecastSeries.from_pairs(
                "feed_in_price", INTERVAL, feed_in_points, fetched_at,
            ),
            fetched_at=fetched_at,
        )
