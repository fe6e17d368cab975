"""Tests for the Amber price fetcher."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from charge_pilot.config.schema import TariffProviderConfig
from charge_pilot.errors import DataUnavailable
from charge_pilot.tariff.amber import INTERVAL, AmberPriceFetcher

NOW = datetime(2026, 3, 1, 10, 2, tzinfo=timezone.utc)


def _interval(start: datetime, channel: str, per_kwh: float, kind: str) -> dict:
    return {
        "type": kind,
        "channelType": channel,
        "perKwh": per_kwh,
        # Amber stamps intervals one second past the boundary
        "startTime": (start + timedelta(seconds=1)).strftime("%Y-%m-%dT%H:%M:%SZ"),
    }


def _response() -> list[dict]:
    current = NOW.replace(minute=0)
    data = [
        _interval(current, "general", 22.5, "CurrentInterval"),
        _interval(current, "feedIn", -6.0, "CurrentInterval"),
        _interval(current, "controlledLoad", 12.0, "CurrentInterval"),
    ]
    for i in range(1, 4):
        start = current + INTERVAL * i
        data.append(_interval(start, "general", 20.0 + i, "ForecastInterval"))
        data.append(_interval(start, "feedIn", -(5.0 + i), "ForecastInterval"))
    return data


class TestAmberParsing:
    def test_current_prices(self) -> None:
        prices = AmberPriceFetcher.parse_prices(_response(), NOW, NOW + timedelta(hours=24))
        assert prices.buy_now == 22.5
        assert prices.feed_in_now == 6.0

    def test_feed_in_negative_normalized_to_positive_revenue(self) -> None:
        prices = AmberPriceFetcher.parse_prices(_response(), NOW, NOW + timedelta(hours=24))
        assert [p.value for p in prices.feed_in_forecast.points] == [6.0, 6.0, 7.0, 8.0]

    def test_start_times_truncated_to_interval_boundary(self) -> None:
        prices = AmberPriceFetcher.parse_prices(_response(), NOW, NOW + timedelta(hours=24))
        first = prices.buy_forecast.points[0].timestamp
        assert first == NOW.replace(minute=0)
        assert first.second == 0

    def test_other_channels_ignored(self) -> None:
        prices = AmberPriceFetcher.parse_prices(_response(), NOW, NOW + timedelta(hours=24))
        assert 12.0 not in [p.value for p in prices.buy_forecast.points]

    def test_range_filter(self) -> None:
        prices = AmberPriceFetcher.parse_prices(_response(), NOW, NOW + timedelta(minutes=8))
        # Current interval (10:00) plus 10:05; 10:10 onwards is past the range
        assert len(prices.buy_forecast) == 2

    def test_missing_per_kwh_skipped(self) -> None:
        data = [{"type": "CurrentInterval", "channelType": "general", "startTime": "2026-03-01T10:00:01Z"}]
        prices = AmberPriceFetcher.parse_prices(data, NOW, NOW + timedelta(hours=1))
        assert prices.buy_now is None
        assert len(prices.buy_forecast) == 0


@pytest.mark.asyncio
class TestAmberFetcher:
    async def test_fetch_price_series(self) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=_response())

        config = TariffProviderConfig(api_key="psk_test", base_url="https://amber.test/v1")
        client = httpx.AsyncClient(
            base_url=config.base_url,
            headers={"Authorization": f"Bearer {config.api_key}"},
            transport=httpx.MockTransport(handler),
        )
        fetcher = AmberPriceFetcher(config, client=client)
        prices = await fetcher.fetch_price_series("site-1", NOW, NOW + timedelta(hours=24))
        await fetcher.close()

        assert seen["path"] == "/v1/sites/site-1/prices/current"
        assert seen["auth"] == "Bearer psk_test"
        assert prices.buy_now == 22.5

    async def test_missing_site_is_unavailable(self) -> None:
        fetcher = AmberPriceFetcher(
            TariffProviderConfig(),
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))),
        )
        with pytest.raises(DataUnavailable):
            await fetcher.fetch_price_series("", NOW, NOW + timedelta(hours=1))
        await fetcher.close()

    async def test_unexpected_shape_is_unavailable(self) -> None:
        client = httpx.AsyncClient(
            base_url="https://amber.test/v1",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"error": "x"})),
        )
        fetcher = AmberPriceFetcher(TariffProviderConfig(), client=client)
        with pytest.raises(DataUnavailable):
            await fetcher.fetch_price_series("site-1", NOW, NOW + timedelta(hours=1))
        await fetcher.close()
