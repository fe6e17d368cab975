"""Tests for the FoxESS Cloud scheduler client and device segments."""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from charge_pilot.config.schema import FoxESSCloudConfig
from charge_pilot.errors import DataUnavailable
from charge_pilot.hardware.base import DeviceClient, DeviceSegment, WorkMode
from charge_pilot.hardware.foxess_cloud import (
    FoxESSAPIError,
    FoxESSCloudClient,
    empty_group,
    generate_signature,
    group_to_segment,
    segment_to_group,
)

AEST = timezone(timedelta(hours=10))
START = datetime(2026, 3, 1, 4, 30, tzinfo=timezone.utc)  # 14:30 AEST


def _segment(**overrides) -> DeviceSegment:
    fields = dict(
        start_time=START,
        duration_minutes=45,
        target_power_w=5000,
        work_mode=WorkMode.FORCE_CHARGE,
        min_soc_on_grid=15,
        fd_soc=30,
        max_soc=95,
    )
    fields.update(overrides)
    return DeviceSegment(**fields)


class TestSignature:
    def test_literal_backslash_separators(self) -> None:
        expected = hashlib.md5(b"/op/v0/device/real/query\\r\\ntok\\r\\n1700000000000").hexdigest()
        assert generate_signature("/op/v0/device/real/query", "tok", 1700000000000) == expected

    def test_not_crlf_bytes(self) -> None:
        crlf = hashlib.md5(b"/p\r\ntok\r\n1").hexdigest()
        assert generate_signature("/p", "tok", 1) != crlf


class TestDeviceSegment:
    def test_start_truncated_to_minute(self) -> None:
        seg = _segment(start_time=START.replace(second=42, microsecond=7))
        assert seg.start_time == START

    def test_naive_start_assumed_utc(self) -> None:
        seg = _segment(start_time=START.replace(tzinfo=None))
        assert seg.start_time == START

    def test_is_active_at(self) -> None:
        seg = _segment()
        assert seg.is_active_at(START + timedelta(minutes=10))
        assert not seg.is_active_at(START + timedelta(minutes=45))
        assert not _segment(enabled=False).is_active_at(START)

    def test_enabled_segment_needs_a_minute(self) -> None:
        with pytest.raises(ValueError, match="at least 1 minute"):
            _segment(duration_minutes=0)
        assert not _segment(duration_minutes=0, enabled=False).enabled

    def test_matches_ignores_date(self) -> None:
        assert _segment().matches(_segment(start_time=START - timedelta(days=1)))

    def test_matches_detects_setting_change(self) -> None:
        assert not _segment().matches(_segment(fd_soc=40))
        assert not _segment().matches(None)

    def test_dict_round_trip(self) -> None:
        seg = _segment()
        assert DeviceSegment.from_dict(seg.to_dict()) == seg

    def test_client_satisfies_protocol(self) -> None:
        client = FoxESSCloudClient(FoxESSCloudConfig(), AEST)
        assert isinstance(client, DeviceClient)


class TestGroupConversion:
    def test_segment_to_group_local_time(self) -> None:
        group = segment_to_group(_segment(), AEST)
        assert (group["startHour"], group["startMinute"]) == (14, 30)
        assert (group["endHour"], group["endMinute"]) == (15, 15)
        assert group["enable"] == 1
        assert group["workMode"] == "ForceCharge"
        assert group["fdPwr"] == 5000
        assert group["maxSoc"] == 95

    def test_midnight_crossing_clamped(self) -> None:
        late = datetime(2026, 3, 1, 13, 40, tzinfo=timezone.utc)  # 23:40 AEST
        group = segment_to_group(_segment(start_time=late, duration_minutes=60), AEST)
        assert (group["endHour"], group["endMinute"]) == (23, 59)

    def test_round_trip(self) -> None:
        seg = _segment()
        back = group_to_segment(segment_to_group(seg, AEST), AEST, START)
        assert back == seg

    def test_unknown_work_mode_defaults_to_self_use(self) -> None:
        group = {**empty_group(), "enable": 1, "workMode": "PeakShaving", "endHour": 1}
        assert group_to_segment(group, AEST, START).work_mode is WorkMode.SELF_USE

    def test_empty_group_disabled(self) -> None:
        assert not group_to_segment(empty_group(), AEST, START).enabled

    def test_zero_length_enabled_group_treated_as_disabled(self) -> None:
        group = {**empty_group(), "enable": 1, "startHour": 9, "endHour": 9}
        assert not group_to_segment(group, AEST, START).enabled


class _FoxESSServer:
    """Minimal stand-in for the FoxESS Open API scheduler endpoints."""

    def __init__(self) -> None:
        self.groups = [empty_group() for _ in range(8)]
        self.requests: list[tuple[str, dict]] = []
        self.errno = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        self.requests.append((request.url.path, body))
        if self.errno:
            return httpx.Response(200, json={"errno": self.errno, "msg": "illegal"})
        if request.url.path.endswith("/scheduler/enable"):
            self.groups = body["groups"]
            return httpx.Response(200, json={"errno": 0, "result": None})
        if request.url.path.endswith("/scheduler/get"):
            return httpx.Response(200, json={"errno": 0, "result": {"groups": self.groups}})
        if request.url.path.endswith("/real/query"):
            return httpx.Response(200, json={"errno": 0, "result": [{"datas": [
                {"variable": "SoC", "value": 64},
                {"variable": "batTemperature", "value": 27.5},
                {"variable": "ambientTemperation", "value": None},
            ]}]})
        return httpx.Response(200, json={"errno": 0, "result": {}})


def _client(server: _FoxESSServer) -> FoxESSCloudClient:
    config = FoxESSCloudConfig(api_key=" key-123 \n", min_request_interval_seconds=0)
    http = httpx.AsyncClient(
        base_url="https://foxess.test", transport=httpx.MockTransport(server.handler),
    )
    return FoxESSCloudClient(config, AEST, client=http)


@pytest.mark.asyncio
class TestFoxESSCloudClient:
    async def test_write_then_read_back_matches(self) -> None:
        server = _FoxESSServer()
        client = _client(server)
        seg = _segment()

        result = await client.write_segment("SN1", seg)
        observed = await client.read_current_segment("SN1")

        assert result.success
        assert seg.matches(observed)
        assert all(g["enable"] == 0 for g in server.groups[1:])
        await client.close()

    async def test_clear_disables_all_groups(self) -> None:
        server = _FoxESSServer()
        client = _client(server)
        await client.write_segment("SN1", _segment())
        await client.write_segment("SN1", None)

        assert all(g["enable"] == 0 for g in server.groups)
        assert await client.read_current_segment("SN1") is None
        flag_calls = [b for p, b in server.requests if p.endswith("/set/flag")]
        assert flag_calls[-1]["enable"] == 0
        await client.close()

    async def test_api_error_reported_as_failed_write(self) -> None:
        server = _FoxESSServer()
        server.errno = 40257
        client = _client(server)
        result = await client.write_segment("SN1", _segment())
        assert not result.success
        assert "40257" in result.message
        await client.close()

    async def test_read_error_raises(self) -> None:
        server = _FoxESSServer()
        server.errno = 41930
        client = _client(server)
        with pytest.raises(FoxESSAPIError):
            await client.read_current_segment("SN1")
        await client.close()

    async def test_telemetry(self) -> None:
        client = _client(_FoxESSServer())
        telemetry = await client.fetch_live_telemetry("SN1")
        assert telemetry.soc_pct == 64.0
        assert telemetry.battery_temp_c == 27.5
        assert telemetry.ambient_temp_c is None
        await client.close()

    async def test_telemetry_error_is_unavailable(self) -> None:
        server = _FoxESSServer()
        server.errno = 40400
        client = _client(server)
        with pytest.raises(DataUnavailable):
            await client.fetch_live_telemetry("SN1")
        await client.close()

    async def test_signed_headers(self) -> None:
        server = _FoxESSServer()
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return server.handler(request)

        http = httpx.AsyncClient(base_url="https://foxess.test", transport=httpx.MockTransport(handler))
        client = FoxESSCloudClient(
            FoxESSCloudConfig(api_key="key-123", min_request_interval_seconds=0), AEST, client=http,
        )
        await client.read_current_segment("SN1")
        headers = seen[0].headers
        assert headers["token"] == "key-123"
        assert headers["signature"] == generate_signature(
            "/op/v1/device/scheduler/get", "key-123", int(headers["timestamp"]),
        )
        await client.close()
