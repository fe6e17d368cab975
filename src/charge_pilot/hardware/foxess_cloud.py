"""FoxESS Cloud Open API device client.

Auth uses signature-based headers:
  - token: API key
  - timestamp: milliseconds since epoch
  - signature: MD5 of ``path\\r\\ntoken\\r\\ntimestamp`` where the separators are
    the literal four characters backslash-r-backslash-n, not CRLF bytes
  - lang: "en"

Automation owns scheduler group 1. Every write sends the full group list with
group 1 set to the automation segment (or disabled) and every other group
disabled, so the device never holds more than one automation segment.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from datetime import datetime, timedelta, timezone, tzinfo

import httpx

from charge_pilot.config.schema import FoxESSCloudConfig
from charge_pilot.errors import DataUnavailable
from charge_pilot.hardware.base import CommandResult, DeviceSegment, Telemetry, WorkMode

logger = logging.getLogger(__name__)

REAL_QUERY_PATH = "/op/v0/device/real/query"
SCHEDULER_GET_PATH = "/op/v1/device/scheduler/get"
SCHEDULER_ENABLE_PATH = "/op/v1/device/scheduler/enable"
SCHEDULER_FLAG_PATH = "/op/v1/device/scheduler/set/flag"

ERRNO_RATE_LIMITED = 40402

TELEMETRY_VARIABLES = ["SoC", "batTemperature", "ambientTemperation"]


class FoxESSAPIError(Exception):
    """FoxESS returned a non-zero errno or an unusable response."""

    def __init__(self, errno: int, message: str) -> None:
        self.errno = errno
        super().__init__(f"FoxESS API error {errno}: {message}")


def generate_signature(path: str, token: str, timestamp_ms: int) -> str:
    plain = f"{path}\\r\\n{token}\\r\\n{timestamp_ms}"
    return hashlib.md5(plain.encode("utf-8")).hexdigest()


def empty_group() -> dict:
    return {
        "enable": 0,
        "workMode": WorkMode.SELF_USE.value,
        "startHour": 0,
        "startMinute": 0,
        "endHour": 0,
        "endMinute": 0,
        "minSocOnGrid": 10,
        "fdSoc": 10,
        "fdPwr": 0,
        "maxSoc": 100,
    }


def segment_to_group(segment: DeviceSegment, tz: tzinfo) -> dict:
    """Render a segment as a FoxESS scheduler group in device-local time.

    The device cannot express a block that runs past midnight, so the end is
    clamped to 23:59 on the start day.
    """
    start = segment.start_time.astimezone(tz)
    end = start + timedelta(minutes=segment.duration_minutes)
    if end.date() != start.date():
        end = start.replace(hour=23, minute=59)
    return {
        "enable": 1 if segment.enabled else 0,
        "workMode": segment.work_mode.value,
        "startHour": start.hour,
        "startMinute": start.minute,
        "endHour": end.hour,
        "endMinute": end.minute,
        "minSocOnGrid": segment.min_soc_on_grid,
        "fdSoc": segment.fd_soc,
        "fdPwr": segment.target_power_w,
        "maxSoc": segment.max_soc,
    }


def group_to_segment(group: dict, tz: tzinfo, reference: datetime) -> DeviceSegment:
    """Parse a FoxESS scheduler group back into a segment anchored on ``reference``'s local date."""
    local_ref = reference.astimezone(tz)
    start = local_ref.replace(
        hour=int(group.get("startHour", 0)),
        minute=int(group.get("startMinute", 0)),
        second=0,
        microsecond=0,
    )
    start_mins = start.hour * 60 + start.minute
    end_mins = int(group.get("endHour", 0)) * 60 + int(group.get("endMinute", 0))
    duration = (end_mins - start_mins) % (24 * 60)
    try:
        work_mode = WorkMode(group.get("workMode", WorkMode.SELF_USE.value))
    except ValueError:
        logger.warning("Unknown FoxESS work mode %r, treating as SelfUse", group.get("workMode"))
        work_mode = WorkMode.SELF_USE
    return DeviceSegment(
        start_time=start.astimezone(timezone.utc),
        duration_minutes=duration,
        target_power_w=int(group.get("fdPwr", 0)),
        # A zero-length group never runs, whatever its enable flag says
        enabled=int(group.get("enable", 0)) == 1 and duration > 0,
        work_mode=work_mode,
        min_soc_on_grid=int(group.get("minSocOnGrid", 10)),
        fd_soc=int(group.get("fdSoc", 10)),
        max_soc=int(group.get("maxSoc", 100)),
    )


class FoxESSCloudClient:
    """Async client for the FoxESS Open API scheduler and real-time endpoints."""

    def __init__(
        self,
        config: FoxESSCloudConfig,
        device_tz: tzinfo,
        group_count: int = 8,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._tz = device_tz
        self._group_count = group_count
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.request_timeout_seconds,
        )
        self._lock = asyncio.Lock()
        self._last_request_time = 0.0

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self, path: str) -> dict[str, str]:
        # Tokens pasted from the FoxESS portal often carry stray whitespace
        token = "".join(self._config.api_key.split())
        timestamp = int(time.time() * 1000)
        return {
            "token": token,
            "timestamp": str(timestamp),
            "signature": generate_signature(path, token, timestamp),
            "lang": "en",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: dict) -> dict | list:
        async with self._lock:
            elapsed = time.monotonic() - self._last_request_time
            wait = self._config.min_request_interval_seconds - elapsed
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request_time = time.monotonic()

            resp = await self._client.post(path, json=payload, headers=self._headers(path))
        resp.raise_for_status()
        data = resp.json()

        errno = data.get("errno", -1)
        if errno == ERRNO_RATE_LIMITED:
            logger.warning("FoxESS rate limit hit on %s", path)
        if errno != 0:
            raise FoxESSAPIError(errno, data.get("msg", "unknown error"))
        return data.get("result", {})

    async def fetch_live_telemetry(self, device_id: str) -> Telemetry:
        """Read SoC and temperatures from the real-time query endpoint."""
        try:
            result = await self._post(
                REAL_QUERY_PATH, {"sn": device_id, "variables": TELEMETRY_VARIABLES},
            )
        except (httpx.HTTPError, FoxESSAPIError) as e:
            raise DataUnavailable("telemetry", str(e)) from e

        values = self._parse_real_data(result)
        soc = values.get("SoC")
        if soc is None:
            raise DataUnavailable("telemetry", "SoC missing from real-time data")
        return Telemetry(
            soc_pct=float(soc),
            battery_temp_c=values.get("batTemperature"),
            ambient_temp_c=values.get("ambientTemperation"),
            timestamp=datetime.now(timezone.utc),
            raw_data={"datas": values},
        )

    async def write_segment(self, device_id: str, segment: DeviceSegment | None) -> CommandResult:
        """Write the scheduler groups with ``segment`` in group 1 (or all disabled)."""
        start = time.monotonic()
        groups = [empty_group() for _ in range(self._group_count)]
        if segment is not None:
            groups[0] = segment_to_group(segment, self._tz)

        try:
            await self._post(SCHEDULER_ENABLE_PATH, {"deviceSN": device_id, "groups": groups})
            # The flag only controls what the FoxESS app shows; a failure here is not fatal
            try:
                await self._post(
                    SCHEDULER_FLAG_PATH,
                    {"deviceSN": device_id, "enable": 1 if segment is not None else 0},
                )
            except (httpx.HTTPError, FoxESSAPIError) as e:
                logger.warning("FoxESS scheduler flag update failed: %s", e)
        except (httpx.HTTPError, FoxESSAPIError) as e:
            latency = int((time.monotonic() - start) * 1000)
            logger.error("FoxESS scheduler write failed: %s", e)
            return CommandResult(success=False, latency_ms=latency, message=str(e))

        latency = int((time.monotonic() - start) * 1000)
        logger.info(
            "FoxESS scheduler written: device=%s group1=%s latency=%dms",
            device_id, groups[0], latency,
        )
        return CommandResult(success=True, latency_ms=latency, raw_response={"groups": groups})

    async def read_current_segment(self, device_id: str) -> DeviceSegment | None:
        """Return group 1 if it is enabled; other groups are not automation-owned."""
        result = await self._post(SCHEDULER_GET_PATH, {"deviceSN": device_id})
        groups = result.get("groups", []) if isinstance(result, dict) else []
        if not groups:
            return None
        enabled_others = sum(1 for g in groups[1:] if int(g.get("enable", 0)) == 1)
        if enabled_others:
            logger.warning(
                "FoxESS device %s has %d enabled non-automation group(s)",
                device_id, enabled_others,
            )
        segment = group_to_segment(groups[0], self._tz, datetime.now(timezone.utc))
        return segment if segment.enabled else None

    @staticmethod
    def _parse_real_data(result: dict | list) -> dict[str, float | None]:
        """Flatten ``result[0].datas`` into {variable: value}."""
        if isinstance(result, list) and result:
            datas = result[0].get("datas", [])
        elif isinstance(result, dict):
            datas = result.get("datas", [])
        else:
            datas = []
        values: dict[str, float | None] = {}
        for entry in datas:
            name = entry.get("variable")
            if name:
                value = entry.get("value")
                values[name] = float(value) if value is not None else None
        return values
