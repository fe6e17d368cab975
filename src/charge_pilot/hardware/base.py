"""Abstract device protocol for inverter scheduler control."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Protocol, runtime_checkable


class WorkMode(str, Enum):
    """Inverter work modes a scheduler segment can request."""

    SELF_USE = "SelfUse"
    FEED_IN = "Feedin"
    BACKUP = "Backup"
    FORCE_CHARGE = "ForceCharge"
    FORCE_DISCHARGE = "ForceDischarge"


@dataclass
class Telemetry:
    """Snapshot of live inverter readings used by automation conditions."""

    soc_pct: float  # 0-100
    battery_temp_c: float | None = None
    ambient_temp_c: float | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    raw_data: dict | None = None


@dataclass(frozen=True)
class DeviceSegment:
    """One scheduled block on the device.

    Start times are kept to minute precision because that is all the
    device scheduler stores.
    """

    start_time: datetime
    duration_minutes: int
    target_power_w: int = 0
    enabled: bool = True
    work_mode: WorkMode = WorkMode.SELF_USE
    min_soc_on_grid: int = 20
    fd_soc: int = 35
    max_soc: int = 90

    def __post_init__(self) -> None:
        start = self.start_time
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        object.__setattr__(self, "start_time", start.replace(second=0, microsecond=0))
        if self.enabled and self.duration_minutes < 1:
            raise ValueError(f"enabled segment needs at least 1 minute, got {self.duration_minutes}")

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)

    def is_active_at(self, dt: datetime) -> bool:
        return self.enabled and self.start_time <= dt < self.end_time

    def matches(self, other: DeviceSegment | None) -> bool:
        """Compare as the device sees it: wall-clock start, duration and settings."""
        if other is None:
            return False
        mine = self.start_time.astimezone(timezone.utc)
        theirs = other.start_time.astimezone(timezone.utc)
        return (
            (mine.hour, mine.minute) == (theirs.hour, theirs.minute)
            and self.duration_minutes == other.duration_minutes
            and self.target_power_w == other.target_power_w
            and self.enabled == other.enabled
            and self.work_mode == other.work_mode
            and self.min_soc_on_grid == other.min_soc_on_grid
            and self.fd_soc == other.fd_soc
            and self.max_soc == other.max_soc
        )

    def to_dict(self) -> dict:
        return {
            "start_time": self.start_time.isoformat(),
            "duration_minutes": self.duration_minutes,
            "target_power_w": self.target_power_w,
            "enabled": self.enabled,
            "work_mode": self.work_mode.value,
            "min_soc_on_grid": self.min_soc_on_grid,
            "fd_soc": self.fd_soc,
            "max_soc": self.max_soc,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DeviceSegment:
        return cls(
            start_time=datetime.fromisoformat(data["start_time"]),
            duration_minutes=int(data["duration_minutes"]),
            target_power_w=int(data.get("target_power_w", 0)),
            enabled=bool(data.get("enabled", True)),
            work_mode=WorkMode(data.get("work_mode", WorkMode.SELF_USE.value)),
            min_soc_on_grid=int(data.get("min_soc_on_grid", 20)),
            fd_soc=int(data.get("fd_soc", 35)),
            max_soc=int(data.get("max_soc", 90)),
        )


@dataclass
class CommandResult:
    """Result of a device scheduler write."""

    success: bool
    latency_ms: int
    message: str = ""
    raw_response: dict | None = None


@runtime_checkable
class DeviceClient(Protocol):
    """Protocol for device adapters to implement."""

    async def fetch_live_telemetry(self, device_id: str) -> Telemetry:
        """Read current telemetry from the device."""
        ...

    async def write_segment(self, device_id: str, segment: DeviceSegment | None) -> CommandResult:
        """Write the automation segment. ``None`` disables it."""
        ...

    async def read_current_segment(self, device_id: str) -> DeviceSegment | None:
        """Read back the enabled automation segment, or ``None``."""
        ...
