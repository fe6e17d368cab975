"""Shared test fixtures for Charge Pilot."""

from __future__ import annotations

from pathlib import Path
from typing import AsyncGenerator

import aiosqlite
import pytest
import pytest_asyncio

from charge_pilot.config.manager import ConfigManager
from charge_pilot.config.schema import AppConfig
from charge_pilot.db.engine import init_db
from charge_pilot.db.repository import Repository
from charge_pilot.hardware.base import CommandResult, DeviceSegment, Telemetry


class FakeDevice:
    """In-memory inverter holding at most one automation segment.

    ``reject_writes`` makes the next N writes fail outright; ``stuck`` makes
    clears acknowledge without taking effect (read-back still shows the
    segment); ``drop_applies`` does the same for applies.
    """

    def __init__(self, soc: float = 50.0) -> None:
        self.segment: DeviceSegment | None = None
        self.soc = soc
        self.writes: list[DeviceSegment | None] = []
        self.reads = 0
        self.reject_writes = 0
        self.stuck = False
        self.drop_applies = False

    async def fetch_live_telemetry(self, device_id: str) -> Telemetry:
        return Telemetry(soc_pct=self.soc, battery_temp_c=25.0, ambient_temp_c=22.0)

    async def write_segment(self, device_id: str, segment: DeviceSegment | None) -> CommandResult:
        self.writes.append(segment)
        if self.reject_writes > 0:
            self.reject_writes -= 1
            return CommandResult(success=False, latency_ms=1, message="errno 40257")
        if segment is None:
            if not self.stuck:
                self.segment = None
        elif not self.drop_applies:
            self.segment = segment
        return CommandResult(success=True, latency_ms=1)

    async def read_current_segment(self, device_id: str) -> DeviceSegment | None:
        self.reads += 1
        if self.segment is None or not self.segment.enabled:
            return None
        return self.segment

    @property
    def applied(self) -> list[DeviceSegment]:
        return [w for w in self.writes if w is not None]

    @property
    def clears(self) -> int:
        return sum(1 for w in self.writes if w is None)


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def config() -> AppConfig:
    """Provide a default test configuration."""
    return AppConfig()


@pytest.fixture
def config_manager(tmp_path: Path) -> ConfigManager:
    """Provide a config manager with test paths."""
    defaults = tmp_path / "config.defaults.yaml"
    defaults.write_text("db:\n  path: ':memory:'\n")
    user = tmp_path / "config.yaml"
    mgr = ConfigManager(defaults_path=defaults, user_path=user)
    mgr.load()
    return mgr


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def instant_sleep():
    return no_sleep


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> AsyncGenerator[aiosqlite.Connection, None]:
    """Provide a fresh database for each test."""
    conn = await init_db(tmp_path / "test.db")
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def repo(db: aiosqlite.Connection) -> Repository:
    """Provide a repository with a fresh database."""
    return Repository(db)
