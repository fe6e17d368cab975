"""Charge Pilot application entry point and lifecycle orchestrator.

Startup sequence:
  config → SQLite → FoxESS client → price/weather fetchers → data cache →
  reconciler → cycle orchestrator → per-user scheduler
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal

from charge_pilot import __version__
from charge_pilot.automation.orchestrator import CycleOrchestrator
from charge_pilot.automation.reconciler import DeviceReconciler
from charge_pilot.automation.scheduler import CycleScheduler
from charge_pilot.automation.service import AutomationService
from charge_pilot.config.manager import ConfigManager
from charge_pilot.config.schema import AppConfig
from charge_pilot.data.cache import DataCache
from charge_pilot.data.sources import DataSources
from charge_pilot.db.engine import close_db, init_db
from charge_pilot.db.repository import Repository
from charge_pilot.forecast.openmeteo import OpenMeteoWeatherFetcher
from charge_pilot.hardware.foxess_cloud import FoxESSCloudClient
from charge_pilot.logging.structured import setup_logging
from charge_pilot.resilience.health_check import HealthChecker
from charge_pilot.retry import RetryPolicy
from charge_pilot.settings import get_config_manager, load_settings
from charge_pilot.tariff.amber import AmberPriceFetcher
from charge_pilot.timezone_utils import resolve_timezone

logger = logging.getLogger(__name__)


class Application:
    """Wires the automation engine together and manages startup/shutdown ordering."""

    def __init__(self, config: AppConfig, config_manager: ConfigManager) -> None:
        self.config = config
        self.config_manager = config_manager
        self._running = False
        self._stop_event = asyncio.Event()

        # References held for cleanup
        self._db = None
        self._clients: list = []  # anything with an async close()
        self._scheduler: CycleScheduler | None = None
        self.service: AutomationService | None = None

    async def start(self) -> None:
        """Start all components, then block until ``stop()`` is called."""
        logger.info("Starting Charge Pilot v%s", __version__)
        self._running = True
        self._stop_event.clear()
        config = self.config

        # ── 1. Database ───────────────────────────────────────
        self._db = await init_db(config.db.path)
        repo = Repository(self._db)

        # ── 2. Device + data providers ────────────────────────
        device_tz = resolve_timezone(config.automation.timezone)
        if config.hardware.adapter != "foxess_cloud":
            raise ValueError(f"Unsupported hardware adapter: {config.hardware.adapter}")
        device = FoxESSCloudClient(
            config.hardware.foxess,
            device_tz,
            group_count=config.reconciler.scheduler_group_count,
        )
        prices = AmberPriceFetcher(config.providers.tariff)
        weather = OpenMeteoWeatherFetcher(config.providers.weather)
        self._clients = [device, prices, weather]

        # ── 3. Cache + sources ────────────────────────────────
        cache_cfg = config.cache
        cache = DataCache(
            stale_grace_seconds=cache_cfg.stale_grace_seconds,
            fetch_timeout_seconds=cache_cfg.fetch_timeout_seconds,
            retry_policy=RetryPolicy(
                max_attempts=cache_cfg.fetch_attempts,
                initial_delay_seconds=cache_cfg.fetch_retry_delay_seconds,
                backoff_factor=config.retry.backoff_factor,
                max_delay_seconds=config.retry.max_delay_seconds,
            ),
        )
        health = HealthChecker()
        sources = DataSources(
            cache,
            cache_cfg,
            fetch_telemetry=device.fetch_live_telemetry,
            fetch_prices=prices.fetch_price_series,
            fetch_weather=weather.fetch_weather_forecast,
            location=weather.default_location,
            health=health,
        )

        # ── 4. Automation engine ──────────────────────────────
        reconciler = DeviceReconciler.from_config(
            device, config.reconciler, RetryPolicy.from_config(config.retry),
        )
        orchestrator = CycleOrchestrator(config, repo, sources, reconciler)
        self.service = AutomationService(orchestrator, config.automation, health)

        user_ids = [u.user_id for u in config.users if u.enabled]
        if not user_ids:
            logger.warning("No enabled users configured; nothing to automate")
        self._scheduler = CycleScheduler(
            orchestrator,
            user_ids,
            interval_seconds=config.automation.cycle_interval_seconds,
        )
        self._scheduler.start()

        logger.info("Charge Pilot running (%d user(s))", len(user_ids))
        await self._stop_event.wait()

    async def stop(self) -> None:
        """Gracefully stop all components in reverse order."""
        if not self._running:
            return

        logger.info("Shutting down Charge Pilot")
        self._running = False

        # Let an in-flight cycle finish its device protocol before closing clients
        if self._scheduler is not None:
            await self._scheduler.stop()

        for client in self._clients:
            try:
                await client.close()
            except Exception:
                logger.exception("Error closing %s", type(client).__name__)

        if self._db is not None:
            await close_db(self._db)
            self._db = None
        self._stop_event.set()
        logger.info("Shutdown complete")


_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


async def serve(app: Application) -> None:
    """Run ``app`` until it stops or a shutdown signal arrives.

    The first signal stops the app cleanly, letting an in-flight cycle finish
    its device writes. A second signal exits immediately.
    """
    loop = asyncio.get_running_loop()
    stopping: list[asyncio.Task] = []

    def _on_signal(sig: signal.Signals) -> None:
        if stopping:
            logger.warning("Second %s received, exiting without cleanup", sig.name)
            os._exit(130)
        logger.info("%s received, stopping", sig.name)
        stopping.append(loop.create_task(app.stop()))

    installed = []
    for sig in _SHUTDOWN_SIGNALS:
        # Not available on Windows event loops; Ctrl+C still raises KeyboardInterrupt
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, _on_signal, sig)
            installed.append(sig)

    try:
        await app.start()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        if app._running:
            await app.stop()


def main() -> None:
    """Console entry point: load config, set up logging, run until signalled."""
    config = load_settings()
    config_manager = get_config_manager()
    setup_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=config.logging.file,
    )
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(serve(Application(config, config_manager)))


if __name__ == "__main__":
    main()
