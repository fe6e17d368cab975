"""Periodic per-user cycle scheduling.

Each user gets one task. A user's cycles never overlap: the task awaits
its cycle before waiting for the next tick, and a tick that comes due
while the previous cycle is still running is skipped, not queued.
Users run independently of each other.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from charge_pilot.automation.orchestrator import CycleOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class UserSchedule:
    """Per-user scheduling counters."""

    user_id: str
    cycles_run: int = 0
    cycles_failed: int = 0
    ticks_skipped: int = 0
    last_error: str = ""


class CycleScheduler:
    """Drives ``CycleOrchestrator.run_cycle`` for every configured user."""

    def __init__(
        self,
        orchestrator: CycleOrchestrator,
        user_ids: list[str],
        interval_seconds: float = 60.0,
        prune_interval_seconds: float = 24 * 3600,
    ) -> None:
        self._orchestrator = orchestrator
        self._interval = interval_seconds
        self._prune_interval = prune_interval_seconds
        self._schedules = {uid: UserSchedule(uid) for uid in user_ids}
        self._tasks: dict[str, asyncio.Task] = {}
        self._stop_event = asyncio.Event()

    @property
    def schedules(self) -> dict[str, UserSchedule]:
        return self._schedules

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    def start(self) -> None:
        self._stop_event.clear()
        for user_id in self._schedules:
            if user_id in self._tasks and not self._tasks[user_id].done():
                continue
            self._tasks[user_id] = asyncio.create_task(
                self._user_loop(user_id), name=f"cycle:{user_id}",
            )
        self._tasks["__prune__"] = asyncio.create_task(self._prune_loop(), name="audit-prune")
        logger.info(
            "Cycle scheduler started for %d user(s) (interval: %.0fs)",
            len(self._schedules), self._interval,
        )

    async def stop(self) -> None:
        """Stop all loops. A cycle in progress is allowed to finish."""
        self._stop_event.set()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Cycle scheduler stopped")

    async def tick(self, user_id: str) -> bool:
        """Run one cycle now unless one is already running. Returns whether it ran."""
        schedule = self._schedules[user_id]
        if self._orchestrator.is_running(user_id):
            schedule.ticks_skipped += 1
            logger.warning("Cycle for %s still running; skipping tick", user_id)
            return False
        try:
            await self._orchestrator.run_cycle(user_id)
            schedule.cycles_run += 1
        except Exception as e:
            # A bad cycle must not stop the schedule
            schedule.cycles_failed += 1
            schedule.last_error = str(e)
            logger.exception("Cycle for %s failed", user_id)
        return True

    async def _user_loop(self, user_id: str) -> None:
        next_due = time.monotonic()
        while not self._stop_event.is_set():
            await self.tick(user_id)

            next_due += self._interval
            now = time.monotonic()
            if next_due < now:
                missed = int((now - next_due) // self._interval) + 1
                self._schedules[user_id].ticks_skipped += missed
                logger.warning("Cycle for %s overran; skipping %d tick(s)", user_id, missed)
                next_due += missed * self._interval
            if await self._wait(next_due - now):
                break

    async def _prune_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self._orchestrator.prune_audit()
            except Exception:
                logger.exception("Audit prune failed")
            if await self._wait(self._prune_interval):
                break

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, seconds))
            return True
        except asyncio.TimeoutError:
            return False
