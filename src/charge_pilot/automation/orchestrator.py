"""Cycle orchestrator: one automation tick for one user.

fetch -> evaluate -> transition -> reconcile -> persist state -> audit.

Cycles for the same user are serialised by a per-user lock, which the
control surface shares so a manual force-end never races a tick. Data
fetching runs under the cycle's wall-clock budget; device operations run
to completion of their own bounded retry once started.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone, tzinfo

from charge_pilot.automation.conditions import EvaluationContext
from charge_pilot.automation.models import (
    AutomationRule,
    AutomationState,
    CycleAuditEntry,
    RulePhase,
    TransitionKind,
)
from charge_pilot.automation.reconciler import DeviceReconciler
from charge_pilot.automation.rules import RuleEvaluation, evaluate_all, required_sources
from charge_pilot.automation.state_machine import (
    ActiveRuleStateMachine,
    TransitionPlan,
    segment_ended,
)
from charge_pilot.automation.store import AutomationStore
from charge_pilot.config.schema import AppConfig, UserConfig
from charge_pilot.data.sources import DataSources
from charge_pilot.errors import CycleTimeout, VerificationFailed
from charge_pilot.logging.context import cycle_context
from charge_pilot.timezone_utils import in_daily_window, resolve_timezone

logger = logging.getLogger(__name__)


class CycleOrchestrator:
    """Runs automation cycles. Sole writer of ``AutomationState``."""

    def __init__(
        self,
        config: AppConfig,
        store: AutomationStore,
        sources: DataSources,
        reconciler: DeviceReconciler,
        state_machine: ActiveRuleStateMachine | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._sources = sources
        self._reconciler = reconciler
        self._machine = state_machine or ActiveRuleStateMachine(
            config.automation.clear_failure_alert_threshold,
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tz = resolve_timezone(config.automation.timezone)
        self._locks: dict[str, asyncio.Lock] = {}
        self._orphan_checked: set[str] = set()

    @property
    def local_tz(self) -> tzinfo:
        return self._tz

    @property
    def store(self) -> AutomationStore:
        return self._store

    @property
    def reconciler(self) -> DeviceReconciler:
        return self._reconciler

    @property
    def state_machine(self) -> ActiveRuleStateMachine:
        return self._machine

    def lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def is_running(self, user_id: str) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    def user(self, user_id: str) -> UserConfig:
        user = self._config.get_user(user_id)
        if user is None:
            raise KeyError(f"unknown user {user_id!r}")
        return user

    def in_blackout(self, now: datetime) -> bool:
        local = now.astimezone(self._tz)
        return any(
            w.enabled and in_daily_window(local, w.start, w.end)
            for w in self._config.automation.blackout_windows
        )

    async def run_cycle(self, user_id: str) -> CycleAuditEntry:
        """Run one cycle for ``user_id`` and return its audit entry."""
        user = self.user(user_id)
        async with self.lock_for(user_id):
            with cycle_context(user_id) as cycle_id:
                return await self._run_locked(user, cycle_id)

    async def _run_locked(self, user: UserConfig, cycle_id: str) -> CycleAuditEntry:
        started = time.monotonic()
        now = self._clock()
        budget = self._config.automation.cycle_timeout_seconds
        entry = CycleAuditEntry(cycle_id=cycle_id, user_id=user.user_id, timestamp=now)

        state = await self._store.load_state(user.user_id)
        rules = await self._store.list_rules(user.user_id)

        await self._check_orphan(user, state, entry)

        try:
            evaluation = await self._gather_and_evaluate(user, state, rules, now, entry, budget)
        except CycleTimeout as e:
            logger.warning("Cycle %s aborted: %s", cycle_id, e)
            entry.timed_out = True
            entry.outcome = "timeout"
            entry.notes.append(str(e))
            return await self._finish(state, entry, now, started)

        plan = self._select(state, rules, evaluation, now, entry)
        await self._execute(plan, state, user, rules, now, entry)
        return await self._finish(state, entry, now, started)

    async def _check_orphan(
        self, user: UserConfig, state: AutomationState, entry: CycleAuditEntry,
    ) -> None:
        """On the first cycle after startup, look for a segment the state does not know about."""
        if not self._config.automation.adopt_orphan_segments:
            return
        if user.user_id in self._orphan_checked:
            return
        if state.phase is not RulePhase.IDLE:
            self._orphan_checked.add(user.user_id)
            return
        try:
            segment = await self._reconciler.read_segment(user.device_id)
        except VerificationFailed as e:
            # Try again next cycle
            logger.warning("Startup device read failed: %s", e)
            entry.notes.append(f"orphan check skipped: {e}")
            return
        self._orphan_checked.add(user.user_id)
        if segment is not None and segment.enabled:
            self._machine.adopt_orphan(state, segment)
            entry.notes.append("untracked device segment found; clearing")

    async def _gather_and_evaluate(
        self,
        user: UserConfig,
        state: AutomationState,
        rules: list[AutomationRule],
        now: datetime,
        entry: CycleAuditEntry,
        budget: float,
    ) -> RuleEvaluation | None:
        if not state.enabled:
            entry.skipped_reason = "automation_disabled"
            return None

        needed = required_sources(rules)
        try:
            data = await asyncio.wait_for(
                self._sources.fetch_all(user, now, needed), timeout=budget,
            )
        except asyncio.TimeoutError as e:
            raise CycleTimeout(f"data fetch exceeded {budget:.0f}s budget") from e
        entry.data_sources = data.describe()

        context = EvaluationContext(now=now, data=data, local_tz=self._tz)
        evaluation = evaluate_all(rules, context, state.active_rule_id)
        entry.rule_results = evaluation.results
        return evaluation

    def _select(
        self,
        state: AutomationState,
        rules: list[AutomationRule],
        evaluation: RuleEvaluation | None,
        now: datetime,
        entry: CycleAuditEntry,
    ) -> TransitionPlan:
        triggered = evaluation.triggered_rule if evaluation else None

        state.in_blackout = self.in_blackout(now)
        if state.in_blackout and triggered is not None:
            holding = state.phase is RulePhase.ACTIVE and triggered.id == state.active_rule_id
            if holding and segment_ended(state, now):
                # Renewing would write a fresh segment
                logger.info("Blackout window: not renewing expired rule %s", triggered.id)
                entry.notes.append(f"blackout suppressed renewal of rule {triggered.id}")
                triggered = None
            elif not holding:
                # Only the already-active rule may stay on during a blackout
                still_qualifies = state.phase is RulePhase.ACTIVE and any(
                    r.rule_id == state.active_rule_id and r.qualified
                    for r in evaluation.results
                )
                logger.info(
                    "Blackout window: not triggering rule %s", triggered.id,
                )
                entry.notes.append(f"blackout suppressed rule {triggered.id}")
                triggered = (
                    next(r for r in rules if r.id == state.active_rule_id)
                    if still_qualifies else None
                )

        if triggered is not None:
            entry.selected_rule_id = triggered.id
            entry.selected_rule_name = triggered.name
        return self._machine.decide(state, triggered.id if triggered else None, now)

    async def _execute(
        self,
        plan: TransitionPlan,
        state: AutomationState,
        user: UserConfig,
        rules: list[AutomationRule],
        now: datetime,
        entry: CycleAuditEntry,
    ) -> None:
        entry.transition = plan.kind

        if plan.kind is TransitionKind.NONE:
            self._machine.record_idle(state)
            return
        if plan.kind is TransitionKind.CONTINUE:
            # Segment already on the device; never re-sent
            self._machine.record_continue(state)
            return

        rule = segment = None
        if plan.apply:
            rule = next(r for r in rules if r.id == plan.target_rule_id)
            segment = rule.action.build_segment(now, self._tz)
            if segment is None:
                logger.info("Not applying rule %s: under a minute left in the local day", rule.id)
                entry.notes.append(f"rule {rule.id} not applied: no time left before local midnight")
                entry.skipped_reason = "day_ending"
                if not plan.clear_first:
                    entry.transition = TransitionKind.NONE
                    self._machine.record_idle(state)
                    return

        if plan.clear_first:
            cleared = await self._reconciler.clear_segment(user.device_id)
            entry.notes.append(f"clear: {cleared.attempts} attempt(s), success={cleared.success}")
            if not cleared.success:
                self._machine.record_clear_failed(state, plan.kind)
                entry.outcome = "clear_failed"
                return
            self._machine.record_cleared(state, plan.kind)

        if rule is not None and segment is not None:
            applied = await self._reconciler.apply_segment(user.device_id, segment)
            entry.notes.append(f"apply: {applied.attempts} attempt(s), success={applied.success}")
            if not applied.success:
                self._machine.record_apply_failed(state, rule, segment, plan.kind)
                entry.outcome = "apply_failed"
                return
            self._machine.record_applied(state, rule, segment, plan.kind, now)
            await self._store.mark_rule_triggered(user.user_id, rule.id, now)

    async def _finish(
        self,
        state: AutomationState,
        entry: CycleAuditEntry,
        now: datetime,
        started: float,
    ) -> CycleAuditEntry:
        state.last_cycle_at = now
        await self._store.save_state(state)

        entry.phase_after = state.phase
        entry.duration_ms = int((time.monotonic() - started) * 1000)
        await self._store.append_audit(entry)

        log_fn = logger.info if entry.outcome == "ok" else logger.warning
        log_fn(
            "Cycle %s: transition=%s rule=%s phase=%s outcome=%s elapsed=%dms",
            entry.cycle_id, entry.transition.value, entry.selected_rule_id,
            state.phase.value, entry.outcome, entry.duration_ms,
        )
        return entry

    async def set_enabled(self, user_id: str, enabled: bool) -> AutomationState:
        """Flip the master switch. An active rule is cancelled by the next cycle."""
        self.user(user_id)
        async with self.lock_for(user_id):
            state = await self._store.load_state(user_id)
            if state.enabled != enabled:
                state.enabled = enabled
                await self._store.save_state(state)
                logger.info("Automation %s for %s", "enabled" if enabled else "disabled", user_id)
            return state

    async def force_end(self, user_id: str) -> CycleAuditEntry:
        """Manually end the active rule through the normal verified CANCEL path."""
        user = self.user(user_id)
        async with self.lock_for(user_id):
            with cycle_context(user_id) as cycle_id:
                started = time.monotonic()
                now = self._clock()
                entry = CycleAuditEntry(cycle_id=cycle_id, user_id=user_id, timestamp=now)
                entry.notes.append("manual force end")
                state = await self._store.load_state(user_id)
                plan = self._machine.decide(state, None)
                if plan.kind is TransitionKind.NONE:
                    entry.skipped_reason = "no_active_rule"
                await self._execute(plan, state, user, [], now, entry)
                return await self._finish(state, entry, now, started)

    async def prune_audit(self) -> int:
        retention = timedelta(days=self._config.automation.audit_retention_days)
        return await self._store.prune_audit(self._clock() - retention)
