"""Active-rule state machine.

States: IDLE, ACTIVE and PENDING_CLEAR. Each cycle the machine decides a
transition from the previous state and the rule selected this cycle; the
orchestrator carries out the device side through the reconciler and then
reports the outcome back here.

The active rule id is only ever dropped after a verified clear. While a
clear is outstanding the state keeps pointing at the rule whose segment
the device may still hold.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from charge_pilot.automation.models import (
    AutomationRule,
    AutomationState,
    RulePhase,
    TransitionKind,
)
from charge_pilot.hardware.base import DeviceSegment

logger = logging.getLogger(__name__)


def segment_ended(state: AutomationState, now: datetime | None) -> bool:
    """True once the active segment is no longer running on the device."""
    segment = state.active_segment
    return now is not None and segment is not None and not segment.is_active_at(now)


@dataclass(frozen=True)
class TransitionPlan:
    """What the orchestrator must do this cycle."""

    kind: TransitionKind
    clear_first: bool = False  # A verified clear must succeed before anything else
    apply: bool = False  # Apply the target rule's segment
    target_rule_id: str | None = None

    @property
    def touches_device(self) -> bool:
        return self.clear_first or self.apply


class ActiveRuleStateMachine:
    """Decides and records transitions for one user's automation state."""

    def __init__(self, clear_failure_alert_threshold: int = 3) -> None:
        self._alert_threshold = clear_failure_alert_threshold

    def decide(
        self,
        state: AutomationState,
        triggered_rule_id: str | None,
        now: datetime | None = None,
    ) -> TransitionPlan:
        """Pick the transition for this cycle. Does not mutate ``state``.

        With ``now``, an active rule whose segment has run out is renewed:
        cleared and applied again, shaped like a preemption.
        """
        if state.phase is RulePhase.IDLE:
            if triggered_rule_id is None:
                return TransitionPlan(TransitionKind.NONE)
            return TransitionPlan(
                TransitionKind.TRIGGER, apply=True, target_rule_id=triggered_rule_id,
            )

        if state.phase is RulePhase.ACTIVE:
            if triggered_rule_id is None:
                return TransitionPlan(TransitionKind.CANCEL, clear_first=True)
            if triggered_rule_id == state.active_rule_id and not segment_ended(state, now):
                return TransitionPlan(TransitionKind.CONTINUE, target_rule_id=triggered_rule_id)
            return TransitionPlan(
                TransitionKind.PREEMPT,
                clear_first=True,
                apply=True,
                target_rule_id=triggered_rule_id,
            )

        # PENDING_CLEAR: the device may still hold a segment, so every path
        # goes through a verified clear first, even if the same rule holds again
        if triggered_rule_id is None:
            return TransitionPlan(TransitionKind.CANCEL, clear_first=True)
        return TransitionPlan(
            TransitionKind.PREEMPT,
            clear_first=True,
            apply=True,
            target_rule_id=triggered_rule_id,
        )

    # ── Outcomes ────────────────────────────────────────────

    def record_cleared(self, state: AutomationState, kind: TransitionKind) -> None:
        """A clear was verified: the device holds no automation segment."""
        if state.active_rule_id or state.phase is not RulePhase.IDLE:
            logger.info(
                "%s: cleared rule %s after %d failed attempt(s)",
                kind.value.upper(), state.active_rule_id, state.clear_failure_attempts,
            )
        state.phase = RulePhase.IDLE
        state.active_rule_id = None
        state.active_rule_name = None
        state.active_since = None
        state.active_segment = None
        state.clear_failure_attempts = 0
        state.clear_alert = False
        state.last_transition = kind

    def record_clear_failed(self, state: AutomationState, kind: TransitionKind) -> None:
        """A clear could not be verified. Keep the rule id; a retry is owed."""
        state.phase = RulePhase.PENDING_CLEAR
        state.clear_failure_attempts += 1
        state.last_transition = kind
        if state.clear_failure_attempts >= self._alert_threshold:
            if not state.clear_alert:
                logger.error(
                    "Clear of rule %s has failed %d consecutive times; device may be stuck",
                    state.active_rule_id, state.clear_failure_attempts,
                )
            state.clear_alert = True
        else:
            logger.warning(
                "%s: clear of rule %s not verified (attempt %d); will retry next cycle",
                kind.value.upper(), state.active_rule_id, state.clear_failure_attempts,
            )

    def record_applied(
        self,
        state: AutomationState,
        rule: AutomationRule,
        segment: DeviceSegment,
        kind: TransitionKind,
        now: datetime,
    ) -> None:
        """The rule's segment is on the device and verified."""
        state.phase = RulePhase.ACTIVE
        state.active_rule_id = rule.id
        state.active_rule_name = rule.name
        state.active_since = now
        state.active_segment = segment
        state.clear_failure_attempts = 0
        state.clear_alert = False
        state.last_transition = kind
        logger.info(
            "%s: rule %s (%s) active, %s for %d min",
            kind.value.upper(), rule.id, rule.name,
            segment.work_mode.value, segment.duration_minutes,
        )

    def record_apply_failed(
        self,
        state: AutomationState,
        rule: AutomationRule,
        segment: DeviceSegment,
        kind: TransitionKind,
    ) -> None:
        """An apply could not be verified.

        The write may have partly landed, so the state records the rule as
        the possible occupant and owes a clear before anything else.
        """
        state.phase = RulePhase.PENDING_CLEAR
        state.active_rule_id = rule.id
        state.active_rule_name = rule.name
        state.active_segment = segment
        state.last_transition = kind
        logger.warning(
            "%s: apply of rule %s not verified; clearing before any further action",
            kind.value.upper(), rule.id,
        )

    def record_continue(self, state: AutomationState) -> None:
        state.last_transition = TransitionKind.CONTINUE

    def record_idle(self, state: AutomationState) -> None:
        state.last_transition = TransitionKind.NONE

    def adopt_orphan(self, state: AutomationState, segment: DeviceSegment) -> None:
        """The device holds a segment the state knows nothing about.

        Treated as owed a clear so it goes through the verified path.
        """
        logger.warning(
            "Device holds an untracked %s segment from %s; scheduling a clear",
            segment.work_mode.value, segment.start_time.isoformat(),
        )
        state.phase = RulePhase.PENDING_CLEAR
        state.active_rule_id = None
        state.active_rule_name = None
        state.active_segment = segment
