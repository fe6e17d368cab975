"""Control surface for dashboards and admin tooling.

Read access to automation state and the audit log, the master switch,
manual force-end, rule management and dry-run simulation. Anything that
changes automation state is delegated to the orchestrator so it remains
the only writer.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from charge_pilot.automation.conditions import EvaluationContext
from charge_pilot.automation.models import AutomationRule, AutomationState, CycleAuditEntry, utcnow
from charge_pilot.automation.orchestrator import CycleOrchestrator
from charge_pilot.automation.rules import evaluate_all
from charge_pilot.config.schema import AutomationConfig
from charge_pilot.data.sources import CycleData
from charge_pilot.errors import RuleValidationError
from charge_pilot.forecast.openmeteo import WeatherData
from charge_pilot.hardware.base import Telemetry
from charge_pilot.resilience.health_check import HealthChecker
from charge_pilot.tariff.amber import PriceData

logger = logging.getLogger(__name__)

# Fields the store owns; user documents cannot set them
_READ_ONLY_FIELDS = ("lastTriggeredAt", "last_triggered_at")


class AutomationService:
    def __init__(
        self,
        orchestrator: CycleOrchestrator,
        config: AutomationConfig,
        health: HealthChecker | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = orchestrator.store
        self._config = config
        self._health = health

    # ── Read access ─────────────────────────────────────────

    async def get_state(self, user_id: str) -> AutomationState:
        return await self._store.load_state(user_id)

    async def get_status(self, user_id: str) -> dict[str, Any]:
        state = await self._store.load_state(user_id)
        status = state.to_dict()
        status["cycle_running"] = self._orchestrator.is_running(user_id)
        status["unhealthy_sources"] = self._health.get_unhealthy() if self._health else []
        status["sources"] = self._health.snapshot() if self._health else {}
        return status

    async def list_audit(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        return await self._store.list_audit(user_id, limit=max(1, min(limit, 500)))

    # ── Control ─────────────────────────────────────────────

    async def set_enabled(self, user_id: str, enabled: bool) -> AutomationState:
        return await self._orchestrator.set_enabled(user_id, enabled)

    async def force_end(self, user_id: str) -> CycleAuditEntry:
        return await self._orchestrator.force_end(user_id)

    async def run_now(self, user_id: str) -> CycleAuditEntry:
        return await self._orchestrator.run_cycle(user_id)

    # ── Rules ───────────────────────────────────────────────

    async def list_rules(self, user_id: str) -> list[AutomationRule]:
        return await self._store.list_rules(user_id)

    async def get_rule(self, user_id: str, rule_id: str) -> AutomationRule | None:
        return await self._store.get_rule(user_id, rule_id)

    async def create_rule(self, user_id: str, document: dict[str, Any]) -> AutomationRule:
        document = {k: v for k, v in document.items() if k not in _READ_ONLY_FIELDS}
        document.setdefault("id", uuid.uuid4().hex[:12])
        if "cooldownMinutes" not in document and "cooldown_minutes" not in document:
            document["cooldownMinutes"] = self._config.default_cooldown_minutes
        if await self._store.get_rule(user_id, str(document["id"])) is not None:
            raise RuleValidationError(f"rule {document['id']!r} already exists")
        rule = _validate(document)
        await self._store.save_rule(user_id, rule)
        logger.info("Rule %s (%s) created for %s", rule.id, rule.name, user_id)
        return rule

    async def update_rule(
        self, user_id: str, rule_id: str, changes: dict[str, Any],
    ) -> AutomationRule:
        """Apply a partial update. Cooldown history is kept.

        Runs under the user's cycle lock so a trigger recorded mid-edit is
        not overwritten with the older timestamp.
        """
        async with self._orchestrator.lock_for(user_id):
            existing = await self._store.get_rule(user_id, rule_id)
            if existing is None:
                raise KeyError(f"unknown rule {rule_id!r}")
            document = existing.model_dump(by_alias=True)
            document.update({k: v for k, v in changes.items() if k not in _READ_ONLY_FIELDS})
            document["id"] = rule_id
            document["lastTriggeredAt"] = existing.last_triggered_at
            rule = _validate(document)
            await self._store.save_rule(user_id, rule)
        logger.info("Rule %s updated for %s", rule_id, user_id)
        return rule

    async def delete_rule(self, user_id: str, rule_id: str) -> bool:
        """Delete a rule. If it is active, the next cycle cancels it."""
        deleted = await self._store.delete_rule(user_id, rule_id)
        if deleted:
            logger.info("Rule %s deleted for %s", rule_id, user_id)
        return deleted

    # ── Simulation ──────────────────────────────────────────

    async def simulate(
        self,
        user_id: str,
        telemetry: Telemetry | None = None,
        prices: PriceData | None = None,
        weather: WeatherData | None = None,
        now: datetime | None = None,
        rules: list[AutomationRule] | None = None,
    ) -> dict[str, Any]:
        """Evaluate rules against supplied data. Touches neither device nor state."""
        if rules is None:
            rules = await self._store.list_rules(user_id)
        state = await self._store.load_state(user_id)
        now = now or utcnow()
        context = EvaluationContext(
            now=now,
            data=CycleData.from_values(telemetry, prices, weather),
            local_tz=self._orchestrator.local_tz,
        )
        evaluation = evaluate_all(rules, context, state.active_rule_id)
        triggered = evaluation.triggered_rule
        return {
            "triggered_rule_id": triggered.id if triggered else None,
            "triggered_rule_name": triggered.name if triggered else None,
            "would_transition": self._orchestrator.state_machine.decide(
                state, triggered.id if triggered else None, now,
            ).kind.value,
            "results": [r.to_dict() for r in evaluation.results],
        }


def _validate(document: dict[str, Any]) -> AutomationRule:
    try:
        return AutomationRule.model_validate(document)
    except ValidationError as e:
        raise RuleValidationError(str(e)) from e
