"""Data access layer for rules, automation state and the cycle audit."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from charge_pilot.automation.models import AutomationRule, AutomationState, CycleAuditEntry
from charge_pilot.timezone_utils import ensure_utc

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Repository:
    """aiosqlite-backed ``AutomationStore``. Every write commits before returning."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db

    # ── Automation state ────────────────────────────────────

    async def load_state(self, user_id: str) -> AutomationState:
        async with self.db.execute(
            "SELECT state_json FROM automation_state WHERE user_id = ?", (user_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return AutomationState(user_id=user_id)
        return AutomationState.from_dict(json.loads(row["state_json"]))

    async def save_state(self, state: AutomationState) -> None:
        await self.db.execute(
            """INSERT INTO automation_state (user_id, phase, state_json, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(user_id) DO UPDATE SET
                   phase = excluded.phase,
                   state_json = excluded.state_json,
                   updated_at = excluded.updated_at""",
            (state.user_id, state.phase.value, json.dumps(state.to_dict()), _now()),
        )
        await self.db.commit()

    # ── Rules ───────────────────────────────────────────────

    async def list_rules(self, user_id: str) -> list[AutomationRule]:
        async with self.db.execute(
            """SELECT rule_json FROM automation_rules
               WHERE user_id = ? ORDER BY priority, rule_id""",
            (user_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [AutomationRule.model_validate_json(r["rule_json"]) for r in rows]

    async def get_rule(self, user_id: str, rule_id: str) -> AutomationRule | None:
        async with self.db.execute(
            "SELECT rule_json FROM automation_rules WHERE user_id = ? AND rule_id = ?",
            (user_id, rule_id),
        ) as cursor:
            row = await cursor.fetchone()
        return AutomationRule.model_validate_json(row["rule_json"]) if row else None

    async def save_rule(self, user_id: str, rule: AutomationRule) -> None:
        await self.db.execute(
            """INSERT INTO automation_rules
               (user_id, rule_id, priority, enabled, rule_json, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(user_id, rule_id) DO UPDATE SET
                   priority = excluded.priority,
                   enabled = excluded.enabled,
                   rule_json = excluded.rule_json,
                   updated_at = excluded.updated_at""",
            (
                user_id, rule.id, rule.priority, 1 if rule.enabled else 0,
                rule.model_dump_json(by_alias=True), _now(),
            ),
        )
        await self.db.commit()

    async def delete_rule(self, user_id: str, rule_id: str) -> bool:
        async with self.db.execute(
            "DELETE FROM automation_rules WHERE user_id = ? AND rule_id = ?",
            (user_id, rule_id),
        ) as cursor:
            deleted = cursor.rowcount
        await self.db.commit()
        return deleted > 0

    async def mark_rule_triggered(self, user_id: str, rule_id: str, at: datetime) -> None:
        rule = await self.get_rule(user_id, rule_id)
        if rule is None:
            logger.warning("Cannot mark unknown rule %s/%s as triggered", user_id, rule_id)
            return
        await self.save_rule(user_id, rule.model_copy(update={"last_triggered_at": ensure_utc(at)}))

    # ── Cycle audit ─────────────────────────────────────────

    async def append_audit(self, entry: CycleAuditEntry) -> None:
        await self.db.execute(
            """INSERT INTO cycle_audit
               (cycle_id, user_id, recorded_at, transition, outcome,
                selected_rule_id, entry_json)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.cycle_id, entry.user_id, ensure_utc(entry.timestamp).isoformat(),
                entry.transition.value, entry.outcome, entry.selected_rule_id,
                json.dumps(entry.to_dict()),
            ),
        )
        await self.db.commit()

    async def list_audit(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent audit entries first."""
        async with self.db.execute(
            """SELECT entry_json FROM cycle_audit
               WHERE user_id = ? ORDER BY recorded_at DESC, id DESC LIMIT ?""",
            (user_id, limit),
        ) as cursor:
            rows = await cursor.fetchall()
        return [json.loads(r["entry_json"]) for r in rows]

    async def prune_audit(self, older_than: datetime) -> int:
        async with self.db.execute(
            "DELETE FROM cycle_audit WHERE recorded_at < ?",
            (ensure_utc(older_than).isoformat(),),
        ) as cursor:
            deleted = cursor.rowcount
        await self.db.commit()
        if deleted:
            logger.info("Pruned %d audit entries older than %s", deleted, older_than.isoformat())
        return deleted
