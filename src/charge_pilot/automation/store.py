"""Persistence contract for rules, automation state and the cycle audit."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from charge_pilot.automation.models import AutomationRule, AutomationState, CycleAuditEntry


@runtime_checkable
class AutomationStore(Protocol):
    """Document store used by the orchestrator and the control surface.

    Every write is awaited and acknowledged before returning.
    """

    async def load_state(self, user_id: str) -> AutomationState:
        """Stored state, or a fresh IDLE state for an unknown user."""
        ...

    async def save_state(self, state: AutomationState) -> None:
        ...

    async def list_rules(self, user_id: str) -> list[AutomationRule]:
        ...

    async def get_rule(self, user_id: str, rule_id: str) -> AutomationRule | None:
        ...

    async def save_rule(self, user_id: str, rule: AutomationRule) -> None:
        ...

    async def delete_rule(self, user_id: str, rule_id: str) -> bool:
        ...

    async def mark_rule_triggered(self, user_id: str, rule_id: str, at: datetime) -> None:
        ...

    async def append_audit(self, entry: CycleAuditEntry) -> None:
        ...

    async def list_audit(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        ...

    async def prune_audit(self, older_than: datetime) -> int:
        ...
