"""Rule evaluation: priority order, cooldowns and AND-ed conditions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from charge_pilot.automation.conditions import EvaluationContext, evaluate_condition
from charge_pilot.automation.models import AutomationRule, ConditionKind, RuleResult
from charge_pilot.data.sources import DataSource

logger = logging.getLogger(__name__)

_SOURCES_BY_KIND: dict[ConditionKind, frozenset[DataSource]] = {
    ConditionKind.BUY_PRICE: frozenset({DataSource.PRICES}),
    ConditionKind.FEED_IN_PRICE: frozenset({DataSource.PRICES}),
    ConditionKind.PRICE_FORECAST: frozenset({DataSource.PRICES}),
    ConditionKind.STATE_OF_CHARGE: frozenset({DataSource.TELEMETRY}),
    ConditionKind.BATTERY_TEMPERATURE: frozenset({DataSource.TELEMETRY}),
    ConditionKind.AMBIENT_TEMPERATURE: frozenset({DataSource.TELEMETRY, DataSource.WEATHER}),
    ConditionKind.SOLAR_RADIATION_FORECAST: frozenset({DataSource.WEATHER}),
    ConditionKind.CLOUD_COVER_FORECAST: frozenset({DataSource.WEATHER}),
    ConditionKind.TIME_OF_DAY: frozenset(),
}


@dataclass
class RuleEvaluation:
    """Selected rule (if any) plus every rule's result, in priority order."""

    triggered_rule: AutomationRule | None
    results: list[RuleResult] = field(default_factory=list)

    @property
    def triggered_rule_id(self) -> str | None:
        return self.triggered_rule.id if self.triggered_rule else None


def required_sources(rules: list[AutomationRule]) -> set[DataSource]:
    """Data sources any enabled rule's conditions read."""
    needed: set[DataSource] = set()
    for rule in rules:
        if not rule.enabled:
            continue
        for condition in rule.conditions:
            needed |= _SOURCES_BY_KIND[condition.kind]
    return needed


def sort_by_priority(rules: list[AutomationRule]) -> list[AutomationRule]:
    # Stable on ties so the stored order breaks them deterministically
    return sorted(rules, key=lambda r: r.priority)


def evaluate_rule(
    rule: AutomationRule,
    context: EvaluationContext,
    active_rule_id: str | None = None,
) -> RuleResult:
    """Evaluate a single rule.

    Conditions are evaluated even for rules in cooldown so the audit shows
    what they would have done. The currently active rule is exempt from its
    own cooldown, otherwise it could never continue.
    """
    if not rule.enabled:
        return RuleResult(
            rule_id=rule.id, name=rule.name, priority=rule.priority,
            qualified=False, skipped_reason="disabled",
        )

    conditions = [evaluate_condition(c, context) for c in rule.conditions]
    result = RuleResult(
        rule_id=rule.id,
        name=rule.name,
        priority=rule.priority,
        qualified=False,
        conditions=conditions,
    )
    if not conditions:
        result.skipped_reason = "no_conditions"
        return result

    remaining = rule.cooldown_remaining(context.now)
    if remaining and rule.id != active_rule_id:
        result.skipped_reason = "cooldown"
        result.cooldown_remaining_seconds = int(remaining.total_seconds())
        return result

    result.qualified = result.all_conditions_met
    return result


def evaluate_all(
    rules: list[AutomationRule],
    context: EvaluationContext,
    active_rule_id: str | None = None,
) -> RuleEvaluation:
    """Evaluate every rule; the first qualifying rule by priority wins.

    Lower-priority rules are still evaluated for the audit trail but never
    affect the selection.
    """
    evaluation = RuleEvaluation(triggered_rule=None)
    for rule in sort_by_priority(rules):
        result = evaluate_rule(rule, context, active_rule_id)
        evaluation.results.append(result)
        if result.qualified and evaluation.triggered_rule is None:
            evaluation.triggered_rule = rule

    if evaluation.triggered_rule is not None:
        logger.debug(
            "Rule %s (%s, priority %d) selected from %d rules",
            evaluation.triggered_rule.id, evaluation.triggered_rule.name,
            evaluation.triggered_rule.priority, len(rules),
        )
    return evaluation
