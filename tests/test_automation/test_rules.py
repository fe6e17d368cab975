"""Tests for rule documents, condition evaluation and rule selection."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError

from charge_pilot.automation.conditions import EvaluationContext, evaluate_condition
from charge_pilot.automation.models import (
    AutomationRule,
    Condition,
    ConditionKind,
    Operator,
    RuleAction,
)
from charge_pilot.automation.rules import evaluate_all, required_sources
from charge_pilot.data.sources import CycleData, DataSource
from charge_pilot.forecast.openmeteo import WeatherData
from charge_pilot.forecast.series import ForecastSeries
from charge_pilot.forecast.window import LookAheadUnit
from charge_pilot.hardware.base import Telemetry, WorkMode
from charge_pilot.tariff.amber import PriceData

NOW = datetime(2026, 3, 1, 10, 20, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)
FIVE_MIN = timedelta(minutes=5)
AEST = timezone(timedelta(hours=10))


def _prices(buy: float | None = 25.0, feed_in: float | None = 5.0, forecast: list[float] | None = None) -> PriceData:
    start = NOW.replace(minute=20)
    values = forecast or [30.0] * 12
    buy_series = ForecastSeries.from_pairs(
        "buy", FIVE_MIN, [(start + FIVE_MIN * i, v) for i, v in enumerate(values)],
    )
    feed_series = ForecastSeries.from_pairs(
        "feed_in", FIVE_MIN, [(start + FIVE_MIN * i, v / 3) for i, v in enumerate(values)],
    )
    return PriceData(buy_now=buy, feed_in_now=feed_in, buy_forecast=buy_series, feed_in_forecast=feed_series)


def _weather(radiation: list[float], clouds: list[float] | None = None) -> WeatherData:
    start = NOW.replace(minute=0)
    clouds = clouds or [50.0] * len(radiation)
    return WeatherData(
        solar_radiation=ForecastSeries.from_pairs(
            "solar", HOUR, [(start + HOUR * i, v) for i, v in enumerate(radiation)],
        ),
        cloud_cover=ForecastSeries.from_pairs(
            "cloud", HOUR, [(start + HOUR * i, v) for i, v in enumerate(clouds)],
        ),
        temperature_c=18.0,
    )


def _context(
    telemetry: Telemetry | None = None,
    prices: PriceData | None = None,
    weather: WeatherData | None = None,
    now: datetime = NOW,
) -> EvaluationContext:
    return EvaluationContext(
        now=now, data=CycleData.from_values(telemetry, prices, weather), local_tz=AEST,
    )


def _rule(rule_id: str, priority: int, conditions: list[dict], **extra) -> AutomationRule:
    return AutomationRule.model_validate({
        "id": rule_id,
        "name": rule_id,
        "priority": priority,
        "conditions": conditions,
        "action": {"workMode": "ForceCharge", "durationMinutes": 30},
        **extra,
    })


def _met(evaluation) -> dict[str, list[bool]]:
    return {r.rule_id: [c.met for c in r.conditions] for r in evaluation.results}


SOC_BELOW_20 = {"kind": "stateOfCharge", "operator": "<", "threshold": 20}
BUY_BELOW_10 = {"kind": "buyPrice", "operator": "<", "threshold": 10}


# ── Documents ─────────────────────────────────────────────────


class TestRuleDocuments:
    def test_camel_case_document(self) -> None:
        rule = AutomationRule.model_validate({
            "id": "r1",
            "name": "Cheap charge",
            "cooldownMinutes": 15,
            "conditions": [{
                "kind": "priceForecast", "operator": "<=", "threshold": 5,
                "lookAhead": {"amount": 2, "unit": "hours"}, "aggregation": "min",
                "channel": "feedIn",
            }],
            "action": {"workMode": "ForceDischarge", "durationMinutes": 60, "fdPwr": 4000, "fdSoc": 25},
        })
        assert rule.cooldown_minutes == 15
        condition = rule.conditions[0]
        assert condition.look_ahead.unit is LookAheadUnit.HOURS
        assert condition.channel.value == "feedIn"
        assert rule.action.target_power_w == 4000
        assert rule.action.fd_soc == 25

    def test_forecast_condition_gets_default_lookahead(self) -> None:
        condition = Condition(kind=ConditionKind.SOLAR_RADIATION_FORECAST, operator=Operator.GT, threshold=300)
        assert condition.look_ahead.amount == 6
        assert condition.look_ahead.unit is LookAheadUnit.HOURS

    def test_between_needs_pair(self) -> None:
        with pytest.raises(ValidationError):
            Condition(kind=ConditionKind.STATE_OF_CHARGE, operator=Operator.BETWEEN, threshold=20)
        with pytest.raises(ValidationError):
            Condition.model_validate({"kind": "stateOfCharge", "operator": "between", "threshold": [80, 20]})

    def test_threshold_required(self) -> None:
        with pytest.raises(ValidationError):
            Condition(kind=ConditionKind.BUY_PRICE, operator=Operator.LT)

    def test_time_of_day_needs_window(self) -> None:
        with pytest.raises(ValidationError):
            Condition.model_validate({"kind": "timeOfDay", "start": "22:00"})

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Condition.model_validate({"kind": "windSpeed", "operator": "<", "threshold": 1})

    def test_duration_must_fit_in_a_day(self) -> None:
        with pytest.raises(ValidationError):
            RuleAction(duration_minutes=1440)

    def test_cooldown(self) -> None:
        rule = _rule("r", 1, [SOC_BELOW_20], cooldownMinutes=5, lastTriggeredAt=NOW.isoformat())
        assert rule.cooldown_remaining(NOW + timedelta(minutes=4)) == timedelta(minutes=1)
        assert rule.cooldown_remaining(NOW + timedelta(minutes=6)) == timedelta(0)


class TestBuildSegment:
    def test_segment_starts_now(self) -> None:
        action = RuleAction(work_mode=WorkMode.FORCE_CHARGE, duration_minutes=45, target_power_w=3000)
        seg = action.build_segment(NOW.replace(second=33), AEST)
        assert seg.start_time == NOW
        assert seg.duration_minutes == 45
        assert seg.target_power_w == 3000
        assert seg.enabled

    def test_duration_cut_at_local_midnight(self) -> None:
        late = datetime(2026, 3, 1, 13, 30, tzinfo=timezone.utc)  # 23:30 AEST
        seg = RuleAction(duration_minutes=120).build_segment(late, AEST)
        assert seg.duration_minutes == 29

    def test_no_segment_in_last_local_minute(self) -> None:
        last_minute = datetime(2026, 3, 1, 13, 59, 40, tzinfo=timezone.utc)  # 23:59 AEST
        assert RuleAction(duration_minutes=30).build_segment(last_minute, AEST) is None

    @pytest.mark.parametrize(
        ("start", "expected"),
        [
            # 01:00 AEDT on the day clocks go back: 22h59m on the wall, 23h59m elapsed
            (datetime(2026, 4, 4, 14, 0, tzinfo=timezone.utc), 1439),
            # 20:00 AEDT the evening before DST ends: no change inside the window
            (datetime(2026, 4, 4, 9, 0, tzinfo=timezone.utc), 239),
            # 01:00 AEST on the day clocks go forward: 22h59m on the wall, 21h59m elapsed
            (datetime(2026, 10, 3, 15, 0, tzinfo=timezone.utc), 1319),
        ],
    )
    def test_cut_uses_elapsed_time_across_dst(self, start: datetime, expected: int) -> None:
        seg = RuleAction(duration_minutes=1439).build_segment(start, ZoneInfo("Australia/Sydney"))
        assert seg.duration_minutes == expected


# ── Conditions ────────────────────────────────────────────────


class TestInstantConditions:
    def test_soc_met(self) -> None:
        cond = Condition.model_validate(SOC_BELOW_20)
        result = evaluate_condition(cond, _context(telemetry=Telemetry(soc_pct=15.0)))
        assert result.met
        assert result.actual == 15.0
        assert not result.data_missing

    def test_soc_not_met_is_not_missing(self) -> None:
        cond = Condition.model_validate(SOC_BELOW_20)
        result = evaluate_condition(cond, _context(telemetry=Telemetry(soc_pct=60.0)))
        assert not result.met
        assert not result.data_missing

    def test_missing_telemetry_not_met(self) -> None:
        cond = Condition.model_validate(SOC_BELOW_20)
        result = evaluate_condition(cond, _context())
        assert not result.met
        assert result.data_missing
        assert "telemetry" in result.reason

    def test_feed_in_price(self) -> None:
        cond = Condition.model_validate({"kind": "feedInPrice", "operator": ">=", "threshold": 5})
        assert evaluate_condition(cond, _context(prices=_prices(feed_in=5.0))).met

    def test_current_price_missing_from_response(self) -> None:
        cond = Condition.model_validate(BUY_BELOW_10)
        result = evaluate_condition(cond, _context(prices=_prices(buy=None)))
        assert result.data_missing

    @pytest.mark.parametrize(
        ("operator", "threshold", "expected"),
        [("==", 42, True), ("!=", 42, False), ("between", [40, 45], True), ("between", [43, 50], False)],
    )
    def test_operators(self, operator: str, threshold, expected: bool) -> None:
        cond = Condition.model_validate({"kind": "stateOfCharge", "operator": operator, "threshold": threshold})
        assert evaluate_condition(cond, _context(telemetry=Telemetry(soc_pct=42.0))).met is expected

    def test_battery_temperature(self) -> None:
        cond = Condition.model_validate({"kind": "batteryTemperature", "operator": ">", "threshold": 40})
        hot = Telemetry(soc_pct=50.0, battery_temp_c=45.0)
        assert evaluate_condition(cond, _context(telemetry=hot)).met

    def test_ambient_temperature_falls_back_to_weather(self) -> None:
        cond = Condition.model_validate({"kind": "ambientTemperature", "operator": "<", "threshold": 20})
        result = evaluate_condition(
            cond, _context(telemetry=Telemetry(soc_pct=50.0), weather=_weather([0.0])),
        )
        assert result.met
        assert result.actual == 18.0


class TestTimeOfDay:
    def test_within_window_local_time(self) -> None:
        # 10:20 UTC is 20:20 AEST
        cond = Condition.model_validate({"kind": "timeOfDay", "start": "20:00", "end": "21:00"})
        result = evaluate_condition(cond, _context())
        assert result.met
        assert result.actual == "20:20"

    def test_window_crossing_midnight(self) -> None:
        cond = Condition.model_validate({"kind": "timeOfDay", "start": "22:00", "end": "06:00"})
        late = datetime(2026, 3, 1, 13, 0, tzinfo=timezone.utc)  # 23:00 AEST
        assert evaluate_condition(cond, _context(now=late)).met
        assert not evaluate_condition(cond, _context()).met


class TestForecastConditions:
    def test_average_over_window_excludes_current_period(self) -> None:
        # Current hour (10:00) is 1000 and must not count
        weather = _weather([1000.0, 100.0, 200.0, 300.0])
        cond = Condition.model_validate({
            "kind": "solarRadiationForecast", "operator": "<", "threshold": 250,
            "lookAhead": {"amount": 3, "unit": "hours"}, "aggregation": "avg",
        })
        result = evaluate_condition(cond, _context(weather=weather))
        assert result.met
        assert result.actual == 200.0
        assert result.complete
        assert result.window["periods"] == 3

    def test_partial_window_evaluated_and_flagged(self) -> None:
        weather = _weather([0.0, 400.0, 500.0])
        cond = Condition.model_validate({
            "kind": "solarRadiationForecast", "operator": ">", "threshold": 300,
            "lookAhead": {"amount": 6, "unit": "hours"}, "aggregation": "min",
        })
        result = evaluate_condition(cond, _context(weather=weather))
        assert result.met
        assert result.complete is False
        assert result.window["requested_periods"] == 6

    def test_any_aggregation(self) -> None:
        weather = _weather([0.0, 50.0, 50.0], clouds=[0.0, 90.0, 20.0])
        cond = Condition.model_validate({
            "kind": "cloudCoverForecast", "operator": "<", "threshold": 30,
            "lookAhead": {"amount": 2, "unit": "hours"}, "aggregation": "any",
        })
        result = evaluate_condition(cond, _context(weather=weather))
        assert result.met
        assert result.actual == 20.0

    def test_price_forecast_channels(self) -> None:
        prices = _prices(forecast=[30.0, 6.0, 6.0, 6.0, 30.0, 30.0, 30.0])
        buy = Condition.model_validate({
            "kind": "priceForecast", "operator": "<", "threshold": 10,
            "lookAhead": {"amount": 15, "unit": "minutes"}, "aggregation": "max",
        })
        feed_in = Condition.model_validate({
            "kind": "priceForecast", "operator": "<", "threshold": 10,
            "lookAhead": {"amount": 15, "unit": "minutes"}, "aggregation": "max",
            "channel": "feedIn",
        })
        # Window is 10:25-10:40: the 10:20 period has started
        buy_result = evaluate_condition(buy, _context(prices=prices))
        assert buy_result.met
        assert buy_result.actual == 6.0
        assert evaluate_condition(feed_in, _context(prices=prices)).actual == 2.0

    def test_window_with_no_future_data_is_missing(self) -> None:
        weather = _weather([100.0])  # only the current hour
        cond = Condition.model_validate({"kind": "solarRadiationForecast", "operator": ">", "threshold": 0})
        result = evaluate_condition(cond, _context(weather=weather))
        assert not result.met
        assert result.data_missing

    def test_missing_weather_source(self) -> None:
        cond = Condition.model_validate({"kind": "cloudCoverForecast", "operator": "<", "threshold": 50})
        result = evaluate_condition(cond, _context())
        assert result.data_missing


# ── Rule selection ────────────────────────────────────────────


class TestEvaluateAll:
    def test_lowest_priority_number_wins(self) -> None:
        rules = [_rule("B", 2, [BUY_BELOW_10]), _rule("A", 1, [SOC_BELOW_20])]
        ctx = _context(telemetry=Telemetry(soc_pct=15.0), prices=_prices(buy=5.0))
        evaluation = evaluate_all(rules, ctx)
        assert evaluation.triggered_rule_id == "A"
        # Lower-priority rules are still evaluated for the audit
        assert [r.rule_id for r in evaluation.results] == ["A", "B"]
        assert all(r.qualified for r in evaluation.results)

    def test_priority_change_only_changes_selection(self) -> None:
        ctx = _context(telemetry=Telemetry(soc_pct=15.0), prices=_prices(buy=5.0))
        first = evaluate_all([_rule("A", 1, [SOC_BELOW_20]), _rule("B", 2, [BUY_BELOW_10])], ctx)
        second = evaluate_all([_rule("A", 3, [SOC_BELOW_20]), _rule("B", 2, [BUY_BELOW_10])], ctx)
        assert (first.triggered_rule_id, second.triggered_rule_id) == ("A", "B")
        assert _met(first) == _met(second)

    def test_all_conditions_required(self) -> None:
        rule = _rule("A", 1, [SOC_BELOW_20, BUY_BELOW_10])
        ctx = _context(telemetry=Telemetry(soc_pct=15.0), prices=_prices(buy=25.0))
        assert evaluate_all([rule], ctx).triggered_rule is None

    def test_missing_price_data_never_triggers(self) -> None:
        rule = _rule("A", 1, [SOC_BELOW_20, BUY_BELOW_10])
        ctx = _context(telemetry=Telemetry(soc_pct=15.0), prices=None)
        evaluation = evaluate_all([rule], ctx)
        assert evaluation.triggered_rule is None
        assert evaluation.results[0].conditions[1].data_missing

    def test_disabled_rule_skipped(self) -> None:
        rule = _rule("A", 1, [SOC_BELOW_20], enabled=False)
        evaluation = evaluate_all([rule], _context(telemetry=Telemetry(soc_pct=15.0)))
        assert evaluation.triggered_rule is None
        assert evaluation.results[0].skipped_reason == "disabled"

    def test_rule_without_conditions_never_qualifies(self) -> None:
        evaluation = evaluate_all([_rule("A", 1, [])], _context())
        assert evaluation.results[0].skipped_reason == "no_conditions"
        assert evaluation.triggered_rule is None

    def test_cooldown_blocks_new_trigger(self) -> None:
        rule = _rule("A", 1, [SOC_BELOW_20], cooldownMinutes=10, lastTriggeredAt=(NOW - timedelta(minutes=3)).isoformat())
        evaluation = evaluate_all([rule], _context(telemetry=Telemetry(soc_pct=15.0)))
        assert evaluation.triggered_rule is None
        assert evaluation.results[0].skipped_reason == "cooldown"
        assert evaluation.results[0].cooldown_remaining_seconds == 420

    def test_active_rule_exempt_from_own_cooldown(self) -> None:
        rule = _rule("A", 1, [SOC_BELOW_20], cooldownMinutes=10, lastTriggeredAt=NOW.isoformat())
        evaluation = evaluate_all([rule], _context(telemetry=Telemetry(soc_pct=15.0)), active_rule_id="A")
        assert evaluation.triggered_rule_id == "A"

    def test_required_sources(self) -> None:
        rules = [
            _rule("A", 1, [SOC_BELOW_20]),
            _rule("B", 2, [{"kind": "cloudCoverForecast", "operator": "<", "threshold": 20}]),
            _rule("C", 3, [BUY_BELOW_10], enabled=False),
        ]
        assert required_sources(rules) == {DataSource.TELEMETRY, DataSource.WEATHER}
