"""Condition evaluation.

Each condition kind has a dedicated evaluator. Evaluation is pure: all
data comes in through an ``EvaluationContext`` fetched beforehand.

Missing upstream data never satisfies a condition. The result records the
absence (``data_missing=True``) separately from a value that was present
but failed the comparison.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo

from charge_pilot.automation.models import (
    Aggregation,
    Condition,
    ConditionKind,
    ConditionResult,
    Operator,
    PriceChannel,
)
from charge_pilot.data.sources import CycleData
from charge_pilot.errors import DataUnavailable
from charge_pilot.forecast.series import ForecastSeries
from charge_pilot.forecast.window import resolve_window
from charge_pilot.timezone_utils import ensure_utc, in_daily_window

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluationContext:
    """Inputs shared by every condition in one cycle."""

    now: datetime
    data: CycleData
    local_tz: tzinfo = field(default=timezone.utc)

    @property
    def local_now(self) -> datetime:
        return ensure_utc(self.now).astimezone(self.local_tz)


Evaluator = Callable[[Condition, EvaluationContext], ConditionResult]


def evaluate_condition(condition: Condition, context: EvaluationContext) -> ConditionResult:
    """Evaluate one condition. Never raises for missing data."""
    evaluator = _EVALUATORS[condition.kind]
    try:
        return evaluator(condition, context)
    except DataUnavailable as e:
        logger.debug("Condition %s not met, data missing: %s", condition.kind.value, e)
        return ConditionResult(
            kind=condition.kind,
            met=False,
            operator=condition.operator.value,
            threshold=condition.threshold,
            data_missing=True,
            reason=str(e),
            aggregation=condition.aggregation.value if condition.kind.is_forecast else None,
        )


# ── Instantaneous values ────────────────────────────────────


def _compare_current(condition: Condition, actual: float | None, source: str) -> ConditionResult:
    if actual is None:
        raise DataUnavailable(source, "no current value")
    return ConditionResult(
        kind=condition.kind,
        met=condition.operator.compare(actual, condition.threshold),
        actual=actual,
        operator=condition.operator.value,
        threshold=condition.threshold,
    )


def _buy_price(condition: Condition, context: EvaluationContext) -> ConditionResult:
    prices = context.data.prices.require()
    return _compare_current(condition, prices.buy_now, "buy price")


def _feed_in_price(condition: Condition, context: EvaluationContext) -> ConditionResult:
    prices = context.data.prices.require()
    return _compare_current(condition, prices.feed_in_now, "feed-in price")


def _state_of_charge(condition: Condition, context: EvaluationContext) -> ConditionResult:
    telemetry = context.data.telemetry.require()
    return _compare_current(condition, telemetry.soc_pct, "state of charge")


def _battery_temperature(condition: Condition, context: EvaluationContext) -> ConditionResult:
    telemetry = context.data.telemetry.require()
    return _compare_current(condition, telemetry.battery_temp_c, "battery temperature")


def _ambient_temperature(condition: Condition, context: EvaluationContext) -> ConditionResult:
    # Prefer the inverter's own sensor; fall back to the weather service
    telemetry = context.data.telemetry.value
    if telemetry is not None and telemetry.ambient_temp_c is not None:
        return _compare_current(condition, telemetry.ambient_temp_c, "ambient temperature")
    weather = context.data.weather.value
    if weather is not None and weather.temperature_c is not None:
        return _compare_current(condition, weather.temperature_c, "ambient temperature")
    raise DataUnavailable("ambient temperature", "no inverter or weather reading")


def _time_of_day(condition: Condition, context: EvaluationContext) -> ConditionResult:
    local = context.local_now
    return ConditionResult(
        kind=condition.kind,
        met=in_daily_window(local, condition.start, condition.end),
        actual=local.strftime("%H:%M"),
        operator="in",
        threshold=(condition.start, condition.end),
    )


# ── Forecast windows ────────────────────────────────────────


def _aggregate(values: list[float], aggregation: Aggregation) -> float:
    if aggregation is Aggregation.MIN:
        return min(values)
    if aggregation is Aggregation.MAX:
        return max(values)
    return sum(values) / len(values)


def _compare_window(
    condition: Condition, series: ForecastSeries, context: EvaluationContext,
) -> ConditionResult:
    look_ahead = condition.look_ahead
    window = resolve_window(series, context.now, look_ahead.amount, look_ahead.unit)
    values = window.values
    operator: Operator = condition.operator

    if condition.aggregation is Aggregation.ANY:
        matching = [v for v in values if operator.compare(v, condition.threshold)]
        met = bool(matching)
        actual = matching[0] if matching else _aggregate(values, Aggregation.AVG)
    else:
        actual = _aggregate(values, condition.aggregation)
        met = operator.compare(actual, condition.threshold)

    return ConditionResult(
        kind=condition.kind,
        met=met,
        actual=round(actual, 3),
        operator=operator.value,
        threshold=condition.threshold,
        aggregation=condition.aggregation.value,
        window={
            "look_ahead": look_ahead.display(),
            "start": window.start.isoformat(),
            "end": window.end.isoformat(),
            "periods": len(window),
            "requested_periods": window.requested_periods,
        },
        complete=window.complete,
    )


def _solar_radiation(condition: Condition, context: EvaluationContext) -> ConditionResult:
    weather = context.data.weather.require()
    return _compare_window(condition, weather.solar_radiation, context)


def _cloud_cover(condition: Condition, context: EvaluationContext) -> ConditionResult:
    weather = context.data.weather.require()
    return _compare_window(condition, weather.cloud_cover, context)


def _price_forecast(condition: Condition, context: EvaluationContext) -> ConditionResult:
    prices = context.data.prices.require()
    series = prices.feed_in_forecast if condition.channel is PriceChannel.FEED_IN else prices.buy_forecast
    return _compare_window(condition, series, context)


_EVALUATORS: dict[ConditionKind, Evaluator] = {
    ConditionKind.BUY_PRICE: _buy_price,
    ConditionKind.FEED_IN_PRICE: _feed_in_price,
    ConditionKind.STATE_OF_CHARGE: _state_of_charge,
    ConditionKind.BATTERY_TEMPERATURE: _battery_temperature,
    ConditionKind.AMBIENT_TEMPERATURE: _ambient_temperature,
    ConditionKind.TIME_OF_DAY: _time_of_day,
    ConditionKind.SOLAR_RADIATION_FORECAST: _solar_radiation,
    ConditionKind.CLOUD_COVER_FORECAST: _cloud_cover,
    ConditionKind.PRICE_FORECAST: _price_forecast,
}
