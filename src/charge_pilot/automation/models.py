"""Automation domain models: rules, conditions, state and audit records.

Rules and conditions are user-authored JSON documents, validated with
pydantic and accepted in either camelCase or snake_case. Runtime results
and state are plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from charge_pilot.forecast.window import LookAheadUnit
from charge_pilot.hardware.base import DeviceSegment, WorkMode
from charge_pilot.timezone_utils import ensure_utc, parse_hhmm

# ── Conditions ──────────────────────────────────────────────


class ConditionKind(str, Enum):
    BUY_PRICE = "buyPrice"
    FEED_IN_PRICE = "feedInPrice"
    STATE_OF_CHARGE = "stateOfCharge"
    SOLAR_RADIATION_FORECAST = "solarRadiationForecast"
    CLOUD_COVER_FORECAST = "cloudCoverForecast"
    PRICE_FORECAST = "priceForecast"
    TIME_OF_DAY = "timeOfDay"
    BATTERY_TEMPERATURE = "batteryTemperature"
    AMBIENT_TEMPERATURE = "ambientTemperature"

    @property
    def is_forecast(self) -> bool:
        return self in FORECAST_KINDS


FORECAST_KINDS = frozenset({
    ConditionKind.SOLAR_RADIATION_FORECAST,
    ConditionKind.CLOUD_COVER_FORECAST,
    ConditionKind.PRICE_FORECAST,
})


class Operator(str, Enum):
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    EQ = "=="
    NE = "!="
    BETWEEN = "between"

    def compare(self, actual: float, threshold: float | tuple[float, float]) -> bool:
        if self is Operator.BETWEEN:
            low, high = threshold  # type: ignore[misc]
            return low <= actual <= high
        target = float(threshold)  # type: ignore[arg-type]
        if self is Operator.LT:
            return actual < target
        if self is Operator.LE:
            return actual <= target
        if self is Operator.GT:
            return actual > target
        if self is Operator.GE:
            return actual >= target
        if self is Operator.EQ:
            return actual == target
        return actual != target


class Aggregation(str, Enum):
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    ANY = "any"  # Met if any single period satisfies the comparison


class PriceChannel(str, Enum):
    BUY = "buy"
    FEED_IN = "feedIn"


class _Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class LookAhead(_Document):
    amount: float = Field(gt=0)
    unit: LookAheadUnit = LookAheadUnit.HOURS

    def display(self) -> str:
        suffix = {LookAheadUnit.MINUTES: "m", LookAheadUnit.HOURS: "h", LookAheadUnit.DAYS: "d"}
        return f"{self.amount:g}{suffix[self.unit]}"


# Defaults used when a forecast condition omits its lookahead
_DEFAULT_LOOKAHEAD: dict[ConditionKind, LookAhead] = {
    ConditionKind.SOLAR_RADIATION_FORECAST: LookAhead(amount=6, unit=LookAheadUnit.HOURS),
    ConditionKind.CLOUD_COVER_FORECAST: LookAhead(amount=6, unit=LookAheadUnit.HOURS),
    ConditionKind.PRICE_FORECAST: LookAhead(amount=30, unit=LookAheadUnit.MINUTES),
}


class Condition(_Document):
    """One comparison a rule requires. All of a rule's conditions must hold."""

    kind: ConditionKind
    operator: Operator = Operator.LT
    threshold: float | tuple[float, float] | None = None
    look_ahead: LookAhead | None = None
    aggregation: Aggregation = Aggregation.AVG
    channel: PriceChannel = PriceChannel.BUY  # priceForecast only
    start: str | None = None  # timeOfDay only, local HH:MM
    end: str | None = None

    @field_validator("start", "end")
    @classmethod
    def _check_time(cls, value: str | None) -> str | None:
        if value is None:
            return value
        parsed = parse_hhmm(value)
        return f"{parsed.hour:02d}:{parsed.minute:02d}"

    @model_validator(mode="after")
    def _check_shape(self) -> Condition:
        if self.kind is ConditionKind.TIME_OF_DAY:
            if self.start is None or self.end is None:
                raise ValueError("timeOfDay condition needs start and end")
            return self

        if self.threshold is None:
            raise ValueError(f"{self.kind.value} condition needs a threshold")
        if self.operator is Operator.BETWEEN:
            if not isinstance(self.threshold, tuple):
                raise ValueError("'between' needs a [low, high] threshold")
            if self.threshold[0] > self.threshold[1]:
                raise ValueError("'between' threshold low must not exceed high")
        elif isinstance(self.threshold, tuple):
            raise ValueError(f"operator {self.operator.value!r} needs a single threshold")

        if self.kind.is_forecast and self.look_ahead is None:
            object.__setattr__(self, "look_ahead", _DEFAULT_LOOKAHEAD[self.kind])
        return self


# ── Rules ───────────────────────────────────────────────────


class RuleAction(_Document):
    """What the device should do while a rule is active."""

    work_mode: WorkMode = WorkMode.SELF_USE
    duration_minutes: int = Field(30, ge=1, le=1439)
    target_power_w: int = Field(0, ge=0, alias="fdPwr")
    min_soc_on_grid: int = Field(20, ge=0, le=100)
    fd_soc: int = Field(35, ge=0, le=100)
    max_soc: int = Field(90, ge=0, le=100)

    def build_segment(self, now: datetime, device_tz: tzinfo) -> DeviceSegment | None:
        """Segment starting at ``now`` (minute precision).

        The device schedules within one local day, so the duration is cut
        short at 23:59 local rather than wrapping past midnight. Returns None
        when less than a minute of the local day is left.
        """
        start = ensure_utc(now).replace(second=0, microsecond=0)
        day_end = start.astimezone(device_tz).replace(hour=23, minute=59)
        # Elapsed minutes, so a DST change during the day is accounted for
        available = int((day_end.astimezone(timezone.utc) - start) / timedelta(minutes=1))
        if available < 1:
            return None
        duration = min(self.duration_minutes, available)
        return DeviceSegment(
            start_time=start,
            duration_minutes=duration,
            target_power_w=self.target_power_w,
            enabled=True,
            work_mode=self.work_mode,
            min_soc_on_grid=self.min_soc_on_grid,
            fd_soc=self.fd_soc,
            max_soc=self.max_soc,
        )


class AutomationRule(_Document):
    """A user's prioritised rule. Lower ``priority`` wins."""

    id: str
    name: str
    enabled: bool = True
    priority: int = 5
    cooldown_minutes: int = Field(5, ge=0)
    conditions: list[Condition] = Field(default_factory=list)
    action: RuleAction = RuleAction()
    last_triggered_at: datetime | None = None

    def cooldown_remaining(self, now: datetime) -> timedelta:
        if self.last_triggered_at is None:
            return timedelta(0)
        ready_at = ensure_utc(self.last_triggered_at) + timedelta(minutes=self.cooldown_minutes)
        return max(timedelta(0), ready_at - ensure_utc(now))


# ── Evaluation results ──────────────────────────────────────


@dataclass
class ConditionResult:
    """Outcome of one condition with the diagnostics behind it."""

    kind: ConditionKind
    met: bool
    actual: Any = None
    operator: str = ""
    threshold: Any = None
    data_missing: bool = False
    reason: str = ""
    aggregation: str | None = None
    window: dict[str, Any] | None = None
    complete: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "met": self.met,
            "actual": self.actual,
            "operator": self.operator,
            "threshold": list(self.threshold) if isinstance(self.threshold, tuple) else self.threshold,
            "data_missing": self.data_missing,
        }
        if self.reason:
            data["reason"] = self.reason
        if self.aggregation is not None:
            data["aggregation"] = self.aggregation
        if self.window is not None:
            data["window"] = self.window
            data["complete"] = self.complete
        return data


@dataclass
class RuleResult:
    """Evaluation of one rule in one cycle."""

    rule_id: str
    name: str
    priority: int
    qualified: bool
    skipped_reason: str = ""  # disabled, cooldown, no_conditions
    conditions: list[ConditionResult] = field(default_factory=list)
    cooldown_remaining_seconds: int = 0

    @property
    def all_conditions_met(self) -> bool:
        return bool(self.conditions) and all(c.met for c in self.conditions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "priority": self.priority,
            "qualified": self.qualified,
            "skipped_reason": self.skipped_reason,
            "cooldown_remaining_seconds": self.cooldown_remaining_seconds,
            "conditions": [c.to_dict() for c in self.conditions],
        }


# ── State ───────────────────────────────────────────────────


class RulePhase(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"  # Segment applied and verified on-device
    PENDING_CLEAR = "pending_clear"  # A clear failed verification; retry owed


class TransitionKind(str, Enum):
    NONE = "none"
    TRIGGER = "trigger"
    CONTINUE = "continue"
    PREEMPT = "preempt"
    CANCEL = "cancel"


@dataclass
class AutomationState:
    """Per-user automation state. Written only by the cycle orchestrator."""

    user_id: str
    enabled: bool = True
    phase: RulePhase = RulePhase.IDLE
    active_rule_id: str | None = None
    active_rule_name: str | None = None
    active_since: datetime | None = None
    active_segment: DeviceSegment | None = None
    clear_failure_attempts: int = 0
    clear_alert: bool = False
    last_cycle_at: datetime | None = None
    last_transition: TransitionKind = TransitionKind.NONE
    in_blackout: bool = False

    @property
    def status(self) -> str:
        """Dashboard status. Never reports a healthy state while a clear is owed."""
        if self.phase is RulePhase.PENDING_CLEAR:
            return "degraded" if self.clear_alert else "pending_clear"
        return self.phase.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "enabled": self.enabled,
            "phase": self.phase.value,
            "active_rule_id": self.active_rule_id,
            "active_rule_name": self.active_rule_name,
            "active_since": self.active_since.isoformat() if self.active_since else None,
            "active_segment": self.active_segment.to_dict() if self.active_segment else None,
            "clear_failure_attempts": self.clear_failure_attempts,
            "clear_alert": self.clear_alert,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "last_transition": self.last_transition.value,
            "in_blackout": self.in_blackout,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AutomationState:
        def _dt(value: str | None) -> datetime | None:
            return datetime.fromisoformat(value) if value else None

        segment = data.get("active_segment")
        return cls(
            user_id=data["user_id"],
            enabled=bool(data.get("enabled", True)),
            phase=RulePhase(data.get("phase", RulePhase.IDLE.value)),
            active_rule_id=data.get("active_rule_id"),
            active_rule_name=data.get("active_rule_name"),
            active_since=_dt(data.get("active_since")),
            active_segment=DeviceSegment.from_dict(segment) if segment else None,
            clear_failure_attempts=int(data.get("clear_failure_attempts", 0)),
            clear_alert=bool(data.get("clear_alert", False)),
            last_cycle_at=_dt(data.get("last_cycle_at")),
            last_transition=TransitionKind(data.get("last_transition", TransitionKind.NONE.value)),
            in_blackout=bool(data.get("in_blackout", False)),
        )


# ── Audit ───────────────────────────────────────────────────


@dataclass
class CycleAuditEntry:
    """Append-only record of one automation cycle."""

    cycle_id: str
    user_id: str
    timestamp: datetime
    rule_results: list[RuleResult] = field(default_factory=list)
    selected_rule_id: str | None = None
    selected_rule_name: str | None = None
    transition: TransitionKind = TransitionKind.NONE
    outcome: str = "ok"
    phase_after: RulePhase = RulePhase.IDLE
    duration_ms: int = 0
    timed_out: bool = False
    skipped_reason: str = ""
    data_sources: dict[str, Any] = field(default_factory=dict)
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "rule_results": [r.to_dict() for r in self.rule_results],
            "selected_rule_id": self.selected_rule_id,
            "selected_rule_name": self.selected_rule_name,
            "transition": self.transition.value,
            "outcome": self.outcome,
            "phase_after": self.phase_after.value,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
            "skipped_reason": self.skipped_reason,
            "data_sources": self.data_sources,
            "notes": list(self.notes),
        }


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
