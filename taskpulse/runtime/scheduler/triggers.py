"""Trigger calculator -- maps a trigger configuration and "now" to the next fire.

Every trigger kind has a pydantic model that parses the camelCase JSON the
CRUD layer stores and knows how to compute its next fire time. The public
entry point, :func:`next_fire_time`, never raises: configuration problems
come back as ``NextFire.never(NeverReason.invalid_config)``.

All wall-clock fields (cron fields, ``visualTime``, lunar dates, naive ISO
strings) are read in the scheduler timezone passed as ``tz``.
"""

from __future__ import annotations

import calendar
import enum
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Any, ClassVar, Literal
from zoneinfo import ZoneInfo

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..config.settings import DEFAULT_TIMEZONE
from ..errors import TaskConfigError
from . import lunar

logger = logging.getLogger(__name__)

_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")
_MIN_CONDITION_DELAY = timedelta(milliseconds=1)


class TriggerKind(enum.Enum):
    cron = "cron"
    interval = "interval"
    date = "date"
    visual = "visual"
    lunar = "lunar"
    countdown = "countdown"
    conditional = "conditional"


class NeverReason(enum.Enum):
    exhausted = "exhausted"
    invalid_config = "invalid_config"
    awaiting_condition = "awaiting_condition"


@dataclass(frozen=True)
class NextFire:
    """A fire time strictly after "now", or ``None`` with the reason why."""

    at: datetime | None
    reason: NeverReason | None = None
    detail: str = ""

    @property
    def scheduled(self) -> bool:
        return self.at is not None

    @classmethod
    def fire(cls, at: datetime) -> NextFire:
        return cls(at=at)

    @classmethod
    def never(cls, reason: NeverReason, detail: str = "") -> NextFire:
        return cls(at=None, reason=reason, detail=detail)


def _localize(dt: datetime, tz: tzinfo) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


def _add_months(dt: datetime, months: int, day: int) -> datetime:
    index = dt.month - 1 + months
    year, month = dt.year + index // 12, index % 12 + 1
    last = calendar.monthrange(year, month)[1]
    return dt.replace(year=year, month=month, day=min(day, last))


class TriggerConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    recurring: ClassVar[bool] = False

    def is_recurring(self) -> bool:
        return self.recurring

    def next_fire(self, now: datetime, tz: tzinfo) -> NextFire:
        raise NotImplementedError


class CronTrigger(TriggerConfig):
    recurring: ClassVar[bool] = True

    cron: str

    @field_validator("cron")
    @classmethod
    def _check_cron(cls, value: str) -> str:
        value = value.strip()
        if len(value.split()) != 5 or not croniter.is_valid(value):
            raise ValueError(f"invalid five-field cron expression: {value!r}")
        return value

    def next_fire(self, now: datetime, tz: tzinfo) -> NextFire:
        it = croniter(self.cron, now.astimezone(tz))
        nxt = it.get_next(datetime)
        while nxt <= now:
            nxt = it.get_next(datetime)
        return NextFire.fire(nxt)


class IntervalTrigger(TriggerConfig):
    recurring: ClassVar[bool] = True

    interval: int = Field(gt=0, description="Period in milliseconds")

    def next_fire(self, now: datetime, tz: tzinfo) -> NextFire:
        return NextFire.fire(now.astimezone(tz) + timedelta(milliseconds=self.interval))


class DateTrigger(TriggerConfig):
    at: datetime = Field(alias="date")

    def next_fire(self, now: datetime, tz: tzinfo) -> NextFire:
        target = _localize(self.at, tz)
        if target <= now:
            return NextFire.never(NeverReason.exhausted, f"{target.isoformat()} has passed")
        return NextFire.fire(target)


class VisualTrigger(TriggerConfig):
    """Human-friendly recurrence: once/minute/hour/day/week/month."""

    recurring: ClassVar[bool] = True

    visual_type: Literal["once", "minute", "hour", "day", "week", "month"] = Field(alias="visualType")
    visual_value: int = Field(default=1, ge=1, alias="visualValue")
    visual_time: str | None = Field(default=None, alias="visualTime")
    visual_days: list[int] = Field(default_factory=list, alias="visualDays")
    visual_date: int = Field(default=1, ge=1, le=31, alias="visualDate")

    @field_validator("visual_time")
    @classmethod
    def _check_time(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        m = _CLOCK_RE.match(value.strip())
        if not m or int(m.group(1)) > 23 or int(m.group(2)) > 59:
            raise ValueError(f"visualTime must be HH:MM, got {value!r}")
        return f"{int(m.group(1)):02d}:{m.group(2)}"

    @field_validator("visual_days")
    @classmethod
    def _check_days(cls, value: list[int]) -> list[int]:
        if any(d < 0 or d > 6 for d in value):
            raise ValueError("visualDays entries must be 0-6 (0 = Sunday)")
        return sorted(set(value))

    @model_validator(mode="after")
    def _check_required(self) -> VisualTrigger:
        if self.visual_type in ("once", "day", "week", "month") and self.visual_time is None:
            raise ValueError(f"visualTime is required for visualType={self.visual_type}")
        if self.visual_type == "week" and not self.visual_days:
            raise ValueError("visualDays is required for visualType=week")
        return self

    def _at_clock(self, day: datetime) -> datetime:
        hour, minute = (int(p) for p in (self.visual_time or "00:00").split(":"))
        return day.replace(hour=hour, minute=minute, second=0, microsecond=0)

    def next_fire(self, now: datetime, tz: tzinfo) -> NextFire:
        local = now.astimezone(tz)
        kind = self.visual_type

        if kind == "minute":
            return NextFire.fire(local + timedelta(minutes=self.visual_value))
        if kind == "hour":
            return NextFire.fire(local + timedelta(hours=self.visual_value))

        if kind == "once":
            candidate, step = self._at_clock(local), timedelta(days=1)
        elif kind == "day":
            step = timedelta(days=self.visual_value)
            candidate = self._at_clock(local + step)
        elif kind == "week":
            step = timedelta(days=7)
            candidate = self._at_clock(local + step)
            for offset in range(7):
                day = local + timedelta(days=offset)
                # visualDays counts from Sunday = 0; weekday() from Monday = 0.
                if (day.weekday() + 1) % 7 in self.visual_days:
                    option = self._at_clock(day)
                    if option > local:
                        candidate = option
                        break
        else:
            candidate = self._at_clock(_add_months(local, 0, self.visual_date))
            while candidate <= local:
                candidate = self._at_clock(_add_months(candidate, 1, self.visual_date))
            return NextFire.fire(candidate)

        while candidate <= local:
            candidate = self._at_clock(candidate + step)
        return NextFire.fire(candidate)


class LunarTrigger(TriggerConfig):
    lunar_month: int = Field(ge=1, le=12, alias="lunarMonth")
    lunar_day: int = Field(ge=1, le=30, alias="lunarDay")
    lunar_year: int | None = Field(default=None, alias="lunarYear")
    lunar_leap_month: bool = Field(default=False, alias="lunarLeapMonth")
    lunar_repeat: bool = Field(default=False, alias="lunarRepeat")
    lunar_festival: str | None = Field(default=None, alias="lunarFestival")

    def is_recurring(self) -> bool:
        return self.lunar_repeat

    def next_fire(self, now: datetime, tz: tzinfo) -> NextFire:
        local = now.astimezone(tz)
        if self.lunar_year is not None and not self.lunar_repeat:
            solar = lunar.lunar_to_solar(
                self.lunar_year, self.lunar_month, self.lunar_day, leap=self.lunar_leap_month,
            )
            if solar is None:
                return NextFire.never(NeverReason.invalid_config, "lunar date does not exist")
            candidate = datetime(solar.year, solar.month, solar.day, tzinfo=tz)
            if candidate <= local:
                return NextFire.never(NeverReason.exhausted, f"{solar.isoformat()} has passed")
            return NextFire.fire(candidate)

        # The lunar year starts in late Jan/Feb, so last lunar year's final
        # months can still fall ahead of us in the current Gregorian year.
        first_year = max(self.lunar_year or 0, local.year - 1)
        for solar in lunar.occurrences(
            self.lunar_month, self.lunar_day, first_year, leap=self.lunar_leap_month,
        ):
            candidate = datetime(solar.year, solar.month, solar.day, tzinfo=tz)
            if candidate > local:
                return NextFire.fire(candidate)
        return NextFire.never(NeverReason.exhausted, "no occurrence within the lunar table")


class CountdownTrigger(TriggerConfig):
    countdown_hours: int = Field(default=0, ge=0, alias="countdownHours")
    countdown_minutes: int = Field(default=0, ge=0, alias="countdownMinutes")
    countdown_seconds: int = Field(default=0, ge=0, alias="countdownSeconds")
    countdown_start_time: datetime | None = Field(default=None, alias="countdownStartTime")

    @property
    def total(self) -> timedelta:
        return timedelta(
            hours=self.countdown_hours,
            minutes=self.countdown_minutes,
            seconds=self.countdown_seconds,
        )

    @model_validator(mode="after")
    def _check_total(self) -> CountdownTrigger:
        if self.total <= timedelta(0):
            raise ValueError("countdown must be longer than zero seconds")
        return self

    def next_fire(self, now: datetime, tz: tzinfo) -> NextFire:
        start = _localize(self.countdown_start_time, tz) if self.countdown_start_time else now
        target = start.astimezone(tz) + self.total
        if target <= now:
            return NextFire.never(NeverReason.exhausted, f"countdown ended at {target.isoformat()}")
        return NextFire.fire(target)


STARTUP_CONDITIONS = frozenset({"system_startup", "system_resume"})


class ConditionalTrigger(TriggerConfig):
    condition_type: Literal[
        "system_startup", "system_resume", "cpu_usage", "memory_usage", "network_activity",
    ] = Field(alias="conditionType")
    condition_delay: int = Field(default=0, ge=0, alias="conditionDelay")
    condition_value: float | None = Field(default=None, alias="conditionValue")
    condition_threshold: float | None = Field(default=None, alias="conditionThreshold")

    @property
    def delay(self) -> timedelta:
        return max(timedelta(milliseconds=self.condition_delay), _MIN_CONDITION_DELAY)

    @property
    def threshold(self) -> float | None:
        if self.condition_threshold is not None:
            return self.condition_threshold
        return self.condition_value

    def is_satisfied(self, observed: float | None) -> bool:
        if self.threshold is None:
            return True
        return observed is not None and observed >= self.threshold

    def next_fire(self, now: datetime, tz: tzinfo) -> NextFire:
        if self.condition_type in STARTUP_CONDITIONS:
            return NextFire.fire(now.astimezone(tz) + self.delay)
        return NextFire.never(
            NeverReason.awaiting_condition, f"waiting for {self.condition_type} event",
        )


TRIGGER_MODELS: dict[TriggerKind, type[TriggerConfig]] = {
    TriggerKind.cron: CronTrigger,
    TriggerKind.interval: IntervalTrigger,
    TriggerKind.date: DateTrigger,
    TriggerKind.visual: VisualTrigger,
    TriggerKind.lunar: LunarTrigger,
    TriggerKind.countdown: CountdownTrigger,
    TriggerKind.conditional: ConditionalTrigger,
}


def _kind(kind: TriggerKind | str) -> TriggerKind:
    if isinstance(kind, TriggerKind):
        return kind
    try:
        return TriggerKind(kind)
    except ValueError:
        raise TaskConfigError(f"unknown trigger type: {kind!r}") from None


def parse_trigger(kind: TriggerKind | str, config: dict[str, Any] | None) -> TriggerConfig:
    model = TRIGGER_MODELS[_kind(kind)]
    try:
        return model.model_validate(config or {})
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in exc.errors()
        )
        raise TaskConfigError(f"invalid {model.__name__} configuration: {problems}") from None


def is_recurring(kind: TriggerKind | str, config: dict[str, Any] | None) -> bool:
    try:
        return parse_trigger(kind, config).is_recurring()
    except TaskConfigError:
        return False


def next_fire_time(
    kind: TriggerKind | str,
    config: dict[str, Any] | None,
    now: datetime,
    *,
    tz: tzinfo | None = None,
) -> NextFire:
    tz = tz or ZoneInfo(DEFAULT_TIMEZONE)
    now = _localize(now, tz)
    try:
        trigger = parse_trigger(kind, config)
        result = trigger.next_fire(now, tz)
    except TaskConfigError as exc:
        return NextFire.never(NeverReason.invalid_config, str(exc))
    except (ValueError, OverflowError, KeyError) as exc:
        logger.warning("[triggers] %s trigger evaluation failed: %s", kind, exc)
        return NextFire.never(NeverReason.invalid_config, str(exc))

    if result.at is not None and result.at <= now:
        return NextFire.never(NeverReason.exhausted, "computed time is not in the future")
    return result
