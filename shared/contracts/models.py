from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .enums import DoseStatus, IntervalUnit, NotificationKind, ScheduleMode
from .errors import InvalidSchedule

_FIXED_STEPS = {
    IntervalUnit.MINUTE: timedelta(minutes=1),
    IntervalUnit.HOUR: timedelta(hours=1),
    IntervalUnit.DAY: timedelta(days=1),
    IntervalUnit.WEEK: timedelta(weeks=1),
}


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ActiveWindow(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    start: date
    end: date | None = None

    @model_validator(mode="after")
    def validate_bounds(self) -> "ActiveWindow":
        if self.end is not None and self.end < self.start:
            raise ValueError("active window end must not precede its start")
        return self


class Schedule(BaseModel):
    """Administration rule for one medication.

    Listing ``times_of_day`` puts the schedule in fixed-time mode, otherwise
    ``interval_quantity`` x ``interval_unit`` applies. ``weekday_filter`` uses
    Monday=0 .. Sunday=6, the same numbering as ``date.weekday()``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    interval_quantity: int = Field(default=1, ge=1)
    interval_unit: IntervalUnit = IntervalUnit.HOUR
    times_of_day: tuple[time, ...] | None = None
    weekday_filter: frozenset[int] | None = None
    active_window: ActiveWindow
    as_needed: bool = False
    timezone: str = "UTC"

    @field_validator("times_of_day", mode="before")
    @classmethod
    def parse_times_of_day(cls, value: Any) -> Any:
        if value is None or isinstance(value, (str, bytes)):
            return value
        parsed = []
        for entry in value:
            if isinstance(entry, str):
                try:
                    entry = time.fromisoformat(entry.strip())
                except ValueError as exc:
                    raise ValueError(f"invalid time of day: {entry!r}") from exc
            parsed.append(entry)
        return parsed

    @field_validator("times_of_day")
    @classmethod
    def normalize_times_of_day(cls, value: tuple[time, ...] | None) -> tuple[time, ...] | None:
        if value is None:
            return None
        if not value:
            raise ValueError("times_of_day must list at least one time when given")
        for entry in value:
            if entry.tzinfo is not None:
                raise ValueError("times_of_day entries are wall-clock times and must not carry a timezone")
            if entry.second or entry.microsecond:
                raise ValueError(f"times_of_day entries are minute precision, got {entry.isoformat()}")
        return tuple(sorted(set(value)))

    @field_validator("weekday_filter", mode="before")
    @classmethod
    def empty_filter_means_every_day(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple, set, frozenset)) and len(value) == 0:
            return None
        return value

    @field_validator("weekday_filter")
    @classmethod
    def validate_weekdays(cls, value: frozenset[int] | None) -> frozenset[int] | None:
        if value is not None and any(day < 0 or day > 6 for day in value):
            raise ValueError("weekday_filter values must be between 0 (Monday) and 6 (Sunday)")
        return value

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {value!r}") from exc
        return value

    @property
    def mode(self) -> ScheduleMode:
        return ScheduleMode.FIXED_TIME if self.times_of_day is not None else ScheduleMode.INTERVAL

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def interval_step(self) -> timedelta | relativedelta:
        if self.interval_unit == IntervalUnit.MONTH:
            return relativedelta(months=self.interval_quantity)
        return _FIXED_STEPS[self.interval_unit] * self.interval_quantity

    def active_start_instant(self) -> datetime:
        return datetime.combine(self.active_window.start, time(0), tzinfo=self.zone).astimezone(timezone.utc)

    def active_end_instant(self) -> datetime | None:
        """Exclusive bound: midnight after the last active day."""
        if self.active_window.end is None:
            return None
        next_day = self.active_window.end + timedelta(days=1)
        return datetime.combine(next_day, time(0), tzinfo=self.zone).astimezone(timezone.utc)


def build_schedule(**fields: Any) -> Schedule:
    try:
        return Schedule(**fields)
    except ValidationError as exc:
        raise InvalidSchedule(str(exc)) from exc


class Medication(BaseModel):
    id: int
    name: str
    pet_name: str = ""
    active: bool = True
    schedule: Schedule
    caregiver_user_ids: list[int] = Field(default_factory=list)


class DoseEvent(BaseModel):
    id: int
    medication_id: int
    occurrence_time: datetime
    scheduled_time: datetime
    status: DoseStatus = DoseStatus.DUE
    resolution_ref: int | None = None
    reminded_at: datetime | None = None
    overdue_notified_at: datetime | None = None

    @field_validator("occurrence_time", "scheduled_time", "reminded_at", "overdue_notified_at")
    @classmethod
    def normalize_utc(cls, value: datetime | None) -> datetime | None:
        return None if value is None else as_utc(value)

    @property
    def is_terminal(self) -> bool:
        return self.status != DoseStatus.DUE

    def notified_at(self, kind: NotificationKind) -> datetime | None:
        return self.reminded_at if kind == NotificationKind.REMINDER else self.overdue_notified_at


class DueDose(BaseModel):
    """A due dose event joined with what a notification needs to say."""

    dose_event_id: int
    medication_id: int
    scheduled_time: datetime
    medication_name: str
    pet_name: str
    recipient_user_ids: list[int] = Field(default_factory=list)


class DueQuery(BaseModel):
    start: datetime | None = None
    end: datetime | None = None
    end_inclusive: bool = True
    not_notified: NotificationKind | None = None
    as_of: datetime | None = None

    @field_validator("start", "end", "as_of")
    @classmethod
    def normalize_utc(cls, value: datetime | None) -> datetime | None:
        return None if value is None else as_utc(value)

    def covers(self, scheduled_time: datetime) -> bool:
        if self.start is not None and scheduled_time < self.start:
            return False
        if self.end is not None:
            if self.end_inclusive and scheduled_time > self.end:
                return False
            if not self.end_inclusive and scheduled_time >= self.end:
                return False
        return True
