"""Delay resolver - turns a configured step delay into an absolute due time.

Three delay shapes are supported, decided once when the step is configured:

- Immediate: due at the trigger instant.
- RelativeDuration: trigger + hours + minutes (pure elapsed time).
- NextCalendarDayAt: N calendar days later in the tenant's timezone, at a
  fixed local time of day (09:00 unless configured).

Calendar-day delays are computed on local wall-clock dates, so a "1 day at
09:00" step fires at 09:00 local across a DST change. All returned instants
are timezone-aware UTC.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from stageflow.core.constants import (
    DEFAULT_SEND_AT_HOUR,
    DEFAULT_SEND_AT_MINUTE,
    MAX_DELAY_DAYS,
)
from stageflow.core.errors import ConfigurationError
from stageflow.db.enums import DelayKind
from stageflow.utils.time import ensure_aware


@dataclass(frozen=True)
class Immediate:
    kind = DelayKind.IMMEDIATE


@dataclass(frozen=True)
class RelativeDuration:
    hours: int = 0
    minutes: int = 0

    kind = DelayKind.RELATIVE_DURATION


@dataclass(frozen=True)
class NextCalendarDayAt:
    days: int
    hour: int = DEFAULT_SEND_AT_HOUR
    minute: int = DEFAULT_SEND_AT_MINUTE

    kind = DelayKind.NEXT_CALENDAR_DAY_AT


DelaySpec = Immediate | RelativeDuration | NextCalendarDayAt


def delay_spec_from_fields(
    days: int = 0,
    hours: int = 0,
    minutes: int = 0,
    send_at_hour: int | None = None,
    send_at_minute: int | None = None,
) -> DelaySpec:
    """
    Build a DelaySpec from the raw configuration fields.

    days >= 1 selects the calendar-day form and may not be combined with
    hours/minutes. send_at_hour/send_at_minute only apply to that form.

    Raises:
        ConfigurationError: negative or out-of-range values, or conflicting forms
    """
    for label, value in (("days", days), ("hours", hours), ("minutes", minutes)):
        if value is None or value < 0:
            raise ConfigurationError(f"Delay {label} must be a non-negative integer")
    if days > MAX_DELAY_DAYS:
        raise ConfigurationError(f"Delay days cannot exceed {MAX_DELAY_DAYS}")
    if hours > 23:
        raise ConfigurationError("Delay hours must be between 0 and 23")
    if minutes > 59:
        raise ConfigurationError("Delay minutes must be between 0 and 59")

    if days >= 1:
        if hours or minutes:
            raise ConfigurationError(
                "A day-based delay cannot be combined with hours or minutes; "
                "use send_at_hour/send_at_minute for the time of day"
            )
        hour = DEFAULT_SEND_AT_HOUR if send_at_hour is None else send_at_hour
        minute = DEFAULT_SEND_AT_MINUTE if send_at_minute is None else send_at_minute
        if not 0 <= hour <= 23:
            raise ConfigurationError("send_at_hour must be between 0 and 23")
        if not 0 <= minute <= 59:
            raise ConfigurationError("send_at_minute must be between 0 and 59")
        return NextCalendarDayAt(days=days, hour=hour, minute=minute)

    if send_at_hour is not None or send_at_minute is not None:
        raise ConfigurationError("send_at_hour/send_at_minute require a day-based delay")
    if hours == 0 and minutes == 0:
        return Immediate()
    return RelativeDuration(hours=hours, minutes=minutes)


def delay_spec_to_columns(spec: DelaySpec) -> dict:
    """Persisted column values for a DelaySpec."""
    columns = {
        "delay_kind": spec.kind.value,
        "delay_days": 0,
        "delay_hours": 0,
        "delay_minutes": 0,
        "send_at_hour": None,
        "send_at_minute": None,
    }
    if isinstance(spec, RelativeDuration):
        columns["delay_hours"] = spec.hours
        columns["delay_minutes"] = spec.minutes
    elif isinstance(spec, NextCalendarDayAt):
        columns["delay_days"] = spec.days
        columns["send_at_hour"] = spec.hour
        columns["send_at_minute"] = spec.minute
    return columns


def delay_spec_from_columns(step) -> DelaySpec:
    """Rebuild the DelaySpec stored on an AutomationStep row."""
    kind = DelayKind(step.delay_kind)
    if kind == DelayKind.IMMEDIATE:
        return Immediate()
    if kind == DelayKind.RELATIVE_DURATION:
        return RelativeDuration(hours=step.delay_hours, minutes=step.delay_minutes)
    return NextCalendarDayAt(
        days=step.delay_days,
        hour=DEFAULT_SEND_AT_HOUR if step.send_at_hour is None else step.send_at_hour,
        minute=DEFAULT_SEND_AT_MINUTE if step.send_at_minute is None else step.send_at_minute,
    )


def local_wall_time(day, at: time, tz: ZoneInfo) -> datetime:
    """
    Interpret a local calendar date + time of day in tz, returned as UTC.

    Nonexistent times (spring-forward gap) are shifted forward by the gap;
    ambiguous times (fall-back) resolve to the first occurrence.
    """
    # fold=0 applies the pre-transition offset in both cases (PEP 495)
    aware = datetime.combine(day, at).replace(tzinfo=tz, fold=0)
    return aware.astimezone(timezone.utc)


def resolve_due_at(trigger_at: datetime, spec: DelaySpec, tz: ZoneInfo) -> datetime:
    """Compute the absolute due instant for a step given its trigger time."""
    trigger_at = ensure_aware(trigger_at).astimezone(timezone.utc)

    if isinstance(spec, Immediate):
        return trigger_at
    if isinstance(spec, RelativeDuration):
        return trigger_at + timedelta(hours=spec.hours, minutes=spec.minutes)
    if isinstance(spec, NextCalendarDayAt):
        local_date = trigger_at.astimezone(tz).date()
        target_date = local_date + timedelta(days=spec.days)
        return local_wall_time(target_date, time(spec.hour, spec.minute), tz)
    raise ConfigurationError(f"Unknown delay spec: {spec!r}")


def in_quiet_hours(hour: int, start: int, end: int) -> bool:
    """Inclusive hour window; start > end crosses midnight (e.g. 22-6)."""
    if start <= end:
        return start <= hour <= end
    return hour >= start or hour <= end


def defer_for_quiet_hours(
    due_at: datetime,
    tz: ZoneInfo,
    start_hour: int | None,
    end_hour: int | None,
) -> datetime:
    """
    Move a due time that falls inside a quiet window to the window's end.

    The window is inclusive of both hours, so a 22-6 window releases at
    07:00 local. Returns due_at unchanged when no window is configured.
    """
    if start_hour is None or end_hour is None:
        return due_at
    local = ensure_aware(due_at).astimezone(tz)
    if not in_quiet_hours(local.hour, start_hour, end_hour):
        return due_at

    release_day = local.date()
    if start_hour > end_hour and local.hour >= start_hour:
        release_day += timedelta(days=1)
    release_hour = end_hour + 1
    if release_hour == 24:
        release_hour = 0
        release_day += timedelta(days=1)
    return local_wall_time(release_day, time(release_hour, 0), tz)
