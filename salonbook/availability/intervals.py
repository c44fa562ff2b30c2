"""Interval algebra over half-open UTC datetime ranges."""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .types import DATE, WEEKLY, Interval, Schedule, ScheduleRule

# Python's weekday() is Monday=0; rules use SUNDAY..SATURDAY.
_WEEKDAY_NAMES = ("MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY", "SUNDAY")


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    ordered = sorted((entry for entry in intervals if entry.end > entry.start), key=lambda entry: entry.start)
    merged: list[Interval] = []
    for entry in ordered:
        if merged and entry.start <= merged[-1].end:
            last = merged[-1]
            if entry.end > last.end:
                merged[-1] = Interval(last.start, entry.end)
            continue
        merged.append(entry)
    return merged


def intersect_intervals(left: Iterable[Interval], right: Iterable[Interval]) -> list[Interval]:
    a = merge_intervals(left)
    b = merge_intervals(right)
    result: list[Interval] = []
    i = j = 0
    while i < len(a) and j < len(b):
        start = max(a[i].start, b[j].start)
        end = min(a[i].end, b[j].end)
        if start < end:
            result.append(Interval(start, end))
        if a[i].end < b[j].end:
            i += 1
        else:
            j += 1
    return result


def subtract_intervals(base: Iterable[Interval], remove: Iterable[Interval]) -> list[Interval]:
    holes = merge_intervals(remove)
    if not holes:
        return merge_intervals(base)

    result: list[Interval] = []
    for entry in merge_intervals(base):
        cursor = entry.start
        for hole in holes:
            if hole.end <= cursor:
                continue
            if hole.start >= entry.end:
                break
            if hole.start > cursor:
                result.append(Interval(cursor, hole.start))
            cursor = max(cursor, hole.end)
            if cursor >= entry.end:
                break
        if cursor < entry.end:
            result.append(Interval(cursor, entry.end))
    return result


def clamp_intervals(intervals: Iterable[Interval], window: Interval) -> list[Interval]:
    clamped = []
    for entry in intervals:
        start = max(entry.start, window.start)
        end = min(entry.end, window.end)
        if start < end:
            clamped.append(Interval(start, end))
    return clamped


def is_range_within(intervals: Sequence[Interval], start: datetime, end: datetime) -> bool:
    """True when ``[start, end)`` fits entirely inside a single interval."""
    if end < start:
        return False
    return any(entry.start <= start and end <= entry.end for entry in intervals)


def align_to_grid(value: datetime, origin: datetime, step: timedelta) -> datetime:
    """Round ``value`` up to the next ``origin + k * step``."""
    if step <= timedelta(0):
        return value
    remainder = (value - origin) % step
    if not remainder:
        return value
    return value + (step - remainder)


def resolve_timezone(name: str | None) -> ZoneInfo | timezone:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def _rule_is_active(rule: ScheduleRule, window: Interval) -> bool:
    if rule.is_active is False:
        return False
    if rule.effective_from is not None and rule.effective_from > window.end:
        return False
    if rule.effective_to is not None and rule.effective_to < window.start:
        return False
    return True


def _rule_matches_day(rule: ScheduleRule, day: date) -> bool:
    if rule.type == WEEKLY:
        return rule.weekday == _WEEKDAY_NAMES[day.weekday()]
    if rule.type == DATE:
        if rule.date is None:
            return False
        rule_date = rule.date if isinstance(rule.date, date) else date.fromisoformat(str(rule.date)[:10])
        return rule_date == day
    return False


def _local_days(window: Interval, tz) -> list[date]:
    first = window.start.astimezone(tz).date()
    last = (window.end - timedelta(milliseconds=1)).astimezone(tz).date()
    days = []
    current = first
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days


def build_schedule_intervals(
    schedules: Iterable[Schedule],
    owner_type: str,
    owner_id: str,
    window: Interval,
) -> list[Interval]:
    """Expand the owner's schedule rules into concrete UTC intervals within ``window``.

    Rule minutes are wall-clock minutes in the schedule's own time zone, so a
    09:00 opening stays at 09:00 local time across DST changes.
    """
    if window.end <= window.start:
        return []

    collected: list[Interval] = []
    for schedule in schedules:
        if schedule.owner_type != owner_type or schedule.owner_id != owner_id:
            continue
        tz = resolve_timezone(schedule.timezone)
        active_rules = [rule for rule in schedule.rules if _rule_is_active(rule, window)]
        if not active_rules:
            continue
        for day in _local_days(window, tz):
            midnight = datetime.combine(day, time(0), tzinfo=tz)
            for rule in active_rules:
                if not _rule_matches_day(rule, day):
                    continue
                start = (midnight + timedelta(minutes=rule.start_minute)).astimezone(timezone.utc)
                end = (midnight + timedelta(minutes=rule.end_minute)).astimezone(timezone.utc)
                collected.append(Interval(start, end))

    return merge_intervals(clamp_intervals(collected, window))
