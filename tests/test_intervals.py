"""Tests for the interval algebra and schedule expansion."""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from salonbook.availability.intervals import (align_to_grid, build_schedule_intervals, clamp_intervals,
                                              intersect_intervals, is_range_within, merge_intervals,
                                              subtract_intervals)
from salonbook.availability.types import DATE, LOCATION, STAFF, WEEKLY, Interval, Schedule, ScheduleRule


def at(hour: int, minute: int = 0, day: int = 3) -> datetime:
    return datetime(2025, 3, day, hour, minute, tzinfo=timezone.utc)


def test_merge_joins_touching_and_overlapping_ranges() -> None:
    merged = merge_intervals([
        Interval(at(12), at(13)),
        Interval(at(9), at(10)),
        Interval(at(10), at(11)),
        Interval(at(10, 30), at(10, 45)),
        Interval(at(14), at(14)),
    ])

    assert merged == [Interval(at(9), at(11)), Interval(at(12), at(13))]


def test_intersect_keeps_common_parts_only() -> None:
    left = [Interval(at(9), at(12)), Interval(at(13), at(17))]
    right = [Interval(at(11), at(14))]

    assert intersect_intervals(left, right) == [Interval(at(11), at(12)), Interval(at(13), at(14))]


def test_subtract_punches_holes() -> None:
    base = [Interval(at(9), at(17))]
    remove = [Interval(at(10), at(11)), Interval(at(16), at(18))]

    assert subtract_intervals(base, remove) == [Interval(at(9), at(10)), Interval(at(11), at(16))]


def test_subtract_without_holes_returns_merged_base() -> None:
    base = [Interval(at(11), at(12)), Interval(at(9), at(11))]

    assert subtract_intervals(base, []) == [Interval(at(9), at(12))]


def test_clamp_drops_ranges_outside_window() -> None:
    window = Interval(at(10), at(12))
    clamped = clamp_intervals([Interval(at(8), at(9)), Interval(at(9), at(11)), Interval(at(11, 30), at(13))], window)

    assert clamped == [Interval(at(10), at(11)), Interval(at(11, 30), at(12))]


def test_is_range_within_requires_single_interval() -> None:
    intervals = [Interval(at(9), at(10)), Interval(at(10), at(11))]

    assert is_range_within(intervals, at(9, 15), at(10))
    assert not is_range_within(intervals, at(9, 30), at(10, 30))
    assert not is_range_within(intervals, at(10), at(9))


def test_align_to_grid_rounds_up() -> None:
    origin = at(9)
    step = timedelta(minutes=15)

    assert align_to_grid(at(9, 7), origin, step) == at(9, 15)
    assert align_to_grid(at(9, 30), origin, step) == at(9, 30)
    assert align_to_grid(at(9, 7), origin, timedelta(0)) == at(9, 7)


def test_weekly_rules_expand_per_day() -> None:
    schedule = Schedule(
        id="s1",
        owner_type=LOCATION,
        owner_id="1",
        timezone="UTC",
        rules=(
            ScheduleRule(id="mon", type=WEEKLY, weekday="MONDAY", start_minute=9 * 60, end_minute=17 * 60),
            ScheduleRule(id="tue", type=WEEKLY, weekday="TUESDAY", start_minute=10 * 60, end_minute=12 * 60),
        ),
    )
    # 2025-03-03 is a Monday
    window = Interval(at(0, day=3), at(0, day=5))

    intervals = build_schedule_intervals([schedule], LOCATION, "1", window)

    assert intervals == [Interval(at(9, day=3), at(17, day=3)), Interval(at(10, day=4), at(12, day=4))]


def test_rules_use_the_schedule_time_zone() -> None:
    schedule = Schedule(
        id="s1",
        owner_type=STAFF,
        owner_id="7",
        timezone="Europe/Berlin",
        rules=(ScheduleRule(id="mon", type=WEEKLY, weekday="MONDAY", start_minute=9 * 60, end_minute=12 * 60),),
    )
    window = Interval(at(0, day=3), at(23, day=3))

    # Berlin is UTC+1 in early March
    assert build_schedule_intervals([schedule], STAFF, "7", window) == [Interval(at(8), at(11))]


def test_date_rules_and_inactive_rules() -> None:
    schedule = Schedule(
        id="s1",
        owner_type=STAFF,
        owner_id="7",
        timezone="UTC",
        rules=(
            ScheduleRule(id="d", type=DATE, date=date(2025, 3, 4), start_minute=8 * 60, end_minute=9 * 60),
            ScheduleRule(
                id="off", type=WEEKLY, weekday="TUESDAY", start_minute=13 * 60, end_minute=14 * 60, is_active=False
            ),
            ScheduleRule(
                id="expired",
                type=WEEKLY,
                weekday="TUESDAY",
                start_minute=15 * 60,
                end_minute=16 * 60,
                effective_to=at(0, day=1),
            ),
        ),
    )
    window = Interval(at(0, day=3), at(0, day=6))

    assert build_schedule_intervals([schedule], STAFF, "7", window) == [Interval(at(8, day=4), at(9, day=4))]


def test_empty_window_and_other_owners_give_nothing() -> None:
    schedule = Schedule(
        id="s1",
        owner_type=STAFF,
        owner_id="7",
        timezone="UTC",
        rules=(ScheduleRule(id="mon", type=WEEKLY, weekday="MONDAY", start_minute=0, end_minute=60),),
    )

    assert build_schedule_intervals([schedule], STAFF, "7", Interval(at(10), at(10))) == []
    assert build_schedule_intervals([schedule], STAFF, "8", Interval(at(0), at(23))) == []
