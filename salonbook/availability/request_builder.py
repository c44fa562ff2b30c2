"""Translate persisted rows into an engine ``AvailabilityRequest``."""
from __future__ import annotations

import math
from dataclasses import replace
from datetime import date, datetime
from typing import Iterable, Mapping, Optional

from ..timeutil import ensure_utc
from .intervals import resolve_timezone
from .types import (
    DATE,
    LOCATION,
    STAFF,
    WEEKLY,
    AppointmentBlock,
    AvailabilityException,
    AvailabilityRequest,
    Interval,
    Resource,
    Schedule,
    ScheduleRule,
    ServiceDefinition,
    ServiceStepDefinition,
    ServiceStepResourceRequirement,
    StaffMember,
    TimeOff,
)

ALL_WEEKDAYS = ("SUNDAY", "MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY")


def _str_id(value) -> Optional[str]:
    return None if value is None else str(value)


def build_availability_request(
    *,
    location_id,
    window: Interval,
    services: Iterable,
    staff: Iterable,
    resources: Iterable = (),
    schedules: Iterable = (),
    time_offs: Iterable = (),
    availability_exceptions: Iterable = (),
    appointment_items: Iterable = (),
    extra_schedules: Iterable[Schedule] = (),
    extra_time_offs: Iterable[TimeOff] = (),
    staff_id=None,
    slot_granularity_minutes: Optional[int] = None,
    duration_overrides: Optional[Mapping] = None,
) -> AvailabilityRequest:
    """Build the engine input from ORM rows.

    ``extra_schedules`` and ``extra_time_offs`` carry already-mapped inputs
    that do not live in the database, such as shift-plan days fetched from
    the external planner.
    """
    return AvailabilityRequest(
        location_id=str(location_id),
        window=window,
        services=[map_service(service, duration_overrides) for service in services],
        staff=[StaffMember(id=str(member.staff_id), location_id=str(location_id)) for member in staff],
        resources=[
            Resource(
                id=str(resource.resource_id),
                location_id=str(resource.location_id),
                type=resource.type,
                capacity=resource.capacity or 1,
            )
            for resource in sorted(resources, key=lambda entry: str(entry.resource_id))
        ],
        schedules=[map_schedule(schedule) for schedule in schedules] + list(extra_schedules),
        time_offs=[
            TimeOff(
                id=str(entry.time_off_id),
                location_id=str(entry.location_id),
                starts_at=ensure_utc(entry.starts_at),
                ends_at=ensure_utc(entry.ends_at),
                staff_id=_str_id(entry.staff_id),
                resource_id=_str_id(entry.resource_id),
                reason=entry.reason,
            )
            for entry in time_offs
        ]
        + list(extra_time_offs),
        availability_exceptions=[
            AvailabilityException(
                id=str(entry.exception_id),
                location_id=str(entry.location_id),
                type=entry.type,
                starts_at=ensure_utc(entry.starts_at),
                ends_at=ensure_utc(entry.ends_at),
                staff_id=_str_id(entry.staff_id),
                resource_id=_str_id(entry.resource_id),
            )
            for entry in availability_exceptions
        ],
        appointments=[
            AppointmentBlock(
                id=str(item.item_id),
                location_id=str(location_id),
                starts_at=ensure_utc(item.starts_at),
                ends_at=ensure_utc(item.ends_at),
                staff_id=_str_id(item.staff_id),
                resource_ids=(str(item.resource_id),) if item.resource_id else (),
            )
            for item in appointment_items
        ],
        staff_id=_str_id(staff_id),
        slot_granularity_minutes=slot_granularity_minutes,
    )


def map_service(service, duration_overrides: Optional[Mapping] = None) -> ServiceDefinition:
    service_id = str(service.service_id)
    if service.steps:
        steps = [map_service_step(step) for step in service.steps]
    else:
        steps = [
            ServiceStepDefinition(
                id=f"{service_id}-fallback-step",
                name=service.name,
                duration=max(service.duration_minutes or 0, 1),
                requires_staff=True,
            )
        ]

    extra = _read_duration_override(duration_overrides, service_id)
    if extra > 0:
        steps = _apply_duration_override(steps, extra)

    return ServiceDefinition(
        id=service_id,
        location_id=str(service.location_id),
        steps=tuple(steps),
        buffer_before=service.buffer_before or 0,
        buffer_after=service.buffer_after or 0,
    )


def map_service_step(step) -> ServiceStepDefinition:
    links = sorted(step.resources or [], key=lambda link: str(link.resource_id or ""))
    requirements = []
    for link in links:
        resource_type = link.resource_type
        if not resource_type and getattr(link, "resource", None) is not None:
            resource_type = link.resource.type
        requirements.append(
            ServiceStepResourceRequirement(
                resource_ids=(str(link.resource_id),) if link.resource_id else (),
                resource_type=resource_type,
                quantity=link.quantity or 1,
                optional=bool(link.optional),
            )
        )
    allowed = step.allowed_staff_ids
    return ServiceStepDefinition(
        id=str(step.step_id),
        name=step.name,
        duration=step.duration_minutes,
        requires_staff=(step.min_staff or 0) > 0,
        allowed_staff_ids=tuple(str(entry) for entry in allowed) if allowed else None,
        resources=tuple(requirements),
    )


def _read_duration_override(overrides: Optional[Mapping], service_id: str) -> int:
    if not overrides:
        return 0
    raw = overrides.get(service_id)
    if raw is None:
        return 0
    try:
        return max(0, math.floor(float(raw) + 0.5))
    except (TypeError, ValueError, OverflowError):
        return 0


def _apply_duration_override(steps: list[ServiceStepDefinition], extra: int) -> list[ServiceStepDefinition]:
    """Extra minutes go to the last step that needs staff (or the last step)."""
    target = len(steps) - 1
    for index in range(len(steps) - 1, -1, -1):
        if steps[index].requires_staff is not False:
            target = index
            break
    updated = list(steps)
    step = updated[target]
    updated[target] = replace(step, duration=max(1, step.duration + extra))
    return updated


def map_schedule(schedule) -> Schedule:
    if schedule.owner_type == LOCATION:
        owner_id = schedule.location_id
    elif schedule.owner_type == STAFF:
        owner_id = schedule.staff_id
    else:
        owner_id = schedule.resource_id

    tz = resolve_timezone(schedule.timezone)
    rules = []
    for rule in schedule.rules:
        effective_from = ensure_utc(rule.effective_from)
        rule_date = None
        if rule.rule_type == DATE and effective_from is not None:
            rule_date = effective_from.astimezone(tz).date()
        rules.append(
            ScheduleRule(
                id=str(rule.rule_id),
                type=rule.rule_type,
                weekday=rule.weekday,
                date=rule_date,
                start_minute=rule.start_minute,
                end_minute=rule.end_minute,
                is_active=rule.is_active if rule.is_active is not None else True,
                effective_from=effective_from,
                effective_to=ensure_utc(rule.effective_to),
            )
        )
    return Schedule(
        id=str(schedule.schedule_id),
        owner_type=schedule.owner_type,
        owner_id=_str_id(owner_id),
        timezone=schedule.timezone,
        rules=tuple(rules),
    )


def always_open_location_schedule(location_id, timezone: str) -> Schedule:
    """Round-the-clock opening hours, used when staff hours alone decide availability."""
    return Schedule(
        id=f"{location_id}-always-open",
        owner_type=LOCATION,
        owner_id=str(location_id),
        timezone=timezone,
        rules=tuple(
            ScheduleRule(
                id=f"always-open-{weekday.lower()}",
                type=WEEKLY,
                weekday=weekday,
                start_minute=0,
                end_minute=24 * 60,
            )
            for weekday in ALL_WEEKDAYS
        ),
    )


def parse_clock(value: object) -> Optional[int]:
    """``"09:30"`` -> 570 minutes after midnight; ``"24:00"`` is allowed as end of day."""
    if not isinstance(value, str):
        return None
    parts = value.strip().split(":")
    if len(parts) < 2:
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hours <= 24 and 0 <= minutes < 60) or (hours == 24 and minutes):
        return None
    return hours * 60 + minutes


def shift_plan_schedule(staff_id, days: Iterable[Mapping], timezone: str) -> Schedule:
    """Map shift-plan days ``{isoDate, start, end}`` to a staff schedule of DATE rules."""
    rules = []
    for index, day in enumerate(days):
        iso_date = day.get("isoDate")
        start = parse_clock(day.get("start"))
        end = parse_clock(day.get("end"))
        if not isinstance(iso_date, str) or start is None or end is None or end <= start:
            continue
        try:
            parsed = date.fromisoformat(iso_date[:10])
        except ValueError:
            continue
        rules.append(
            ScheduleRule(
                id=f"shift-{staff_id}-{iso_date}-{index}",
                type=DATE,
                date=parsed,
                start_minute=start,
                end_minute=end,
            )
        )
    return Schedule(
        id=f"shift-plan-{staff_id}",
        owner_type=STAFF,
        owner_id=str(staff_id),
        timezone=timezone,
        rules=tuple(rules),
    )


def blocking_time_off(location_id, staff_id, window: Interval, reason: str) -> TimeOff:
    """Block a staff member for the whole window."""
    return TimeOff(
        id=f"blocked-{staff_id}-{int(window.start.timestamp())}",
        location_id=str(location_id),
        starts_at=window.start,
        ends_at=window.end,
        staff_id=str(staff_id),
        reason=reason,
    )


def window_from(start: datetime, end: datetime) -> Interval:
    return Interval(ensure_utc(start), ensure_utc(end))
