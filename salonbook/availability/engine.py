"""Slot search over staff, resources and location opening hours."""
from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..timeutil import epoch_ms, to_iso
from .intervals import (
    align_to_grid,
    build_schedule_intervals,
    clamp_intervals,
    intersect_intervals,
    is_range_within,
    merge_intervals,
    subtract_intervals,
)
from .types import (
    BLOCK,
    LOCATION,
    RESOURCE,
    STAFF,
    AvailabilityRequest,
    AvailabilitySlot,
    Interval,
    Resource,
    ServiceStepResourceRequirement,
    SlotServiceAllocation,
    SlotStepAllocation,
)

DEFAULT_GRANULARITY_MINUTES = 5


@dataclass
class AvailabilityContext:
    location_intervals: list[Interval]
    staff_availability: dict[str, list[Interval]]
    resource_availability: dict[str, list[Interval]]
    resources: list[Resource]


def find_availability(request: AvailabilityRequest) -> list[AvailabilitySlot]:
    """Return every bookable slot for the requested service combination, ordered by start."""
    window = request.window
    if window.end <= window.start or not request.services:
        return []
    if not any(service.steps for service in request.services):
        return []

    granularity = request.slot_granularity_minutes or DEFAULT_GRANULARITY_MINUTES
    step = timedelta(minutes=max(granularity, 1))

    context = build_context(request)
    if not context.location_intervals:
        return []

    total_duration = sum(
        (step_def.duration for service in request.services for step_def in service.steps), 0
    )
    total_buffer_after = sum(service.buffer_after for service in request.services)
    max_start = window.end - timedelta(minutes=total_duration + total_buffer_after)

    staff_ids = [member.id for member in request.staff]
    if request.staff_id:
        staff_ids = [staff_id for staff_id in staff_ids if staff_id == request.staff_id]

    slots: list[AvailabilitySlot] = []
    for staff_id in staff_ids:
        for interval in context.staff_availability.get(staff_id, []):
            candidate = align_to_grid(max(interval.start, window.start), window.start, step)
            while candidate < interval.end and candidate <= max_start:
                slot = evaluate_candidate(request, context, staff_id, candidate)
                if slot is not None:
                    slots.append(slot)
                candidate += step

    slots.sort(key=lambda slot: slot.start)
    return slots


def build_context(request: AvailabilityRequest) -> AvailabilityContext:
    location_intervals = compute_location_intervals(request)
    staff_busy = build_staff_busy_index(request)

    staff_availability: dict[str, list[Interval]] = {}
    for member in request.staff:
        intervals = owner_availability(
            request, location_intervals, STAFF, member.id, staff_busy.get(member.id, [])
        )
        if intervals:
            staff_availability[member.id] = intervals

    resource_busy = _build_resource_busy_index(request)
    resource_availability: dict[str, list[Interval]] = {}
    for resource in request.resources:
        intervals = owner_availability(
            request, location_intervals, RESOURCE, resource.id, resource_busy.get(resource.id, [])
        )
        if intervals:
            resource_availability[resource.id] = intervals

    return AvailabilityContext(
        location_intervals=location_intervals,
        staff_availability=staff_availability,
        resource_availability=resource_availability,
        resources=list(request.resources),
    )


def compute_location_intervals(request: AvailabilityRequest) -> list[Interval]:
    """Opening hours minus location-wide BLOCK exceptions."""
    schedule = build_schedule_intervals(request.schedules, LOCATION, request.location_id, request.window)
    if not schedule:
        return []
    blocks = [
        Interval(exception.starts_at, exception.ends_at)
        for exception in request.availability_exceptions
        if exception.type == BLOCK
        and exception.location_id == request.location_id
        and not exception.staff_id
        and not exception.resource_id
    ]
    reduced = subtract_intervals(schedule, blocks) if blocks else schedule
    return clamp_intervals(merge_intervals(reduced), request.window)


def build_staff_busy_index(request: AvailabilityRequest) -> dict[str, list[Interval]]:
    busy: dict[str, list[Interval]] = {}
    for time_off in request.time_offs:
        if time_off.staff_id:
            busy.setdefault(time_off.staff_id, []).append(Interval(time_off.starts_at, time_off.ends_at))
    for exception in request.availability_exceptions:
        if exception.type == BLOCK and exception.staff_id:
            busy.setdefault(exception.staff_id, []).append(Interval(exception.starts_at, exception.ends_at))
    for appointment in request.appointments:
        if appointment.staff_id:
            busy.setdefault(appointment.staff_id, []).append(
                Interval(appointment.starts_at, appointment.ends_at)
            )
    return {owner: merge_intervals(intervals) for owner, intervals in busy.items()}


def _build_resource_busy_index(request: AvailabilityRequest) -> dict[str, list[Interval]]:
    busy: dict[str, list[Interval]] = {}
    for time_off in request.time_offs:
        if time_off.resource_id:
            busy.setdefault(time_off.resource_id, []).append(Interval(time_off.starts_at, time_off.ends_at))
    for exception in request.availability_exceptions:
        if exception.type == BLOCK and exception.resource_id:
            busy.setdefault(exception.resource_id, []).append(
                Interval(exception.starts_at, exception.ends_at)
            )
    for appointment in request.appointments:
        for resource_id in appointment.resource_ids:
            busy.setdefault(resource_id, []).append(Interval(appointment.starts_at, appointment.ends_at))
    return {owner: merge_intervals(intervals) for owner, intervals in busy.items()}


def owner_availability(
    request: AvailabilityRequest,
    location_intervals: list[Interval],
    owner_type: str,
    owner_id: str,
    busy: list[Interval],
) -> list[Interval]:
    own_schedule = build_schedule_intervals(request.schedules, owner_type, owner_id, request.window)
    if own_schedule:
        base = merge_intervals(intersect_intervals(location_intervals, own_schedule))
    else:
        base = list(location_intervals)
    return clamp_intervals(merge_intervals(subtract_intervals(base, busy)), request.window)


def evaluate_candidate(
    request: AvailabilityRequest,
    context: AvailabilityContext,
    staff_id: str,
    candidate: datetime,
) -> Optional[AvailabilitySlot]:
    """Lay the services out from ``candidate`` and return the slot, or None if anything fails."""
    window = request.window
    staff_intervals = context.staff_availability.get(staff_id, [])
    location_intervals = context.location_intervals

    first_buffer = timedelta(minutes=request.services[0].buffer_before)
    reserved_start = candidate - first_buffer
    if reserved_start < window.start:
        return None
    if not is_range_within(location_intervals, reserved_start, candidate):
        return None
    if not is_range_within(staff_intervals, reserved_start, candidate):
        return None

    cursor = candidate
    last_step_end = candidate
    allocations: list[SlotServiceAllocation] = []

    for service in request.services:
        # A later service's lead-in buffer overlaps the previous service's tail.
        if service.buffer_before:
            buffer_start = cursor - timedelta(minutes=service.buffer_before)
            if buffer_start < reserved_start:
                return None
            if not is_range_within(location_intervals, buffer_start, cursor):
                return None
            if not is_range_within(staff_intervals, buffer_start, cursor):
                return None

        step_allocations: list[SlotStepAllocation] = []
        for step in service.steps:
            step_start = cursor
            step_end = step_start + timedelta(minutes=step.duration)
            if not is_range_within(location_intervals, step_start, step_end):
                return None
            if step.requires_staff is not False and not is_range_within(staff_intervals, step_start, step_end):
                return None
            if step.allowed_staff_ids is not None and staff_id not in step.allowed_staff_ids:
                return None

            resource_ids: list[str] = []
            for requirement in step.resources:
                allocated = allocate_resources(context, requirement, step_start, step_end)
                if allocated is None:
                    return None
                resource_ids.extend(allocated)

            step_allocations.append(
                SlotStepAllocation(
                    step_id=step.id,
                    start=step_start,
                    end=step_end,
                    requires_staff=step.requires_staff is not False,
                    resource_ids=tuple(resource_ids),
                )
            )
            cursor = step_end
            last_step_end = step_end

        if service.buffer_after:
            buffer_end = cursor + timedelta(minutes=service.buffer_after)
            if not is_range_within(location_intervals, cursor, buffer_end):
                return None
            if not is_range_within(staff_intervals, cursor, buffer_end):
                return None
            cursor = buffer_end

        allocations.append(SlotServiceAllocation(service_id=service.id, steps=tuple(step_allocations)))

    reserved_end = cursor
    if reserved_end > window.end:
        return None
    if not is_range_within(location_intervals, reserved_start, reserved_end):
        return None
    if not is_range_within(staff_intervals, reserved_start, reserved_end):
        return None

    return AvailabilitySlot(
        slot_key=build_slot_key(request.location_id, staff_id, candidate, allocations),
        location_id=request.location_id,
        staff_id=staff_id,
        start=candidate,
        end=last_step_end,
        reserved_from=reserved_start,
        reserved_to=reserved_end,
        services=tuple(allocations),
    )


def allocate_resources(
    context: AvailabilityContext,
    requirement: ServiceStepResourceRequirement,
    start: datetime,
    end: datetime,
) -> Optional[list[str]]:
    """Pick resources for one requirement; ``[]`` for a skipped optional one, None on failure."""
    quantity = max(requirement.quantity or 1, 1)
    if requirement.resource_ids:
        candidates = [
            resource_id
            for resource_id in requirement.resource_ids
            if resource_id in context.resource_availability
        ]
    else:
        candidates = [
            resource.id
            for resource in context.resources
            if requirement.resource_type and resource.type == requirement.resource_type
        ]

    chosen: list[str] = []
    for resource_id in candidates:
        if resource_id in chosen:
            continue
        intervals = context.resource_availability.get(resource_id, [])
        if is_range_within(intervals, start, end):
            chosen.append(resource_id)
            if len(chosen) >= quantity:
                return chosen

    if requirement.optional:
        return []
    return None


def build_slot_key(
    location_id: str,
    staff_id: str,
    start: datetime,
    services: list[SlotServiceAllocation],
) -> str:
    """Deterministic key: same location, staff, start and allocation always give the same key."""
    fingerprint = json.dumps(
        [service.to_dict() for service in services], separators=(",", ":"), sort_keys=True
    )
    digest = hashlib.sha1(
        f"{location_id}{staff_id}{epoch_ms(start)}{fingerprint}".encode("utf-8")
    ).digest()
    hashed = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return f"{location_id}|{staff_id}|{to_iso(start)}|{hashed}"
