"""Availability lookups for a location: loads rows, applies booking preferences and runs the engine."""
from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from datetime import timezone as dt_timezone
from typing import Iterable, Optional

from flask import current_app

from .availability import (
    LOCATION,
    STAFF,
    AvailabilitySlot,
    Interval,
    SmartSlotConfig,
    availability_cache,
    build_availability_request,
    build_schedule_intervals,
    compute_smart_slots,
    find_availability,
    make_cache_key,
)
from .availability.intervals import resolve_timezone
from .availability.request_builder import (
    always_open_location_schedule,
    blocking_time_off,
    shift_plan_schedule,
)
from .holds import remove_held_slots
from .memberships import staff_for_location
from .models import (
    Appointment,
    AppointmentItem,
    AvailabilityException,
    Location,
    Resource,
    Schedule,
    Service,
    TimeOff,
)
from .preferences import BookingPreferences, booking_limit_to_minutes, preferences_for_location
from .shift_plan import ShiftPlanClient, ShiftPlanError, plan_days_in_window
from .timeutil import to_iso, utc_now

logger = logging.getLogger(__name__)

MAX_WINDOW = timedelta(days=7)
MAX_SERVICES_PER_REQUEST = 10
SHIFT_PLAN_WARNING = "Shift plan could not be loaded. Please contact support."
TIME_OF_DAY = ("am", "pm", "eve")
MAX_PUBLIC_DAYS = 31


class BookingError(Exception):
    """A booking request that cannot be served; carries the HTTP status and error code."""

    def __init__(self, message: str, *, status: int = 400, error: str = "invalid_payload") -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.error = error

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "message": self.message}


@dataclass
class AvailabilityResult:
    slots: list[AvailabilitySlot]
    warnings: list[str] = field(default_factory=list)
    cached: bool = False
    mode: str = "opening-hours"


def find_location(tenant: str, slug: str) -> Optional[Location]:
    return Location.query.filter_by(tenant_id=tenant, slug=slug).first()


def parse_service_ids(values: Iterable) -> list[int]:
    """Unique integer ids in request order."""
    ids: list[int] = []
    for value in values:
        try:
            service_id = int(str(value).strip())
        except (TypeError, ValueError):
            raise BookingError(f"Invalid service id: {value!r}") from None
        if service_id not in ids:
            ids.append(service_id)
    return ids


def load_services(location_id: int, service_ids: list[int]) -> list[Service]:
    """Active services of the location in the requested order; every id must resolve."""
    records = Service.query.filter(
        Service.location_id == location_id,
        Service.service_id.in_(service_ids),
        Service.is_active.is_(True),
    ).all()
    by_id = {service.service_id: service for service in records}
    ordered = [by_id[service_id] for service_id in service_ids if service_id in by_id]
    if len(ordered) != len(service_ids):
        raise BookingError("Service not found for this location")
    return ordered


def is_online_bookable(staff) -> bool:
    metadata = staff.meta if isinstance(staff.meta, dict) else {}
    value = metadata.get("onlineBookingEnabled")
    return value if isinstance(value, bool) else True


def smart_slot_config(prefs: BookingPreferences, step_ui_min: int, timezone: str) -> Optional[SmartSlotConfig]:
    if not prefs.smart_slots_enabled:
        return None
    step_ui = max(1, step_ui_min)
    step_engine = min(step_ui, max(1, prefs.step_engine_min))
    while step_ui % step_engine:
        step_engine -= 1
    return SmartSlotConfig(
        step_ui_min=step_ui,
        step_engine_min=step_engine,
        buffer_min=prefs.buffer_min,
        min_gap_min=prefs.min_gap_min,
        max_smart_slots_per_hour=prefs.max_smart_slots_per_hour,
        min_waste_reduction_min=prefs.min_waste_reduction_min,
        max_off_grid_offset_min=min(prefs.max_off_grid_offset_min, step_ui // 2),
        time_zone=timezone,
    )


def smart_slots_cache_key(config: Optional[SmartSlotConfig]) -> str:
    if config is None:
        return "smart:off"
    return (
        f"smart:{config.step_engine_min}:{config.buffer_min}:{config.min_gap_min}:"
        f"{config.max_smart_slots_per_hour}:{config.min_waste_reduction_min}:{config.max_off_grid_offset_min}"
    )


def advance_bounds(prefs: BookingPreferences, now: Optional[datetime] = None) -> tuple[datetime, Optional[datetime]]:
    """Earliest and latest bookable start; latest is None when max advance is unlimited."""
    now = now or utc_now()
    earliest = now + timedelta(minutes=booking_limit_to_minutes(prefs.min_advance))
    max_minutes = booking_limit_to_minutes(prefs.max_advance)
    latest = now + timedelta(minutes=max_minutes) if max_minutes > 0 else None
    return earliest, latest


def within_advance_limits(start: datetime, prefs: BookingPreferences, now: Optional[datetime] = None) -> bool:
    earliest, latest = advance_bounds(prefs, now)
    return start >= earliest and (latest is None or start <= latest)


def _has_active_location_rules(schedules: list[Schedule]) -> bool:
    return any(
        schedule.owner_type == LOCATION
        and any(rule.is_active is not False and rule.end_minute > rule.start_minute for rule in schedule.rules)
        for schedule in schedules
    )


def _load_busy_rows(location_id: int, window: Interval):
    time_offs = TimeOff.query.filter(
        TimeOff.location_id == location_id,
        TimeOff.starts_at < window.end,
        TimeOff.ends_at > window.start,
    ).all()
    exceptions = AvailabilityException.query.filter(
        AvailabilityException.location_id == location_id,
        AvailabilityException.starts_at < window.end,
        AvailabilityException.ends_at > window.start,
    ).all()
    items = (
        AppointmentItem.query.join(Appointment)
        .filter(
            Appointment.location_id == location_id,
            Appointment.status != "CANCELLED",
            AppointmentItem.status != "CANCELLED",
            AppointmentItem.starts_at < window.end,
            AppointmentItem.ends_at > window.start,
        )
        .all()
    )
    return time_offs, exceptions, items


def _shift_plan_inputs(location: Location, staff_members, window: Interval):
    """Fetch plan days per staff member. Returns (schedules, blocked staff, failed staff)."""
    client = ShiftPlanClient.from_config(current_app.config, location.tenant_id)
    schedules, blocked, failed = [], [], []
    for staff in staff_members:
        try:
            days = client.get_days(staff, window, location.timezone)
        except ShiftPlanError as exc:
            logger.warning("Shift plan fetch failed for staff %s: %s", staff.staff_id, exc)
            failed.append(staff.staff_id)
            continue
        days = plan_days_in_window(days, window, location.timezone)
        if days:
            schedules.append(shift_plan_schedule(staff.staff_id, days, location.timezone))
        else:
            blocked.append(staff.staff_id)
    return schedules, blocked, failed


def compute_availability(
    location: Location,
    *,
    window: Interval,
    service_ids: list[int],
    staff_id: Optional[int] = None,
    granularity: Optional[int] = None,
    device_id: Optional[str] = None,
    prefs: Optional[BookingPreferences] = None,
    exempt_slot_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AvailabilityResult:
    """Bookable slots for ``service_ids`` at ``location`` inside ``window``.

    Raises BookingError for requests the location cannot serve (online
    booking disabled, too many services, unknown services, no staff).
    Slots held by other customers are removed; ``exempt_slot_key`` keeps the
    caller's own hold visible.
    """
    started = time.monotonic()
    prefs = prefs or preferences_for_location(location)
    if not prefs.online_booking_enabled:
        raise BookingError("Online booking is disabled", status=403, error="forbidden")
    if window.end <= window.start:
        raise BookingError("Parameter 'to' must be later than 'from'")
    if window.end - window.start > MAX_WINDOW:
        raise BookingError(f"Requested window is too large (max {MAX_WINDOW.days} days)")
    if not service_ids:
        raise BookingError("At least one service id is required")
    limit = max(1, min(prefs.services_per_booking, MAX_SERVICES_PER_REQUEST))
    if len(service_ids) > limit:
        raise BookingError(f"At most {limit} services per appointment")

    use_shift_plan = prefs.shift_plan
    mode = "shiftplan" if use_shift_plan else "opening-hours"
    slot_granularity = granularity if granularity and granularity > 0 else prefs.interval_minutes
    smart_config = smart_slot_config(prefs, slot_granularity, location.timezone)
    ttl = current_app.config.get("AVAILABILITY_CACHE_TTL_SECONDS", 0)
    now = now or utc_now()

    cache_key = make_cache_key(
        location_id=location.location_id,
        window_from=to_iso(window.start),
        window_to=to_iso(window.end),
        service_ids=service_ids,
        staff_id=staff_id,
        device_id=device_id,
        mode=mode,
        slot_granularity_minutes=slot_granularity,
        smart_slots_key=smart_slots_cache_key(smart_config),
    )
    cached = availability_cache.get(cache_key, ttl)
    if cached is not None:
        slots = remove_held_slots(cached, location.location_id, exempt_slot_key=exempt_slot_key)
        return AvailabilityResult(slots=[slot for slot in slots if slot.start > now], cached=True, mode=mode)

    services = load_services(location.location_id, service_ids)
    staff_members = [member for member in staff_for_location(location.location_id) if is_online_bookable(member)]
    if not staff_members:
        raise BookingError("No staff available for this location")
    if staff_id is not None and not any(member.staff_id == staff_id for member in staff_members):
        return AvailabilityResult(slots=[], mode=mode)

    schedules = Schedule.query.filter_by(location_id=location.location_id, is_active=True).all()
    if use_shift_plan:
        schedules = [schedule for schedule in schedules if schedule.owner_type not in (LOCATION, STAFF)]
    extra_schedules = []
    if not _has_active_location_rules(schedules):
        extra_schedules.append(always_open_location_schedule(location.location_id, location.timezone))

    resources = Resource.query.filter_by(location_id=location.location_id, is_active=True).all()
    time_offs, exceptions, items = _load_busy_rows(location.location_id, window)

    warnings: list[str] = []
    extra_time_offs = []
    failed: list[int] = []
    if use_shift_plan:
        targets = [member for member in staff_members if staff_id is None or member.staff_id == staff_id]
        plan_schedules, blocked, failed = _shift_plan_inputs(location, targets, window)
        extra_schedules.extend(plan_schedules)
        for member_id in blocked:
            extra_time_offs.append(blocking_time_off(location.location_id, member_id, window, "SHIFT_PLAN_EMPTY"))
        for member_id in failed:
            extra_time_offs.append(blocking_time_off(location.location_id, member_id, window, "SHIFT_PLAN_ERROR"))
        if failed:
            warnings.append(SHIFT_PLAN_WARNING)

    request = build_availability_request(
        location_id=location.location_id,
        window=window,
        services=services,
        staff=staff_members,
        resources=resources,
        schedules=schedules,
        time_offs=time_offs,
        availability_exceptions=exceptions,
        appointment_items=items,
        extra_schedules=extra_schedules,
        extra_time_offs=extra_time_offs,
        staff_id=staff_id,
        slot_granularity_minutes=slot_granularity,
    )

    if use_shift_plan:
        # Staff whose plan has no shift inside the window must not fall back to opening hours.
        for member in request.staff:
            if not build_schedule_intervals(request.schedules, STAFF, member.id, window):
                request.time_offs.append(
                    blocking_time_off(location.location_id, member.id, window, "SHIFT_PLAN_EMPTY")
                )

    ui_slots = [slot for slot in find_availability(request) if slot.start > now]
    slots = ui_slots
    if smart_config is not None and smart_config.step_engine_min < slot_granularity:
        engine_request = replace(request, slot_granularity_minutes=smart_config.step_engine_min)
        engine_slots = [slot for slot in find_availability(engine_request) if slot.start > now]
        smart = compute_smart_slots(request, ui_slots, engine_slots, smart_config)
        if smart:
            merged = {slot.slot_key: slot for slot in ui_slots}
            for slot in smart:
                merged.setdefault(slot.slot_key, slot)
            slots = sorted(merged.values(), key=lambda slot: slot.start)

    if not failed:
        availability_cache.set(cache_key, slots, ttl)

    filtered = remove_held_slots(slots, location.location_id, exempt_slot_key=exempt_slot_key)
    logger.info(
        "availability location=%s mode=%s services=%d staff=%d slots=%d warnings=%d total_ms=%d",
        location.location_id,
        mode,
        len(services),
        len(staff_members),
        len(filtered),
        len(warnings),
        (time.monotonic() - started) * 1000,
    )
    return AvailabilityResult(slots=filtered, warnings=warnings, mode=mode)


def encode_slot_id(payload: dict) -> str:
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_slot_id(value: str) -> Optional[dict]:
    padded = value + "=" * (-len(value) % 4)
    try:
        parsed = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def in_time_of_day(start: datetime, timezone: str, time_of_day: Optional[str]) -> bool:
    if not time_of_day:
        return True
    hour = start.astimezone(resolve_timezone(timezone)).hour
    if time_of_day == "am":
        return hour < 12
    if time_of_day == "pm":
        return 12 <= hour < 17
    return hour >= 17


def _allowed_staff_ids(services: list[Service]) -> Optional[set[int]]:
    """Staff assigned to every requested service; None when no service restricts staff."""
    allowed: Optional[set[int]] = None
    for service in services:
        metadata = service.meta if isinstance(service.meta, dict) else {}
        assigned = metadata.get("assignedStaffIds")
        if not isinstance(assigned, list):
            continue
        ids = set()
        for value in assigned:
            try:
                ids.add(int(value))
            except (TypeError, ValueError):
                continue
        allowed = ids if allowed is None else allowed & ids
    return allowed


def public_availability(
    location: Location,
    *,
    service_ids: list[int],
    start_date: date,
    days: int = 7,
    staff_id: Optional[int] = None,
    time_of_day: Optional[str] = None,
    device_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, object]:
    """Widget-facing availability over up to a month, with opaque slot ids."""
    now = now or utc_now()
    prefs = preferences_for_location(location)
    earliest, latest = advance_bounds(prefs, now)
    meta = {
        "earliestStart": to_iso(earliest),
        "minAdvanceMinutes": booking_limit_to_minutes(prefs.min_advance),
        "maxAdvanceMinutes": booking_limit_to_minutes(prefs.max_advance) or None,
    }
    empty = {"data": [], "meta": meta}

    services = load_services(location.location_id, service_ids)
    for service in services:
        metadata = service.meta if isinstance(service.meta, dict) else {}
        if metadata.get("onlineBookable") is False:
            return empty
    allowed = _allowed_staff_ids(services)
    if allowed is not None and (not allowed or (staff_id is not None and staff_id not in allowed)):
        return empty

    days = max(1, min(days, MAX_PUBLIC_DAYS))
    range_start = datetime.combine(start_date, datetime.min.time(), tzinfo=dt_timezone.utc)
    range_end = range_start + timedelta(days=days)
    if latest is not None:
        if range_start > latest:
            return empty
        range_end = min(range_end, latest)

    slots: dict[str, AvailabilitySlot] = {}
    chunk_start = range_start
    while chunk_start < range_end:
        chunk_end = min(chunk_start + MAX_WINDOW, range_end)
        result = compute_availability(
            location,
            window=Interval(chunk_start, chunk_end),
            service_ids=service_ids,
            staff_id=staff_id,
            device_id=device_id,
            prefs=prefs,
            now=now,
        )
        for slot in result.slots:
            slots.setdefault(slot.slot_key, slot)
        chunk_start = chunk_end

    staff_names = {member.staff_id: member.name for member in staff_for_location(location.location_id)}
    data = []
    for slot in sorted(slots.values(), key=lambda entry: entry.start):
        slot_staff_id = int(slot.staff_id)
        if allowed is not None and slot_staff_id not in allowed:
            continue
        if not in_time_of_day(slot.start, location.timezone, time_of_day):
            continue
        if slot.start < earliest or (latest is not None and slot.start > latest):
            continue
        payload = slot.to_dict()
        data.append(
            {
                "id": encode_slot_id(payload),
                "start": payload["start"],
                "end": payload["end"],
                "staffId": slot.staff_id,
                "staffName": staff_names.get(slot_staff_id),
                "locationId": slot.location_id,
                "isSmart": True if slot.is_smart else None,
            }
        )
    return {"data": data, "meta": meta}
