"""Off-grid "smart" slots that shrink the idle gaps a booking would leave behind."""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .engine import build_staff_busy_index, compute_location_intervals, owner_availability
from .intervals import resolve_timezone
from .types import STAFF, AvailabilityRequest, AvailabilitySlot, Interval


@dataclass(frozen=True)
class SmartSlotConfig:
    step_ui_min: int
    step_engine_min: int
    buffer_min: int = 0
    min_gap_min: int = 10
    max_smart_slots_per_hour: int = 1
    min_waste_reduction_min: int = 10
    max_off_grid_offset_min: int = 10
    time_zone: str = "UTC"


@dataclass(frozen=True)
class SlotScore:
    slot: AvailabilitySlot
    waste_before_min: int
    waste_after_min: int
    bad_fragments: int
    distance_penalty_min: int
    hour_key: str
    block_key: str
    block_length_min: int

    @property
    def waste_total_min(self) -> int:
        return self.waste_before_min + self.waste_after_min

    def sort_key(self) -> tuple[int, int, int]:
        return (self.bad_fragments, self.waste_total_min, self.distance_penalty_min)


def compute_smart_slots(
    request: AvailabilityRequest,
    ui_slots: list[AvailabilitySlot],
    engine_slots: list[AvailabilitySlot],
    config: SmartSlotConfig,
) -> list[AvailabilitySlot]:
    """Pick fine-grid engine slots that beat the best on-grid slot in the same free block.

    A candidate qualifies when it cuts the wasted minutes of its block by at
    least ``min_waste_reduction_min`` or leaves fewer unusable fragments
    (gaps shorter than ``min_gap_min``). At most ``max_smart_slots_per_hour``
    are selected per local hour.
    """
    if not config.max_smart_slots_per_hour or config.step_engine_min >= config.step_ui_min:
        return []

    staff_availability = build_staff_availability_map(request)
    if not staff_availability:
        return []

    scorer = _Scorer(request.window.start, config, staff_availability)

    ui_scores_by_block: dict[str, list[SlotScore]] = {}
    for slot in ui_slots:
        score = scorer.score(slot, is_ui_slot=True)
        if score is not None:
            ui_scores_by_block.setdefault(score.block_key, []).append(score)

    ui_keys = {slot.slot_key for slot in ui_slots}
    candidates_by_block: dict[str, list[SlotScore]] = {}
    for slot in engine_slots:
        if slot.slot_key in ui_keys:
            continue
        score = scorer.score(slot, is_ui_slot=False)
        if score is None or score.distance_penalty_min <= 0:
            continue
        candidates_by_block.setdefault(score.block_key, []).append(score)

    selected: dict[str, AvailabilitySlot] = {}
    per_hour: dict[str, int] = {}
    for block_key, candidates in candidates_by_block.items():
        ordered = sorted(candidates, key=SlotScore.sort_key)
        ui_scores = ui_scores_by_block.get(block_key)
        if ui_scores:
            best = min(ui_scores, key=SlotScore.sort_key)
            baseline_waste, baseline_fragments = best.waste_total_min, best.bad_fragments
        else:
            # Nothing on the grid fits: the whole block is wasted today.
            block_length = ordered[0].block_length_min
            baseline_waste = block_length
            baseline_fragments = 1 if 0 < block_length < config.min_gap_min else 0

        for candidate in ordered:
            count = per_hour.get(candidate.hour_key, 0)
            if count >= config.max_smart_slots_per_hour:
                continue
            reduction = baseline_waste - candidate.waste_total_min
            if reduction >= config.min_waste_reduction_min or candidate.bad_fragments < baseline_fragments:
                selected[candidate.slot.slot_key] = candidate.slot.as_smart()
                per_hour[candidate.hour_key] = count + 1

    return list(selected.values())


def build_staff_availability_map(request: AvailabilityRequest) -> dict[str, list[Interval]]:
    """Free time per staff member, ignoring resources."""
    location_intervals = compute_location_intervals(request)
    if not location_intervals:
        return {}

    busy = build_staff_busy_index(request)
    availability: dict[str, list[Interval]] = {}
    for member in request.staff:
        intervals = owner_availability(
            request, location_intervals, STAFF, member.id, busy.get(member.id, [])
        )
        if intervals:
            availability[member.id] = intervals
    return availability


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _minutes(delta: timedelta) -> int:
    return round_half_up(delta / timedelta(minutes=1))


class _Scorer:
    def __init__(
        self,
        origin: datetime,
        config: SmartSlotConfig,
        staff_availability: dict[str, list[Interval]],
    ) -> None:
        self.origin = origin
        self.config = config
        self.staff_availability = staff_availability
        self.step_ui = timedelta(minutes=config.step_ui_min)
        self.max_offset = timedelta(minutes=config.max_off_grid_offset_min)
        self.buffer = timedelta(minutes=max(0, config.buffer_min))
        self.tz = resolve_timezone(config.time_zone)

    def score(self, slot: AvailabilitySlot, *, is_ui_slot: bool) -> Optional[SlotScore]:
        intervals = self.staff_availability.get(slot.staff_id)
        if not intervals:
            return None

        reserved_start = slot.reserved_from or slot.start
        effective_end = (slot.reserved_to or slot.end) + self.buffer
        block = next(
            (entry for entry in intervals if entry.start <= reserved_start and effective_end <= entry.end),
            None,
        )
        if block is None:
            return None

        waste_before = max(0, _minutes(reserved_start - block.start))
        waste_after = max(0, _minutes(block.end - effective_end))
        min_gap = self.config.min_gap_min
        bad_fragments = int(0 < waste_before < min_gap) + int(0 < waste_after < min_gap)

        distance_penalty = 0
        if not is_ui_slot:
            offset = (slot.start - self.origin) % self.step_ui
            distance = min(offset, self.step_ui - offset)
            if not distance or distance > self.max_offset:
                return None
            distance_penalty = _minutes(distance)

        local = slot.start.astimezone(self.tz)
        return SlotScore(
            slot=slot,
            waste_before_min=waste_before,
            waste_after_min=waste_after,
            bad_fragments=bad_fragments,
            distance_penalty_min=distance_penalty,
            hour_key=local.strftime("%Y-%m-%dT%H"),
            block_key=f"{slot.staff_id}:{block.start.isoformat()}:{block.end.isoformat()}",
            block_length_min=max(0, _minutes(block.end - block.start)),
        )
