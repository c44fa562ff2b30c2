"""Appointment slot availability engine."""
from .cache import availability_cache, make_cache_key
from .engine import find_availability
from .intervals import build_schedule_intervals
from .request_builder import build_availability_request
from .smart_slots import SmartSlotConfig, compute_smart_slots
from .types import LOCATION, RESOURCE, STAFF, AvailabilityRequest, AvailabilitySlot, Interval

__all__ = [
    "LOCATION",
    "RESOURCE",
    "STAFF",
    "AvailabilityRequest",
    "AvailabilitySlot",
    "Interval",
    "SmartSlotConfig",
    "availability_cache",
    "build_availability_request",
    "build_schedule_intervals",
    "compute_smart_slots",
    "find_availability",
    "make_cache_key",
]
