"""Plain data types consumed and produced by the availability engine."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import NamedTuple, Optional

from ..timeutil import parse_iso, to_iso

LOCATION = "LOCATION"
STAFF = "STAFF"
RESOURCE = "RESOURCE"

WEEKLY = "WEEKLY"
DATE = "DATE"

BLOCK = "BLOCK"
OPEN = "OPEN"


class Interval(NamedTuple):
    """Half-open UTC range ``[start, end)``."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class ScheduleRule:
    id: str
    type: str
    start_minute: int
    end_minute: int
    weekday: Optional[str] = None
    date: Optional[date] = None
    is_active: Optional[bool] = None
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None


@dataclass(frozen=True)
class Schedule:
    id: str
    owner_type: str
    owner_id: str
    timezone: str
    rules: tuple[ScheduleRule, ...] = ()


@dataclass(frozen=True)
class ServiceStepResourceRequirement:
    resource_ids: tuple[str, ...] = ()
    resource_type: Optional[str] = None
    quantity: int = 1
    optional: bool = False


@dataclass(frozen=True)
class ServiceStepDefinition:
    id: str
    name: str
    duration: int
    requires_staff: bool = True
    allowed_staff_ids: Optional[tuple[str, ...]] = None
    resources: tuple[ServiceStepResourceRequirement, ...] = ()


@dataclass(frozen=True)
class ServiceDefinition:
    id: str
    location_id: str
    steps: tuple[ServiceStepDefinition, ...]
    buffer_before: int = 0
    buffer_after: int = 0


@dataclass(frozen=True)
class StaffMember:
    id: str
    location_id: str


@dataclass(frozen=True)
class Resource:
    id: str
    location_id: str
    type: str
    capacity: int = 1


@dataclass(frozen=True)
class TimeOff:
    id: str
    location_id: str
    starts_at: datetime
    ends_at: datetime
    staff_id: Optional[str] = None
    resource_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class AvailabilityException:
    id: str
    location_id: str
    type: str
    starts_at: datetime
    ends_at: datetime
    staff_id: Optional[str] = None
    resource_id: Optional[str] = None


@dataclass(frozen=True)
class AppointmentBlock:
    id: str
    location_id: str
    starts_at: datetime
    ends_at: datetime
    staff_id: Optional[str] = None
    resource_ids: tuple[str, ...] = ()


@dataclass
class AvailabilityRequest:
    location_id: str
    window: Interval
    services: list[ServiceDefinition] = field(default_factory=list)
    staff: list[StaffMember] = field(default_factory=list)
    resources: list[Resource] = field(default_factory=list)
    schedules: list[Schedule] = field(default_factory=list)
    time_offs: list[TimeOff] = field(default_factory=list)
    availability_exceptions: list[AvailabilityException] = field(default_factory=list)
    appointments: list[AppointmentBlock] = field(default_factory=list)
    staff_id: Optional[str] = None
    slot_granularity_minutes: Optional[int] = None


@dataclass(frozen=True)
class SlotStepAllocation:
    step_id: str
    start: datetime
    end: datetime
    requires_staff: bool
    resource_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "stepId": self.step_id,
            "start": to_iso(self.start),
            "end": to_iso(self.end),
            "requiresStaff": self.requires_staff,
            "resourceIds": list(self.resource_ids),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SlotStepAllocation":
        return cls(
            step_id=data["stepId"],
            start=parse_iso(data["start"]),
            end=parse_iso(data["end"]),
            requires_staff=bool(data["requiresStaff"]),
            resource_ids=tuple(data.get("resourceIds") or ()),
        )


@dataclass(frozen=True)
class SlotServiceAllocation:
    service_id: str
    steps: tuple[SlotStepAllocation, ...]

    def to_dict(self) -> dict[str, object]:
        return {"serviceId": self.service_id, "steps": [step.to_dict() for step in self.steps]}

    @classmethod
    def from_dict(cls, data: dict) -> "SlotServiceAllocation":
        return cls(
            service_id=data["serviceId"],
            steps=tuple(SlotStepAllocation.from_dict(step) for step in data["steps"]),
        )


@dataclass(frozen=True)
class AvailabilitySlot:
    slot_key: str
    location_id: str
    staff_id: str
    start: datetime
    end: datetime
    reserved_from: datetime
    reserved_to: datetime
    services: tuple[SlotServiceAllocation, ...]
    is_smart: bool = False

    def as_smart(self) -> "AvailabilitySlot":
        return replace(self, is_smart=True)

    def to_dict(self) -> dict[str, object]:
        return {
            "slotKey": self.slot_key,
            "locationId": self.location_id,
            "staffId": self.staff_id,
            "start": to_iso(self.start),
            "end": to_iso(self.end),
            "reservedFrom": to_iso(self.reserved_from),
            "reservedTo": to_iso(self.reserved_to),
            "isSmart": self.is_smart,
            "services": [service.to_dict() for service in self.services],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AvailabilitySlot":
        """Inverse of :meth:`to_dict`, used when slots come back from Redis."""
        return cls(
            slot_key=data["slotKey"],
            location_id=data["locationId"],
            staff_id=data["staffId"],
            start=parse_iso(data["start"]),
            end=parse_iso(data["end"]),
            reserved_from=parse_iso(data["reservedFrom"]),
            reserved_to=parse_iso(data["reservedTo"]),
            services=tuple(SlotServiceAllocation.from_dict(service) for service in data["services"]),
            is_smart=bool(data.get("isSmart", False)),
        )
