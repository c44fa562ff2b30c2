"""Tests for find_availability on hand-built requests."""
from __future__ import annotations

from datetime import datetime, timezone

from salonbook.availability import find_availability
from salonbook.availability.types import (BLOCK, LOCATION, STAFF, WEEKLY, AppointmentBlock, AvailabilityException,
                                          AvailabilityRequest, Interval, Resource, Schedule, ScheduleRule,
                                          ServiceDefinition, ServiceStepDefinition, ServiceStepResourceRequirement,
                                          StaffMember, TimeOff)


def at(hour: int, minute: int = 0) -> datetime:
    # 2025-03-03 is a Monday
    return datetime(2025, 3, 3, hour, minute, tzinfo=timezone.utc)


def opening_hours(start_hour: int = 9, end_hour: int = 17) -> Schedule:
    return Schedule(
        id="loc",
        owner_type=LOCATION,
        owner_id="1",
        timezone="UTC",
        rules=(
            ScheduleRule(
                id="mon", type=WEEKLY, weekday="MONDAY", start_minute=start_hour * 60, end_minute=end_hour * 60
            ),
        ),
    )


def single_step_service(duration: int = 30, **kwargs) -> ServiceDefinition:
    return ServiceDefinition(
        id="cut",
        location_id="1",
        steps=(ServiceStepDefinition(id="cut-step", name="Cut", duration=duration),),
        **kwargs,
    )


def make_request(services=None, **overrides) -> AvailabilityRequest:
    values = {
        "location_id": "1",
        "window": Interval(at(9), at(12)),
        "services": services if services is not None else [single_step_service()],
        "staff": [StaffMember(id="lina", location_id="1")],
        "schedules": [opening_hours()],
        "slot_granularity_minutes": 15,
    }
    values.update(overrides)
    return AvailabilityRequest(**values)


def starts(slots) -> list[datetime]:
    return [slot.start for slot in slots]


def test_first_slot_opens_with_the_location() -> None:
    slots = find_availability(make_request())

    assert slots[0].start == at(9)
    assert slots[0].end == at(9, 30)
    assert slots[0].reserved_from == at(9)
    assert slots[0].reserved_to == at(9, 30)
    # 09:00 through 11:30 every 15 minutes
    assert len(slots) == 11
    assert slots[-1].start == at(11, 30)
    assert slots[0].slot_key.startswith("1|lina|2025-03-03T09:00:00.000Z|")


def test_buffers_shift_the_first_start_and_widen_the_reservation() -> None:
    service = single_step_service(45, buffer_before=15, buffer_after=10)

    slots = find_availability(make_request([service]))

    first = slots[0]
    assert first.start == at(9, 15)
    assert first.end == at(10)
    assert first.reserved_from == at(9)
    assert first.reserved_to == at(10, 10)
    assert slots[-1].start == at(11)


def test_processing_steps_do_not_require_staff() -> None:
    colour = ServiceDefinition(
        id="colour",
        location_id="1",
        steps=(
            ServiceStepDefinition(id="apply", name="Apply", duration=30),
            ServiceStepDefinition(id="process", name="Process", duration=20, requires_staff=False),
            ServiceStepDefinition(id="finish", name="Finish", duration=15),
        ),
    )

    first = find_availability(make_request([colour]))[0]

    steps = first.services[0].steps
    assert [(step.start, step.end) for step in steps] == [
        (at(9), at(9, 30)),
        (at(9, 30), at(9, 50)),
        (at(9, 50), at(10, 5)),
    ]
    assert [step.requires_staff for step in steps] == [True, False, True]
    assert first.end == at(10, 5)


def test_consecutive_services_are_laid_out_back_to_back() -> None:
    wash = ServiceDefinition(
        id="wash", location_id="1", steps=(ServiceStepDefinition(id="w", name="Wash", duration=15),), buffer_after=5
    )
    cut = single_step_service(30)

    first = find_availability(make_request([wash, cut]))[0]

    assert [service.service_id for service in first.services] == ["wash", "cut"]
    assert first.services[1].steps[0].start == at(9, 20)
    assert first.reserved_to == at(9, 50)


def test_busy_time_removes_overlapping_candidates() -> None:
    request = make_request(
        time_offs=[TimeOff(id="t", location_id="1", starts_at=at(9), ends_at=at(10), staff_id="lina")],
        appointments=[AppointmentBlock(id="a", location_id="1", starts_at=at(11), ends_at=at(11, 30), staff_id="lina")],
    )

    assert starts(find_availability(request)) == [at(10), at(10, 15), at(10, 30), at(11, 30)]


def test_location_block_exception_closes_the_salon() -> None:
    request = make_request(
        availability_exceptions=[
            AvailabilityException(id="e", location_id="1", type=BLOCK, starts_at=at(9), ends_at=at(11, 30))
        ]
    )

    assert starts(find_availability(request)) == [at(11, 30)]


def test_staff_schedule_narrows_location_hours() -> None:
    staff_hours = Schedule(
        id="lina-hours",
        owner_type=STAFF,
        owner_id="lina",
        timezone="UTC",
        rules=(ScheduleRule(id="mon", type=WEEKLY, weekday="MONDAY", start_minute=10 * 60, end_minute=11 * 60),),
    )
    request = make_request(schedules=[opening_hours(), staff_hours])

    assert starts(find_availability(request)) == [at(10), at(10, 15), at(10, 30)]


def test_staff_filter_and_allowed_staff() -> None:
    staff = [StaffMember(id="lina", location_id="1"), StaffMember(id="max", location_id="1")]
    restricted = ServiceDefinition(
        id="cut",
        location_id="1",
        steps=(ServiceStepDefinition(id="s", name="Cut", duration=30, allowed_staff_ids=("max",)),),
    )

    only_max = find_availability(make_request(staff=staff, staff_id="max"))
    assert {slot.staff_id for slot in only_max} == {"max"}

    allowed = find_availability(make_request([restricted], staff=staff))
    assert {slot.staff_id for slot in allowed} == {"max"}


def test_resources_are_allocated_and_required() -> None:
    chairs = [
        Resource(id="chair-1", location_id="1", type="CHAIR"),
        Resource(id="chair-2", location_id="1", type="CHAIR"),
    ]
    service = ServiceDefinition(
        id="cut",
        location_id="1",
        steps=(
            ServiceStepDefinition(
                id="s",
                name="Cut",
                duration=30,
                resources=(ServiceStepResourceRequirement(resource_type="CHAIR"),),
            ),
        ),
    )
    busy_first_chair = AppointmentBlock(
        id="a", location_id="1", starts_at=at(9), ends_at=at(12), resource_ids=("chair-1",)
    )

    slots = find_availability(make_request([service], resources=chairs, appointments=[busy_first_chair]))

    assert slots
    assert slots[0].services[0].steps[0].resource_ids == ("chair-2",)

    no_chairs = find_availability(make_request([service], resources=[]))
    assert no_chairs == []


def test_optional_resource_may_be_missing() -> None:
    service = ServiceDefinition(
        id="cut",
        location_id="1",
        steps=(
            ServiceStepDefinition(
                id="s",
                name="Cut",
                duration=30,
                resources=(ServiceStepResourceRequirement(resource_type="SINK", optional=True),),
            ),
        ),
    )

    slots = find_availability(make_request([service]))

    assert slots[0].services[0].steps[0].resource_ids == ()


def test_empty_inputs_yield_no_slots() -> None:
    assert find_availability(make_request(window=Interval(at(12), at(9)))) == []
    assert find_availability(make_request(services=[])) == []
    assert find_availability(make_request(schedules=[])) == []


def test_slot_keys_are_deterministic() -> None:
    first = find_availability(make_request())
    second = find_availability(make_request())

    assert [slot.slot_key for slot in first] == [slot.slot_key for slot in second]
    assert len({slot.slot_key for slot in first}) == len(first)


def test_empty_allowed_staff_list_admits_nobody() -> None:
    nobody = ServiceDefinition(
        id="cut",
        location_id="1",
        steps=(ServiceStepDefinition(id="s", name="Cut", duration=30, allowed_staff_ids=()),),
    )

    assert find_availability(make_request([nobody])) == []


def test_repeated_resource_ids_are_allocated_once() -> None:
    service = ServiceDefinition(
        id="cut",
        location_id="1",
        steps=(
            ServiceStepDefinition(
                id="s",
                name="Cut",
                duration=30,
                resources=(ServiceStepResourceRequirement(resource_ids=("chair-1", "chair-1"), quantity=2),),
            ),
        ),
    )
    chairs = [Resource(id="chair-1", location_id="1", type="CHAIR")]

    assert find_availability(make_request([service], resources=chairs)) == []

    chairs.append(Resource(id="chair-2", location_id="1", type="CHAIR"))
    service = ServiceDefinition(
        id="cut",
        location_id="1",
        steps=(
            ServiceStepDefinition(
                id="s",
                name="Cut",
                duration=30,
                resources=(
                    ServiceStepResourceRequirement(resource_ids=("chair-1", "chair-1", "chair-2"), quantity=2),
                ),
            ),
        ),
    )
    first = find_availability(make_request([service], resources=chairs))[0]
    assert first.services[0].steps[0].resource_ids == ("chair-1", "chair-2")
