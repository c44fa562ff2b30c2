"""Minimal iCalendar writer for booking confirmation attachments."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from .timeutil import ensure_utc, utc_now

PRODID = "-//Salonbook//Booking//EN"


@dataclass
class IcsAttendee:
    name: str
    email: Optional[str] = None
    role: str = "REQ-PARTICIPANT"


@dataclass
class IcsEvent:
    summary: str
    starts_at: datetime
    ends_at: datetime
    uid: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    organizer: Optional[IcsAttendee] = None
    attendees: list[IcsAttendee] = field(default_factory=list)
    url: Optional[str] = None
    status: Optional[str] = None
    reminders_minutes_before: list[int] = field(default_factory=list)


def escape_field(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def format_utc(value: datetime) -> str:
    return ensure_utc(value).strftime("%Y%m%dT%H%M%SZ")


def _event_lines(event: IcsEvent) -> list[str]:
    lines = [
        "BEGIN:VEVENT",
        f"UID:{event.uid or uuid.uuid4()}",
        f"SUMMARY:{escape_field(event.summary)}",
        f"DTSTAMP:{format_utc(event.created_at or utc_now())}",
        f"DTSTART:{format_utc(event.starts_at)}",
        f"DTEND:{format_utc(event.ends_at)}",
    ]
    if event.updated_at:
        lines.append(f"LAST-MODIFIED:{format_utc(event.updated_at)}")
    if event.description:
        lines.append(f"DESCRIPTION:{escape_field(event.description)}")
    if event.location:
        lines.append(f"LOCATION:{escape_field(event.location)}")
    if event.status:
        lines.append(f"STATUS:{event.status}")
    if event.url:
        lines.append(f"URL:{event.url}")
    if event.organizer and event.organizer.email:
        lines.append(
            f"ORGANIZER;CN={escape_field(event.organizer.name)}:mailto:{escape_field(event.organizer.email)}"
        )
    for attendee in event.attendees:
        if not attendee.email:
            continue
        lines.append(
            f"ATTENDEE;CN={escape_field(attendee.name)};ROLE={attendee.role}:mailto:{escape_field(attendee.email)}"
        )
    for minutes in event.reminders_minutes_before:
        lines.extend(
            [
                "BEGIN:VALARM",
                "ACTION:DISPLAY",
                "DESCRIPTION:Appointment reminder",
                f"TRIGGER:-PT{minutes}M",
                "END:VALARM",
            ]
        )
    lines.append("END:VEVENT")
    return lines


def create_ics_calendar(events: Iterable[IcsEvent]) -> str:
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
    ]
    for event in events:
        lines.extend(_event_lines(event))
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines)


def create_ics_event(event: IcsEvent) -> str:
    return create_ics_calendar([event])
