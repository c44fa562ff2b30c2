"""Backoffice appointment status changes."""
from __future__ import annotations

from .timeutil import to_iso, utc_now

STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "PENDING": ("CONFIRMED", "CANCELLED"),
    "CONFIRMED": ("CANCELLED", "COMPLETED", "NO_SHOW"),
    "CANCELLED": (),
    "COMPLETED": (),
    "NO_SHOW": (),
}


class StatusTransitionError(Exception):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Appointment status cannot change from {current} to {target}")
        self.current = current
        self.target = target


def can_change_status(current: str, target: str) -> bool:
    return target in STATUS_TRANSITIONS.get(current, ())


def change_status(appointment, status: str, *, performed_by: dict[str, object], reason: str | None = None) -> None:
    """Apply a status change; cancelling also cancels every item. The caller commits."""
    current = appointment.status
    if not can_change_status(current, status):
        raise StatusTransitionError(current, status)

    appointment.status = status
    if status == "CANCELLED":
        for item in appointment.items:
            item.status = "CANCELLED"
    elif status == "COMPLETED":
        for item in appointment.items:
            if item.status == "SCHEDULED":
                item.status = "COMPLETED"

    metadata = dict(appointment.meta or {})
    history = list(metadata.get("statusHistory") or [])
    history.append(
        {
            "status": status,
            "previousStatus": current,
            "reason": reason,
            "at": to_iso(utc_now()),
            "performedByStaff": performed_by,
        }
    )
    metadata["statusHistory"] = history
    appointment.meta = metadata
