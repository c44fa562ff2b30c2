"""Online checkout: turn an availability slot into a persisted appointment."""
from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .availability import Interval, availability_cache
from .availability.types import AvailabilitySlot
from .booking import (SHIFT_PLAN_WARNING, BookingError, compute_availability, parse_service_ids,
                      within_advance_limits)
from .consents import capture_online_consents, implicit_booking_consents
from .extensions import db
from .holds import decode_hold_id, hold_store
from .models import CONSENT_SCOPES, CONSENT_TYPES, Appointment, AppointmentItem, BookingSlotClaim, Customer, Location
from .notifications import normalize_phone, send_booking_confirmation, send_booking_request
from .payments import calculate_deposit_amount
from .preferences import EMAIL_PATTERN, BookingPreferences, booking_limit_to_minutes, preferences_for_location
from .timeutil import ensure_utc, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

SLOT_CLAIM_TTL = timedelta(minutes=2)
IDEMPOTENCY_WAIT_SECONDS = 2.0
IDEMPOTENCY_POLL_SECONDS = 0.1
MAX_NOTES_LENGTH = 5000


class SlotConflictError(BookingError):
    """The slot was claimed or booked by someone else."""

    def __init__(self, message: str = "Slot is currently locked") -> None:
        super().__init__(message, status=409, error="slot_unavailable")


@dataclass
class CheckoutCustomer:
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class CheckoutService:
    service_id: int
    price: float
    currency: str = "EUR"

    @property
    def price_cents(self) -> int:
        return int(round(self.price * 100))


@dataclass
class CheckoutRequest:
    slot_key: str
    window: Interval
    staff_id: int
    services: list[CheckoutService]
    customer: CheckoutCustomer
    notes: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    consents: list[dict[str, Any]] = field(default_factory=list)
    hold_id: Optional[str] = None
    device_id: Optional[str] = None


@dataclass
class CheckoutResult:
    appointment: Appointment
    created: bool
    channels: dict[str, bool]


def _optional_text(value: object) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def parse_checkout_payload(payload: object) -> CheckoutRequest:
    """Validate the JSON body of a checkout request; raises BookingError with a readable message."""
    if not isinstance(payload, dict):
        raise BookingError("Invalid payload")

    slot_key = _optional_text(payload.get("slotKey"))
    if not slot_key:
        raise BookingError("slotKey is required")

    window = payload.get("window") if isinstance(payload.get("window"), dict) else {}
    window_from, window_to = parse_iso(window.get("from")), parse_iso(window.get("to"))
    if window_from is None or window_to is None:
        raise BookingError("window.from and window.to must be ISO timestamps")
    if window_to <= window_from:
        raise BookingError("Invalid window range")

    try:
        staff_id = int(str(payload.get("staffId")).strip())
    except (TypeError, ValueError):
        raise BookingError("staffId is required") from None

    raw_services = payload.get("services")
    if not isinstance(raw_services, list) or not raw_services:
        raise BookingError("At least one service is required")
    services = []
    for entry in raw_services:
        if not isinstance(entry, dict):
            raise BookingError("Invalid service entry")
        price = entry.get("price")
        if isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0:
            raise BookingError("Service price must be a non-negative number")
        service_ids = parse_service_ids([entry.get("serviceId")])
        currency = _optional_text(entry.get("currency")) or "EUR"
        services.append(CheckoutService(service_id=service_ids[0], price=float(price), currency=currency))

    raw_customer = payload.get("customer") if isinstance(payload.get("customer"), dict) else {}
    first_name = _optional_text(raw_customer.get("firstName"))
    last_name = _optional_text(raw_customer.get("lastName"))
    if not first_name or not last_name:
        raise BookingError("customer.firstName and customer.lastName are required")
    email = _optional_text(raw_customer.get("email"))
    if email is not None and not EMAIL_PATTERN.match(email):
        raise BookingError("customer.email is not a valid email address")
    phone = _optional_text(raw_customer.get("phone"))
    if not email and not phone:
        raise BookingError("Please provide a phone number or an email address")

    notes = payload.get("notes")
    if notes is not None and (not isinstance(notes, str) or len(notes) > MAX_NOTES_LENGTH):
        raise BookingError(f"notes must be a string of at most {MAX_NOTES_LENGTH} characters")

    metadata = payload.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        raise BookingError("metadata must be an object")

    consents = []
    for entry in payload.get("consents") or []:
        if (
            not isinstance(entry, dict)
            or entry.get("type") not in CONSENT_TYPES
            or entry.get("scope") not in CONSENT_SCOPES
            or not isinstance(entry.get("granted"), bool)
        ):
            raise BookingError("Invalid consent entry")
        granted_at = entry.get("grantedAt")
        if granted_at is not None and parse_iso(granted_at) is None:
            raise BookingError("consents.grantedAt must be an ISO timestamp")
        consents.append(
            {
                "type": entry["type"],
                "scope": entry["scope"],
                "granted": entry["granted"],
                "grantedAt": parse_iso(granted_at),
            }
        )

    return CheckoutRequest(
        slot_key=slot_key,
        window=Interval(window_from, window_to),
        staff_id=staff_id,
        services=services,
        customer=CheckoutCustomer(first_name, last_name, email.lower() if email else None, phone),
        notes=notes or None,
        metadata=metadata,
        consents=consents,
        hold_id=_optional_text(payload.get("holdId")),
        device_id=_optional_text(payload.get("deviceId")),
    )


def phone_candidates(raw_phone: Optional[str]) -> list[str]:
    """Spellings an existing customer's phone may be stored under: raw, normalised and local."""
    if not raw_phone:
        return []
    normalized = normalize_phone(raw_phone)
    country_prefix = "+" + current_app.config.get("DEFAULT_PHONE_COUNTRY_CODE", "49")
    local = "0" + normalized[len(country_prefix):] if normalized.startswith(country_prefix) else ""
    candidates: list[str] = []
    for value in (raw_phone.strip(), normalized, local):
        if value and value not in candidates:
            candidates.append(value)
    return candidates


def find_idempotent_appointment(location_id: int, idempotency_key: str) -> Optional[Appointment]:
    return Appointment.query.filter_by(location_id=location_id, idempotency_key=idempotency_key).first()


def wait_for_idempotent_appointment(location_id: int, idempotency_key: str) -> Optional[Appointment]:
    """Poll for the appointment a concurrent request with the same key is still writing."""
    deadline = time.monotonic() + IDEMPOTENCY_WAIT_SECONDS
    while time.monotonic() < deadline:
        existing = find_idempotent_appointment(location_id, idempotency_key)
        if existing is not None:
            return existing
        db.session.rollback()
        time.sleep(IDEMPOTENCY_POLL_SECONDS)
    return None


def booking_channels(appointment: Appointment) -> dict[str, bool]:
    raw = (appointment.meta or {}).get("bookingChannels")
    if isinstance(raw, dict) and isinstance(raw.get("sms"), bool) and isinstance(raw.get("whatsapp"), bool):
        return {"sms": raw["sms"], "whatsapp": raw["whatsapp"]}
    return {"sms": False, "whatsapp": False}


def cancellation_deadline(starts_at: datetime, prefs: BookingPreferences) -> Optional[datetime]:
    minutes = booking_limit_to_minutes(prefs.cancel_limit)
    if minutes <= 0:
        return None
    return ensure_utc(starts_at) - timedelta(minutes=minutes)


def checkout_response(appointment: Appointment, prefs: BookingPreferences, channels: dict[str, bool]) -> dict:
    booking = (appointment.meta or {}).get("booking") or {}
    deposit = booking.get("deposit")
    return {
        "appointmentId": appointment.appointment_id,
        "confirmationCode": appointment.confirmation_code,
        "startsAt": to_iso(appointment.starts_at),
        "endsAt": to_iso(appointment.ends_at),
        "status": appointment.status,
        "paymentStatus": appointment.payment_status,
        "policy": {
            "cancellationDeadline": to_iso(cancellation_deadline(appointment.starts_at, prefs)),
            "deposit": deposit,
        },
        "channels": channels,
    }


def _find_or_create_customer(location_id: int, customer: CheckoutCustomer, metadata: Optional[dict]) -> Customer:
    phones = phone_candidates(customer.phone)
    phone = (normalize_phone(customer.phone) or customer.phone) if customer.phone else None
    filters = []
    if customer.email:
        filters.append(Customer.email == customer.email)
    if phones:
        filters.append(Customer.phone.in_(phones))

    existing = Customer.query.filter(Customer.location_id == location_id, or_(*filters)).first()
    if existing is None:
        record = Customer(
            location_id=location_id,
            first_name=customer.first_name,
            last_name=customer.last_name,
            email=customer.email,
            phone=phone,
            meta=dict(metadata or {}),
        )
        db.session.add(record)
        db.session.flush()
        return record

    if customer.email and not existing.email:
        existing.email = customer.email
    if phone and not existing.phone:
        existing.phone = phone
    if metadata:
        existing.meta = {**(existing.meta or {}), **metadata}
    return existing


def _build_items(slot: AvailabilitySlot, services: list[CheckoutService]) -> list[AppointmentItem]:
    items = []
    for service in services:
        for assignment in slot.services:
            if assignment.service_id != str(service.service_id) or not assignment.steps:
                continue
            resource_ids = [resource_id for step in assignment.steps for resource_id in step.resource_ids]
            items.append(
                AppointmentItem(
                    service_id=service.service_id,
                    staff_id=int(slot.staff_id),
                    resource_id=int(resource_ids[0]) if resource_ids else None,
                    starts_at=min(step.start for step in assignment.steps),
                    ends_at=max(step.end for step in assignment.steps),
                    status="SCHEDULED",
                    price_cents=service.price_cents,
                    currency=service.currency,
                    meta={"slotKey": slot.slot_key, "steps": [step.to_dict() for step in assignment.steps]},
                )
            )
    return items


def _claim_slot(location_id: int, slot_key: str, idempotency_key: Optional[str], now: datetime) -> Optional[Appointment]:
    """Insert the exclusive claim row. Returns an already-booked idempotent appointment instead when one exists."""
    BookingSlotClaim.query.filter(
        BookingSlotClaim.location_id == location_id,
        BookingSlotClaim.expires_at < now,
    ).delete(synchronize_session=False)
    db.session.add(
        BookingSlotClaim(
            location_id=location_id,
            slot_key=slot_key,
            idempotency_key=idempotency_key,
            status="HELD",
            expires_at=now + SLOT_CLAIM_TTL,
        )
    )
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        if idempotency_key:
            existing = find_idempotent_appointment(location_id, idempotency_key) or wait_for_idempotent_appointment(
                location_id, idempotency_key
            )
            if existing is not None:
                return existing
        raise SlotConflictError() from None
    return None


def _assert_staff_free(location_id: int, staff_id: int, start: datetime, end: datetime) -> None:
    conflicting = (
        AppointmentItem.query.join(Appointment)
        .filter(
            Appointment.location_id == location_id,
            Appointment.status != "CANCELLED",
            AppointmentItem.status != "CANCELLED",
            AppointmentItem.staff_id == staff_id,
            AppointmentItem.starts_at < end,
            AppointmentItem.ends_at > start,
        )
        .first()
    )
    if conflicting is not None:
        db.session.rollback()
        raise SlotConflictError("Slot is no longer available")


def checkout(
    location: Location,
    payload: CheckoutRequest,
    *,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CheckoutResult:
    """Book ``payload.slot_key`` for the customer.

    Raises BookingError (or SlotConflictError) for rejected requests and lets
    SQLAlchemyError propagate after rolling back.
    """
    prefs = preferences_for_location(location)
    if not prefs.online_booking_enabled:
        raise BookingError("Online booking is disabled", status=403, error="forbidden")
    if not any(entry["type"] == "TERMS" and entry["granted"] for entry in payload.consents):
        raise BookingError("Terms consent required")

    if idempotency_key:
        existing = find_idempotent_appointment(location.location_id, idempotency_key)
        if existing is not None:
            return CheckoutResult(existing, created=False, channels=booking_channels(existing))

    exempt_slot_key = None
    hold = decode_hold_id(payload.hold_id) if payload.hold_id else None
    if hold is not None and hold[0] == payload.slot_key and hold_store.verify(*hold):
        exempt_slot_key = payload.slot_key

    now = now or utc_now()
    result = compute_availability(
        location,
        window=payload.window,
        service_ids=[service.service_id for service in payload.services],
        staff_id=payload.staff_id,
        device_id=payload.device_id,
        prefs=prefs,
        exempt_slot_key=exempt_slot_key,
        now=now,
    )
    if SHIFT_PLAN_WARNING in result.warnings:
        raise BookingError(SHIFT_PLAN_WARNING, status=503, error="shift_plan_unavailable")
    slot = next((entry for entry in result.slots if entry.slot_key == payload.slot_key), None)
    if slot is None:
        raise SlotConflictError("Slot is no longer available")
    if not within_advance_limits(slot.start, prefs, now):
        raise BookingError("Appointment is outside the booking limits", status=409, error="conflict")

    total_cents = sum(service.price_cents for service in payload.services)
    currency = payload.services[0].currency
    deposit_cents = calculate_deposit_amount(
        prefs.deposit, total_cents, [str(service.service_id) for service in payload.services]
    )
    items = _build_items(slot, payload.services)
    if not items:
        raise SlotConflictError("Slot is no longer available")

    try:
        existing = _claim_slot(location.location_id, payload.slot_key, idempotency_key, now)
        if existing is not None:
            return CheckoutResult(existing, created=False, channels=booking_channels(existing))

        _assert_staff_free(location.location_id, int(slot.staff_id), slot.start, slot.end)
        customer = _find_or_create_customer(location.location_id, payload.customer, payload.metadata)

        metadata: dict[str, Any] = {
            "booking": {
                "services": [
                    {"id": str(service.service_id), "price": service.price, "currency": service.currency}
                    for service in payload.services
                ],
                "slotKey": payload.slot_key,
                "deposit": {"amount": deposit_cents, "currency": currency} if deposit_cents else None,
            }
        }
        if payload.metadata:
            metadata["request"] = payload.metadata

        appointment = Appointment(
            location_id=location.location_id,
            customer_id=customer.customer_id,
            confirmation_code=secrets.token_hex(3).upper(),
            idempotency_key=idempotency_key,
            status="CONFIRMED" if prefs.auto_confirm else "PENDING",
            payment_status="DEPOSIT_DUE" if deposit_cents else "UNPAID",
            source="ONLINE",
            total_cents=total_cents,
            currency=currency,
            notes=payload.notes,
            meta=metadata,
        )
        appointment.items = items
        appointment.refresh_time_range()
        db.session.add(appointment)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            existing = find_idempotent_appointment(location.location_id, idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return CheckoutResult(existing, created=False, channels=booking_channels(existing))

        BookingSlotClaim.query.filter_by(location_id=location.location_id, slot_key=payload.slot_key).delete(
            synchronize_session=False
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    channels = _after_commit(appointment, payload, hold)
    return CheckoutResult(appointment, created=True, channels=channels)


def _after_commit(appointment: Appointment, payload: CheckoutRequest, hold) -> dict[str, bool]:
    """Consents, hold release, notifications and cache invalidation; none of these undo the booking."""
    customer = appointment.customer
    consents = implicit_booking_consents(customer.email, customer.phone) + [
        entry for entry in payload.consents if entry["granted"]
    ]
    try:
        capture_online_consents(customer.customer_id, appointment.location_id, consents)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.warning("Online consent capture failed for appointment %s: %s", appointment.appointment_id, exc)

    if hold is not None and hold[0] == payload.slot_key:
        hold_store.release(*hold)

    if appointment.status == "CONFIRMED":
        channels = send_booking_confirmation(appointment)
    else:
        channels = send_booking_request(appointment)

    appointment.meta = {**(appointment.meta or {}), "bookingChannels": channels}
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.warning("Storing booking channels failed for appointment %s: %s", appointment.appointment_id, exc)

    availability_cache.invalidate_location(appointment.location_id)
    return channels
