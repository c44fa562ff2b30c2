"""HTTP routes for the salon booking backend."""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

import redis
from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .appointments import STATUS_TRANSITIONS, StatusTransitionError, can_change_status, change_status
from .availability import Interval, availability_cache
from .availability.intervals import resolve_timezone
from .booking import (TIME_OF_DAY, BookingError, compute_availability, find_location, parse_service_ids,
                      public_availability, within_advance_limits)
from .checkout import checkout, checkout_response, parse_checkout_payload
from .consents import consent_history, is_valid_consent, normalize_consent_method, record_consent, revoke_consent
from .extensions import db
from .holds import (HOLD_TTL_SECONDS, MANUAL_HOLD_TTL_SECONDS, SlotHoldMetadata, decode_hold_id,
                    encode_hold_id, hold_store)
from .memberships import staff_belongs_to_location
from .models import Appointment, Customer, Location, Staff
from .notifications import send_cancellation
from .payments import (PAYMENT_TRANSITIONS, REFUND_STATUSES, PaymentTransitionError, apply_payment_status,
                       can_transition)
from .pin_auth import check_staff_pin, create_pin_token, verify_pin_token
from .preferences import derive_booking_preferences, preferences_for_location
from .rate_limit import rate_limiter
from .shift_plan import ShiftPlanClient, ShiftPlanError
from .timeutil import parse_iso, to_iso

bp = Blueprint("api", __name__)

AVAILABILITY_RATE_LIMIT = (60, 60)
CHECKOUT_RATE_LIMIT = (5, 60)
PIN_RATE_LIMIT = (5, 300)
MAX_PAYMENT_NOTE_LENGTH = 500
MAX_PAYMENT_AMOUNT = 1_000_000


def register_routes(app) -> None:
    app.register_blueprint(bp)


def _client_address() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    return forwarded.split(",")[0].strip() or request.remote_addr or "unknown"


def _rate_limited():
    return jsonify({"error": "rate_limited", "message": "Too many requests"}), 429


def _invalid(message: str):
    return jsonify({"error": "invalid_payload", "message": message}), 400


def _not_found(message: str):
    return jsonify({"error": "not_found", "message": message}), 404


def _unauthorized():
    return jsonify({"error": "unauthorized", "message": "Valid staff PIN token required"}), 401


def _optional_int(value) -> int | None:
    """Parse an optional integer query or body value; raises ValueError when malformed."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer")
    return int(value)


def _service_id_args() -> list[str]:
    values = []
    for raw in request.args.getlist("services") + request.args.getlist("service") + request.args.getlist("serviceId"):
        values.extend(part for part in raw.split(",") if part.strip())
    return values


def _authenticate_performer(location_id: int, performer: object) -> Staff | None:
    """Staff member behind ``performedBy {staffId, token}`` when the PIN token is valid."""
    if not isinstance(performer, dict):
        return None
    try:
        staff_id = _optional_int(performer.get("staffId"))
    except (TypeError, ValueError):
        return None
    if staff_id is None:
        return None
    staff = db.session.get(Staff, staff_id)
    if staff is None or not staff_belongs_to_location(staff, location_id):
        return None
    if not verify_pin_token(performer.get("token"), staff.staff_id):
        return None
    return staff


def _location_appointment(location_id: int, appointment_id: int) -> Appointment | None:
    appointment = db.session.get(Appointment, appointment_id)
    if appointment is None or appointment.location_id != location_id:
        return None
    return appointment


@bp.app_errorhandler(redis.RedisError)
def shared_store_unavailable(exc: redis.RedisError) -> tuple[dict[str, str], int]:
    current_app.logger.exception("Shared store unavailable", exc_info=exc)
    return jsonify({"error": "store_unavailable", "message": "Booking store temporarily unavailable"}), 503


@bp.get("/health")
def health_check() -> tuple[dict[str, str], int]:
    """
    Expose a simple uptime check endpoint.
    ---
    tags:
      - Health
    responses:
      200:
        description: Service is healthy and running.
        schema:
          type: object
          properties:
            status:
              type: string
              example: ok
    """
    return jsonify({"status": "ok"}), 200


@bp.get("/db-health")
def database_health() -> tuple[dict[str, str], int]:
    """Check connectivity to the configured database.
    ---
    tags:
      - Health
    responses:
      200:
        description: Database connection is ok.
      500:
        description: Database connection failed.
    """
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.exception("Database connectivity check failed", exc_info=exc)
        return jsonify({"database": "unavailable"}), 500

    return jsonify({"database": "ok"}), 200


@bp.get("/book/<tenant>/<location_slug>/availability")
def booking_availability(tenant: str, location_slug: str) -> tuple[dict[str, object], int]:
    """Bookable slots for one or more services inside a window of at most seven days.
    ---
    tags:
      - Booking
    parameters:
      - name: from
        in: query
        type: string
        required: true
        description: ISO datetime, window start
      - name: to
        in: query
        type: string
        required: true
        description: ISO datetime, window end
      - name: services
        in: query
        type: array
        items:
          type: integer
        required: true
      - name: staffId
        in: query
        type: integer
      - name: granularity
        in: query
        type: integer
        description: Slot step in minutes, defaults to the location interval
      - name: deviceId
        in: query
        type: string
    responses:
      200:
        description: Slots ordered by start time
      400:
        description: Invalid parameters
      403:
        description: Online booking disabled
      404:
        description: Unknown location
      429:
        description: Too many requests
    """
    limit, window_seconds = AVAILABILITY_RATE_LIMIT
    if not rate_limiter.hit(f"availability:{_client_address()}", limit, window_seconds):
        return _rate_limited()

    location = find_location(tenant, location_slug)
    if location is None:
        return _not_found("Location not found")

    start = parse_iso(request.args.get("from"))
    end = parse_iso(request.args.get("to"))
    if start is None or end is None:
        return _invalid("Parameters 'from' and 'to' must be ISO datetimes")

    try:
        staff_id = _optional_int(request.args.get("staffId"))
        granularity = _optional_int(request.args.get("granularity"))
    except ValueError:
        return _invalid("Parameters 'staffId' and 'granularity' must be integers")

    try:
        service_ids = parse_service_ids(_service_id_args())
        result = compute_availability(
            location,
            window=Interval(start, end),
            service_ids=service_ids,
            staff_id=staff_id,
            granularity=granularity,
            device_id=request.args.get("deviceId") or None,
        )
    except BookingError as exc:
        return jsonify(exc.to_dict()), exc.status
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to compute availability", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    payload: dict[str, object] = {"data": [slot.to_dict() for slot in result.slots], "cached": result.cached}
    if result.warnings:
        payload["warnings"] = result.warnings
    return jsonify(payload), 200


@bp.post("/book/<tenant>/<location_slug>/checkout")
def booking_checkout(tenant: str, location_slug: str) -> tuple[dict[str, object], int]:
    """Book a previously offered slot.
    ---
    tags:
      - Booking
    parameters:
      - name: Idempotency-Key
        in: header
        type: string
        description: Replays return the appointment created by the first request
      - name: body
        in: body
        required: true
        schema:
          type: object
          required: [slotKey, window, staffId, services, customer, consents]
    responses:
      201:
        description: Appointment created
      200:
        description: Appointment already created for this idempotency key
      400:
        description: Invalid payload or missing terms consent
      403:
        description: Online booking disabled
      409:
        description: Slot no longer available
      429:
        description: Too many requests
      503:
        description: Shift plan could not be loaded
    """
    location = find_location(tenant, location_slug)
    if location is None:
        return _not_found("Location not found")

    limit, window_seconds = CHECKOUT_RATE_LIMIT
    if not rate_limiter.hit(f"checkout:{_client_address()}:{location.location_id}", limit, window_seconds):
        return _rate_limited()

    payload = request.get_json(silent=True) or {}
    idempotency_key = (request.headers.get("Idempotency-Key") or "").strip() or None
    try:
        checkout_request = parse_checkout_payload(payload)
        result = checkout(location, checkout_request, idempotency_key=idempotency_key)
    except BookingError as exc:
        return jsonify(exc.to_dict()), exc.status
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Checkout failed", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    prefs = preferences_for_location(location)
    body = {"data": checkout_response(result.appointment, prefs, result.channels)}
    return jsonify(body), 201 if result.created else 200


@bp.post("/book/<tenant>/<location_slug>/holds")
def create_booking_hold(tenant: str, location_slug: str) -> tuple[dict[str, object], int]:
    """Reserve a slot for five minutes while the customer completes checkout.
    ---
    tags:
      - Booking
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required: [slotKey]
          properties:
            slotKey:
              type: string
            slot:
              type: object
    responses:
      200:
        description: Hold acquired
      400:
        description: Invalid slot key
      403:
        description: Online booking disabled
      409:
        description: Slot already reserved or outside the booking limits
    """
    location = find_location(tenant, location_slug)
    if location is None:
        return _not_found("Location not found")

    prefs = preferences_for_location(location)
    if not prefs.online_booking_enabled:
        return jsonify({"error": "forbidden", "message": "Online booking is disabled"}), 403

    payload = request.get_json(silent=True) or {}
    slot_key = payload.get("slotKey")
    parts = slot_key.split("|") if isinstance(slot_key, str) else []
    if len(parts) < 4 or parts[0] != str(location.location_id):
        return _invalid("Invalid slotKey")
    start = parse_iso(parts[2])
    if start is None:
        return _invalid("Invalid slotKey")
    if not within_advance_limits(start, prefs):
        return jsonify({"error": "conflict", "message": "Slot is no longer available"}), 409

    acquired = hold_store.acquire(slot_key, HOLD_TTL_SECONDS)
    if acquired is None:
        return jsonify({"error": "slot_unavailable", "message": "Slot already reserved"}), 409
    token, expires_at = acquired

    slot = payload.get("slot")
    if isinstance(slot, dict):
        slot_start = parse_iso(slot.get("start"))
        matches = (
            str(slot.get("locationId")) == parts[0]
            and str(slot.get("staffId")) == parts[1]
            and slot_start is not None
            and slot_start == start
        )
        if matches:
            service_names = slot.get("serviceNames")
            hold_store.store_metadata(
                SlotHoldMetadata(
                    slot_key=slot_key,
                    location_id=parts[0],
                    staff_id=parts[1],
                    start=to_iso(start),
                    end=slot.get("end") or to_iso(start),
                    reserved_from=slot.get("reservedFrom") or to_iso(start),
                    reserved_to=slot.get("reservedTo") or slot.get("end") or to_iso(start),
                    expires_at=expires_at,
                    service_names=[str(name) for name in service_names] if isinstance(service_names, list) else [],
                )
            )

    return jsonify(
        {
            "ok": True,
            "holdId": encode_hold_id(slot_key, token),
            "token": token,
            "expiresAt": to_iso(datetime.fromtimestamp(expires_at, tz=timezone.utc)),
        }
    ), 200


@bp.delete("/book/<tenant>/<location_slug>/holds/<hold_id>")
def release_booking_hold(tenant: str, location_slug: str, hold_id: str) -> tuple[dict[str, object], int]:
    """Release a hold created by ``POST /holds``.
    ---
    tags:
      - Booking
    responses:
      200:
        description: Hold released or already gone
      400:
        description: Malformed hold id
      404:
        description: Unknown location
    """
    location = find_location(tenant, location_slug)
    if location is None:
        return _not_found("Location not found")

    decoded = decode_hold_id(hold_id)
    if decoded is None or not decoded[0].startswith(f"{location.location_id}|"):
        return _invalid("Invalid holdId")
    return jsonify({"released": hold_store.release(*decoded)}), 200


@bp.get("/api/availability")
def public_availability_route() -> tuple[dict[str, object], int]:
    """Widget availability for up to 31 days with opaque slot ids.
    ---
    tags:
      - Booking
    parameters:
      - name: locationId
        in: query
        type: integer
        required: true
      - name: serviceId
        in: query
        type: integer
        description: Alternatively pass one or more ``services``
      - name: date
        in: query
        type: string
        format: date
        description: First day, defaults to today in the location's time zone
      - name: days
        in: query
        type: integer
        default: 7
        maximum: 31
      - name: staffId
        in: query
        type: integer
      - name: timeOfDay
        in: query
        type: string
        enum: [am, pm, eve]
    responses:
      200:
        description: Slots plus advance-limit metadata
      400:
        description: Invalid parameters
      404:
        description: Unknown location
    """
    limit, window_seconds = AVAILABILITY_RATE_LIMIT
    if not rate_limiter.hit(f"availability:{_client_address()}", limit, window_seconds):
        return _rate_limited()

    try:
        location_id = _optional_int(request.args.get("locationId"))
        staff_id = _optional_int(request.args.get("staffId"))
        days = _optional_int(request.args.get("days")) or 7
    except ValueError:
        return _invalid("Parameters 'locationId', 'staffId' and 'days' must be integers")
    if location_id is None:
        return _invalid("Parameter 'locationId' is required")

    location = db.session.get(Location, location_id)
    if location is None:
        return _not_found("Location not found")

    raw_date = request.args.get("date")
    if raw_date:
        try:
            start_date = date.fromisoformat(raw_date)
        except ValueError:
            return _invalid("Parameter 'date' must be YYYY-MM-DD")
    else:
        start_date = datetime.now(resolve_timezone(location.timezone)).date()

    time_of_day = request.args.get("timeOfDay") or None
    if time_of_day is not None and time_of_day not in TIME_OF_DAY:
        return _invalid("Parameter 'timeOfDay' must be one of am, pm, eve")

    try:
        service_ids = parse_service_ids(_service_id_args())
        body = public_availability(
            location,
            service_ids=service_ids,
            start_date=start_date,
            days=days,
            staff_id=staff_id,
            time_of_day=time_of_day,
            device_id=request.args.get("deviceId") or None,
        )
    except BookingError as exc:
        return jsonify(exc.to_dict()), exc.status
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to compute public availability", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify(body), 200


@bp.get("/backoffice/<int:location_id>/booking-holds")
def list_booking_holds(location_id: int) -> tuple[dict[str, object], int]:
    """Active holds overlapping a calendar range, shaped like calendar blocks.
    ---
    tags:
      - Backoffice
    parameters:
      - name: start
        in: query
        type: string
        required: true
      - name: end
        in: query
        type: string
        required: true
    responses:
      200:
        description: Holds as calendar blocks
      400:
        description: Missing or invalid range
    """
    start = parse_iso(request.args.get("start"))
    end = parse_iso(request.args.get("end"))
    if start is None or end is None or end <= start:
        return _invalid("Parameters 'start' and 'end' must be ISO datetimes with end after start")

    blocks = []
    for hold in hold_store.list_for_location(location_id):
        starts_at = parse_iso(hold.reserved_from) or parse_iso(hold.start)
        ends_at = parse_iso(hold.reserved_to) or parse_iso(hold.end)
        if starts_at is None or ends_at is None or not (starts_at < end and start < ends_at):
            continue
        manual = "|manual:" in hold.slot_key
        blocks.append(
            {
                "id": f"hold:{hold.slot_key}",
                "staffId": hold.staff_id,
                "reason": "Reserved" if manual else "Online booking in progress",
                "startsAt": to_iso(starts_at),
                "endsAt": to_iso(ends_at),
                "metadata": {
                    "isHold": True,
                    "holdSource": "staff" if manual else "online",
                    "expiresAt": int(hold.expires_at * 1000),
                    "serviceNames": hold.service_names,
                    "createdByName": hold.created_by_name,
                    "createdByStaffId": hold.created_by_staff_id,
                },
            }
        )
    blocks.sort(key=lambda block: block["startsAt"])
    return jsonify({"data": blocks}), 200


@bp.post("/backoffice/<int:location_id>/booking-holds")
def create_manual_hold(location_id: int) -> tuple[dict[str, object], int]:
    """Block a time range for a staff member while a booking is entered at the desk.
    ---
    tags:
      - Backoffice
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required: [staffId, start, end]
          properties:
            staffId:
              type: integer
            start:
              type: string
            end:
              type: string
            serviceNames:
              type: array
              items:
                type: string
            performedBy:
              type: object
              properties:
                staffId:
                  type: integer
                token:
                  type: string
    responses:
      201:
        description: Hold created
      400:
        description: Invalid payload
      401:
        description: Missing or invalid PIN token
      404:
        description: Unknown staff member
    """
    payload = request.get_json(silent=True) or {}
    performer = _authenticate_performer(location_id, payload.get("performedBy"))
    if performer is None:
        return _unauthorized()

    try:
        staff_id = _optional_int(payload.get("staffId"))
    except (TypeError, ValueError):
        return _invalid("staffId must be an integer")
    start = parse_iso(payload.get("start"))
    end = parse_iso(payload.get("end"))
    if staff_id is None or start is None or end is None or end <= start:
        return _invalid("staffId, start and end are required and end must be after start")

    staff = db.session.get(Staff, staff_id)
    if staff is None or not staff_belongs_to_location(staff, location_id):
        return _not_found("Staff member not found")

    slot_key = f"{location_id}|{staff_id}|{to_iso(start)}|manual:{uuid.uuid4().hex}"
    acquired = hold_store.acquire(slot_key, MANUAL_HOLD_TTL_SECONDS)
    if acquired is None:
        return jsonify({"error": "conflict", "message": "Slot already reserved"}), 409
    _, expires_at = acquired

    service_names = payload.get("serviceNames")
    hold_store.store_metadata(
        SlotHoldMetadata(
            slot_key=slot_key,
            location_id=str(location_id),
            staff_id=str(staff_id),
            start=to_iso(start),
            end=to_iso(end),
            reserved_from=to_iso(start),
            reserved_to=to_iso(end),
            expires_at=expires_at,
            created_by_staff_id=str(performer.staff_id),
            created_by_name=performer.name,
            service_names=[str(name) for name in service_names] if isinstance(service_names, list) else [],
        )
    )
    current_app.logger.info(
        "Manual hold %s created for staff %s by staff %s", slot_key, staff_id, performer.staff_id
    )
    return jsonify(
        {"slotKey": slot_key, "expiresAt": to_iso(datetime.fromtimestamp(expires_at, tz=timezone.utc))}
    ), 201


@bp.delete("/backoffice/<int:location_id>/booking-holds")
def delete_manual_hold(location_id: int) -> tuple[dict[str, object], int]:
    """Remove a hold from the calendar.
    ---
    tags:
      - Backoffice
    responses:
      200:
        description: Hold removed
      400:
        description: Missing slotKey
      401:
        description: Missing or invalid PIN token
      404:
        description: No such hold
    """
    payload = request.get_json(silent=True) or {}
    if _authenticate_performer(location_id, payload.get("performedBy")) is None:
        return _unauthorized()
    slot_key = payload.get("slotKey")
    if not isinstance(slot_key, str) or not slot_key.startswith(f"{location_id}|"):
        return _invalid("slotKey is required")
    if not hold_store.remove_metadata(slot_key):
        return _not_found("Hold not found")
    return jsonify({"removed": True}), 200


@bp.post("/backoffice/<int:location_id>/staff/verify-pin")
def verify_staff_pin(location_id: int) -> tuple[dict[str, object], int]:
    """Exchange a staff PIN for a short-lived token used on sensitive backoffice actions.
    ---
    tags:
      - Backoffice
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required: [staffId, pin]
    responses:
      200:
        description: PIN accepted
      400:
        description: Invalid payload
      401:
        description: Wrong PIN
      429:
        description: Too many attempts
    """
    payload = request.get_json(silent=True) or {}
    try:
        staff_id = _optional_int(payload.get("staffId"))
    except (TypeError, ValueError):
        staff_id = None
    pin = payload.get("pin")
    if staff_id is None or not isinstance(pin, str) or not pin.strip():
        return _invalid("staffId and pin are required")

    limit, window_seconds = PIN_RATE_LIMIT
    if not rate_limiter.hit(f"pin:{location_id}:{staff_id}", limit, window_seconds):
        return _rate_limited()

    staff = db.session.get(Staff, staff_id)
    if staff is None or not staff_belongs_to_location(staff, location_id) or not check_staff_pin(staff, pin):
        current_app.logger.warning("PIN verification failed for staff %s at location %s", staff_id, location_id)
        return jsonify({"error": "unauthorized", "message": "Invalid PIN"}), 401

    return jsonify(
        {
            "data": {
                "token": create_pin_token(staff.staff_id),
                "staffId": staff.staff_id,
                "staffName": staff.name,
                "expiresIn": current_app.config.get("BOOKING_PIN_TOKEN_MAX_AGE", 15 * 60),
            }
        }
    ), 200


@bp.get("/backoffice/<int:location_id>/staff/<int:staff_id>/shift-plan")
def staff_shift_plan(location_id: int, staff_id: int) -> tuple[dict[str, object], int]:
    """Fetch a staff member's month from the external shift planner.
    ---
    tags:
      - Backoffice
    parameters:
      - name: month
        in: query
        type: string
        description: YYYY-MM, defaults to the planner's current month
    responses:
      200:
        description: Plan days
      404:
        description: Unknown staff member
      502:
        description: Shift planner unavailable
    """
    location = db.session.get(Location, location_id)
    staff = db.session.get(Staff, staff_id)
    if location is None or staff is None or not staff_belongs_to_location(staff, location_id):
        return _not_found("Staff member not found")

    client = ShiftPlanClient.from_config(current_app.config, location.tenant_id)
    try:
        plan = client.get_shift_plan(client.external_staff_id(staff), request.args.get("month") or None)
    except ShiftPlanError as exc:
        current_app.logger.warning("Shift plan fetch failed for staff %s: %s", staff_id, exc)
        return jsonify({"error": "shift_plan_unavailable", "message": str(exc)}), 502
    return jsonify({"data": plan}), 200


@bp.get("/backoffice/<int:location_id>/appointments/<int:appointment_id>")
def get_appointment(location_id: int, appointment_id: int) -> tuple[dict[str, object], int]:
    """Return one appointment with its items and customer.
    ---
    tags:
      - Backoffice
    responses:
      200:
        description: Appointment
      404:
        description: Appointment not found
    """
    appointment = _location_appointment(location_id, appointment_id)
    if appointment is None:
        return _not_found("Appointment not found")
    return jsonify({"data": appointment.to_dict()}), 200


@bp.patch("/backoffice/<int:location_id>/appointments/<int:appointment_id>/status")
def update_appointment_status(location_id: int, appointment_id: int) -> tuple[dict[str, object], int]:
    """Confirm, cancel, complete or mark an appointment as no-show.
    ---
    tags:
      - Backoffice
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required: [status, performedBy]
          properties:
            status:
              type: string
              enum: [CONFIRMED, CANCELLED, COMPLETED, NO_SHOW]
            reason:
              type: string
            performedBy:
              type: object
              properties:
                staffId:
                  type: integer
                token:
                  type: string
    responses:
      200:
        description: Status changed
      400:
        description: Invalid payload
      401:
        description: Missing or invalid PIN token
      404:
        description: Appointment not found
      422:
        description: Transition not allowed
    """
    payload = request.get_json(silent=True) or {}
    status = payload.get("status")
    reason = payload.get("reason")
    if status not in STATUS_TRANSITIONS:
        return _invalid("Unknown status")
    if reason is not None and not isinstance(reason, str):
        return _invalid("reason must be a string")

    appointment = _location_appointment(location_id, appointment_id)
    if appointment is None:
        return _not_found("Appointment not found")
    if not can_change_status(appointment.status, status):
        message = str(StatusTransitionError(appointment.status, status))
        return jsonify({"error": "invalid_transition", "message": message}), 422

    staff = _authenticate_performer(location_id, payload.get("performedBy"))
    if staff is None:
        return _unauthorized()

    try:
        change_status(
            appointment,
            status,
            performed_by={"staffId": str(staff.staff_id), "staffName": staff.name},
            reason=(reason or "").strip() or None,
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update appointment status", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    if status == "CANCELLED":
        availability_cache.invalidate_location(location_id)
        send_cancellation(appointment)
        try:
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.warning("Storing cancellation notifications failed: %s", exc)

    return jsonify({"data": appointment.to_dict()}), 200


@bp.patch("/backoffice/<int:location_id>/appointments/<int:appointment_id>/payment-status")
def update_payment_status(location_id: int, appointment_id: int) -> tuple[dict[str, object], int]:
    """Record a payment, authorisation or refund for an appointment.
    ---
    tags:
      - Backoffice
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required: [status, performedBy]
          properties:
            status:
              type: string
              enum: [AUTHORIZED, PAID, REFUNDED, PARTIALLY_REFUNDED]
            note:
              type: string
              maxLength: 500
            amount:
              type: number
            performedBy:
              type: object
    responses:
      200:
        description: Payment status changed
      400:
        description: Invalid payload, missing refund note or amount
      401:
        description: Missing or invalid PIN token
      404:
        description: Appointment not found
      422:
        description: Transition not allowed
    """
    payload = request.get_json(silent=True) or {}
    status = payload.get("status")
    note = payload.get("note")
    amount = payload.get("amount")
    if status not in PAYMENT_TRANSITIONS:
        return _invalid("Unknown payment status")
    if note is not None and (not isinstance(note, str) or len(note) > MAX_PAYMENT_NOTE_LENGTH):
        return _invalid(f"note must be a string of at most {MAX_PAYMENT_NOTE_LENGTH} characters")
    if amount is not None and (
        isinstance(amount, bool)
        or not isinstance(amount, (int, float))
        or not 0 < amount <= MAX_PAYMENT_AMOUNT
    ):
        return _invalid("amount must be a positive number")

    appointment = _location_appointment(location_id, appointment_id)
    if appointment is None:
        return _not_found("Appointment not found")
    if not can_transition(appointment.payment_status, status):
        message = str(PaymentTransitionError(appointment.payment_status, status))
        return jsonify({"error": "invalid_transition", "message": message}), 422

    staff = _authenticate_performer(location_id, payload.get("performedBy"))
    if staff is None:
        return _unauthorized()

    if status == "PARTIALLY_REFUNDED" and amount is None:
        return _invalid("amount is required for partial refunds")
    note = (note or "").strip() or None
    if status in REFUND_STATUSES and note is None:
        return _invalid("note is required for refunds")

    try:
        entry = apply_payment_status(
            appointment,
            status,
            performed_by={"staffId": str(staff.staff_id), "staffName": staff.name},
            note=note,
            amount=amount,
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update payment status", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"data": {"appointment": appointment.to_dict(), "entry": entry}}), 200


@bp.get("/backoffice/<int:location_id>/customers/<int:customer_id>/consents")
def list_customer_consents(location_id: int, customer_id: int) -> tuple[dict[str, object], int]:
    """Consent records for a customer, including their grant/revoke history.
    ---
    tags:
      - Backoffice
    responses:
      200:
        description: Consents
      404:
        description: Customer not found
    """
    customer = db.session.get(Customer, customer_id)
    if customer is None or customer.location_id != location_id:
        return _not_found("Customer not found")
    return jsonify({"data": [consent.to_dict() for consent in consent_history(customer_id, location_id)]}), 200


@bp.post("/backoffice/<int:location_id>/customers/<int:customer_id>/consents")
def update_customer_consent(location_id: int, customer_id: int) -> tuple[dict[str, object], int]:
    """Grant or revoke one consent for a customer.
    ---
    tags:
      - Backoffice
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required: [type, action]
          properties:
            type:
              type: string
              enum: [TERMS, PRIVACY, COMMUNICATION, MARKETING]
            scope:
              type: string
              enum: [EMAIL, SMS, WHATSAPP, GENERAL]
            action:
              type: string
              enum: [grant, revoke]
            method:
              type: string
              enum: [online, in_person, written]
            performedBy:
              type: object
    responses:
      200:
        description: Consent updated
      400:
        description: Invalid payload
      401:
        description: Missing or invalid PIN token
      404:
        description: Customer or consent not found
    """
    payload = request.get_json(silent=True) or {}
    if _authenticate_performer(location_id, payload.get("performedBy")) is None:
        return _unauthorized()
    consent_type = payload.get("type")
    scope = payload.get("scope") or "GENERAL"
    action = payload.get("action")
    if not is_valid_consent(consent_type, scope):
        return _invalid("Invalid consent type or scope")
    if action not in ("grant", "revoke"):
        return _invalid("action must be 'grant' or 'revoke'")
    raw_method = payload.get("method")
    method = normalize_consent_method(raw_method) if raw_method is not None else None
    if raw_method is not None and method is None:
        return _invalid("Unknown consent method")

    customer = db.session.get(Customer, customer_id)
    if customer is None or customer.location_id != location_id:
        return _not_found("Customer not found")

    try:
        if action == "grant":
            consent = record_consent(
                customer_id, location_id, consent_type, scope, method=method or "in_person", source="BACKOFFICE"
            )
        else:
            consent = revoke_consent(customer_id, location_id, consent_type, scope, method=method)
            if consent is None:
                return _not_found("Consent not found")
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update consent", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"data": consent.to_dict()}), 200


@bp.get("/backoffice/<int:location_id>/settings/booking-preferences")
def get_booking_preferences(location_id: int) -> tuple[dict[str, object], int]:
    """Normalised online booking preferences for a location.
    ---
    tags:
      - Backoffice
    responses:
      200:
        description: Preferences
      404:
        description: Location not found
    """
    location = db.session.get(Location, location_id)
    if location is None:
        return _not_found("Location not found")
    return jsonify({"data": preferences_for_location(location).to_dict()}), 200


@bp.put("/backoffice/<int:location_id>/settings/booking-preferences")
def update_booking_preferences(location_id: int) -> tuple[dict[str, object], int]:
    """Update booking preferences; omitted fields keep their current value.
    ---
    tags:
      - Backoffice
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required: [performedBy]
    responses:
      200:
        description: Stored preferences after normalisation
      400:
        description: Body is not a JSON object
      401:
        description: Missing or invalid PIN token
      404:
        description: Location not found
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _invalid("Body must be a JSON object")
    payload = dict(payload)
    if _authenticate_performer(location_id, payload.pop("performedBy", None)) is None:
        return _unauthorized()

    location = db.session.get(Location, location_id)
    if location is None:
        return _not_found("Location not found")

    merged = {**preferences_for_location(location).to_dict(), **payload}
    if "shiftPlan" not in payload and "shiftPlanEnabled" in payload:
        merged.pop("shiftPlan")
    prefs = derive_booking_preferences(merged)
    try:
        location.meta = {**(location.meta or {}), "bookingPreferences": prefs.to_dict()}
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to store booking preferences", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    availability_cache.invalidate_location(location_id)
    return jsonify({"data": prefs.to_dict()}), 200
