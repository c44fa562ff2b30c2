"""Short-lived tokens proving a staff member entered their booking PIN."""
from __future__ import annotations

import hmac

from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from werkzeug.security import check_password_hash, generate_password_hash

PIN_TOKEN_SALT = "booking-pin"


def _serializer() -> URLSafeTimedSerializer:
    secret = current_app.config.get("BOOKING_PIN_SECRET") or current_app.config["SECRET_KEY"]
    return URLSafeTimedSerializer(secret, salt=PIN_TOKEN_SALT)


def set_staff_pin(staff, pin: str) -> None:
    staff.pin_hash = generate_password_hash(pin.strip())


def check_staff_pin(staff, pin: object) -> bool:
    if not isinstance(pin, str) or not pin.strip() or not staff.pin_hash:
        return False
    return check_password_hash(staff.pin_hash, pin.strip())


def create_pin_token(staff_id) -> str:
    return _serializer().dumps({"staff_id": str(staff_id)})


def verify_pin_token(token: object, staff_id) -> bool:
    """True when ``token`` was issued for ``staff_id`` within the configured max age."""
    if not isinstance(token, str) or not token:
        return False
    max_age = current_app.config.get("BOOKING_PIN_TOKEN_MAX_AGE", 15 * 60)
    try:
        payload = _serializer().loads(token, max_age=max_age)
    except (SignatureExpired, BadSignature):
        return False
    token_staff_id = payload.get("staff_id") if isinstance(payload, dict) else None
    if not isinstance(token_staff_id, str):
        return False
    return hmac.compare_digest(token_staff_id, str(staff_id))
