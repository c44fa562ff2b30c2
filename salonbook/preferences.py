"""Per-location online booking preferences stored in location metadata."""
from __future__ import annotations

import json
import math
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

MINUTES_PER_UNIT = {
    "minutes": 1,
    "hours": 60,
    "days": 60 * 24,
    "weeks": 60 * 24 * 7,
}

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass
class BookingLimit:
    value: float
    unit: str

    def to_minutes(self) -> int:
        return booking_limit_to_minutes(self)


@dataclass
class DepositPolicy:
    """Deposit owed at booking time, amounts in cents."""

    percentage: Optional[float] = None
    flat_amount: Optional[int] = None
    threshold_amount: Optional[int] = None
    applies_to_service_ids: list[str] = field(default_factory=list)
    currency: str = "EUR"

    def to_dict(self) -> dict[str, object]:
        return {
            "percentage": self.percentage,
            "flatAmount": self.flat_amount,
            "thresholdAmount": self.threshold_amount,
            "appliesToServiceIds": list(self.applies_to_service_ids),
            "currency": self.currency,
        }


@dataclass
class BookingPreferences:
    online_booking_enabled: bool = True
    auto_confirm: bool = True
    interval: str = "30"
    min_advance: BookingLimit = field(default_factory=lambda: BookingLimit(0, "hours"))
    max_advance: BookingLimit = field(default_factory=lambda: BookingLimit(4, "weeks"))
    cancel_limit: BookingLimit = field(default_factory=lambda: BookingLimit(24, "hours"))
    services_per_booking: int = 3
    shift_plan: bool = False
    smart_slots_enabled: bool = False
    step_engine_min: int = 5
    buffer_min: int = 0
    min_gap_min: int = 10
    max_smart_slots_per_hour: int = 1
    min_waste_reduction_min: int = 10
    max_off_grid_offset_min: int = 10
    email_reply_to_enabled: bool = False
    email_reply_to: str = ""
    email_sender_name: str = ""
    sms_brand_name: str = ""
    sms_sender_name: str = ""
    deposit: Optional[DepositPolicy] = None

    @property
    def interval_minutes(self) -> int:
        try:
            return max(1, int(self.interval))
        except ValueError:
            return 1

    def to_dict(self) -> dict[str, object]:
        """Camel-case representation as stored in location metadata."""
        return {
            "onlineBookingEnabled": self.online_booking_enabled,
            "autoConfirm": self.auto_confirm,
            "interval": self.interval,
            "minAdvance": asdict(self.min_advance),
            "maxAdvance": asdict(self.max_advance),
            "cancelLimit": asdict(self.cancel_limit),
            "servicesPerBooking": self.services_per_booking,
            "shiftPlan": self.shift_plan,
            "smartSlotsEnabled": self.smart_slots_enabled,
            "stepEngineMin": self.step_engine_min,
            "bufferMin": self.buffer_min,
            "minGapMin": self.min_gap_min,
            "maxSmartSlotsPerHour": self.max_smart_slots_per_hour,
            "minWasteReductionMin": self.min_waste_reduction_min,
            "maxOffGridOffsetMin": self.max_off_grid_offset_min,
            "emailReplyToEnabled": self.email_reply_to_enabled,
            "emailReplyTo": self.email_reply_to,
            "emailSenderName": self.email_sender_name,
            "smsBrandName": self.sms_brand_name,
            "smsSenderName": self.sms_sender_name,
            "deposit": self.deposit.to_dict() if self.deposit else None,
        }


@dataclass
class NotificationPreferences:
    email_sender_name: Optional[str] = None
    email_reply_to: Optional[str] = None
    sms_brand_name: Optional[str] = None
    sms_sender_name: Optional[str] = None


def booking_limit_to_minutes(limit: BookingLimit) -> int:
    try:
        value = float(limit.value)
    except (TypeError, ValueError):
        value = 0.0
    if not math.isfinite(value):
        value = 0.0
    multiplier = MINUTES_PER_UNIT.get(limit.unit, MINUTES_PER_UNIT["hours"])
    return int(max(0.0, value) * multiplier)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _clamp_int(value: Any, fallback: int, minimum: int, maximum: int) -> int:
    number = _as_number(value)
    if number is None:
        return fallback
    return min(maximum, max(minimum, round(number)))


def _bool(value: Any, fallback: bool) -> bool:
    return value if isinstance(value, bool) else fallback


def _text(value: Any, fallback: str, max_length: int) -> str:
    if not isinstance(value, str):
        return fallback
    return value.strip()[:max_length]


def _email(value: Any, fallback: str) -> str:
    if not isinstance(value, str):
        return fallback
    trimmed = value.strip()
    if not trimmed:
        return ""
    return trimmed[:120] if EMAIL_PATTERN.match(trimmed) else fallback


def _limit(value: Any, fallback: BookingLimit) -> BookingLimit:
    if not isinstance(value, dict):
        return BookingLimit(fallback.value, fallback.unit)
    raw_value = value.get("value")
    limit_value = raw_value if isinstance(raw_value, (int, float)) and not isinstance(raw_value, bool) else fallback.value
    unit = value.get("unit")
    if unit not in MINUTES_PER_UNIT:
        unit = fallback.unit
    return BookingLimit(limit_value, unit)


def _interval(value: Any, fallback: str) -> str:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        raw = str(int(value))
    elif isinstance(value, str):
        raw = value.strip()
    else:
        return fallback
    match = re.match(r"^\d+", raw)
    if not match or int(match.group()) <= 0:
        return fallback
    return str(int(match.group()))


def _step_engine(value: Any, fallback: int, step_ui: int) -> int:
    """Largest divisor of ``step_ui`` not above the requested engine step."""
    requested = _clamp_int(value, fallback, 1, step_ui)
    for candidate in range(min(requested, step_ui), 0, -1):
        if step_ui % candidate == 0:
            return candidate
    return step_ui


def _deposit(value: Any) -> Optional[DepositPolicy]:
    if not isinstance(value, dict):
        return None
    percentage = _as_number(value.get("percentage"))
    flat = _as_number(value.get("flatAmount"))
    threshold = _as_number(value.get("thresholdAmount"))
    if percentage is None and flat is None:
        return None
    applies = value.get("appliesToServiceIds")
    currency = value.get("currency")
    return DepositPolicy(
        percentage=max(0.0, min(100.0, percentage)) if percentage is not None else None,
        flat_amount=max(0, round(flat)) if flat is not None else None,
        threshold_amount=max(0, round(threshold)) if threshold is not None else None,
        applies_to_service_ids=[str(entry) for entry in applies if str(entry).strip()] if isinstance(applies, list) else [],
        currency=currency if isinstance(currency, str) and len(currency) == 3 else "EUR",
    )


def derive_booking_preferences(raw: Any) -> BookingPreferences:
    """Normalise stored preferences; anything missing or malformed falls back to the default."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raw = None
    defaults = BookingPreferences()
    if not isinstance(raw, dict):
        return defaults

    interval = _interval(raw.get("interval"), defaults.interval)
    step_ui = max(1, int(interval))

    if isinstance(raw.get("shiftPlan"), bool):
        shift_plan = raw["shiftPlan"]
    else:
        shift_plan = _bool(raw.get("shiftPlanEnabled"), defaults.shift_plan)

    return BookingPreferences(
        online_booking_enabled=_bool(raw.get("onlineBookingEnabled"), defaults.online_booking_enabled),
        auto_confirm=_bool(raw.get("autoConfirm"), defaults.auto_confirm),
        interval=interval,
        min_advance=_limit(raw.get("minAdvance"), defaults.min_advance),
        max_advance=_limit(raw.get("maxAdvance"), defaults.max_advance),
        cancel_limit=_limit(raw.get("cancelLimit"), defaults.cancel_limit),
        services_per_booking=_clamp_int(raw.get("servicesPerBooking"), defaults.services_per_booking, 1, 10),
        shift_plan=shift_plan,
        smart_slots_enabled=_bool(raw.get("smartSlotsEnabled"), defaults.smart_slots_enabled),
        step_engine_min=_step_engine(raw.get("stepEngineMin"), defaults.step_engine_min, step_ui),
        buffer_min=_clamp_int(raw.get("bufferMin"), defaults.buffer_min, 0, 15),
        min_gap_min=_clamp_int(raw.get("minGapMin"), defaults.min_gap_min, 5, 30),
        max_smart_slots_per_hour=_clamp_int(raw.get("maxSmartSlotsPerHour"), defaults.max_smart_slots_per_hour, 0, 2),
        min_waste_reduction_min=_clamp_int(raw.get("minWasteReductionMin"), defaults.min_waste_reduction_min, 0, 60),
        max_off_grid_offset_min=_clamp_int(
            raw.get("maxOffGridOffsetMin"), defaults.max_off_grid_offset_min, 0, step_ui // 2
        ),
        email_reply_to_enabled=_bool(raw.get("emailReplyToEnabled"), defaults.email_reply_to_enabled),
        email_reply_to=_email(raw.get("emailReplyTo"), defaults.email_reply_to),
        email_sender_name=_text(raw.get("emailSenderName"), defaults.email_sender_name, 80),
        sms_brand_name=_text(raw.get("smsBrandName"), defaults.sms_brand_name, 20),
        sms_sender_name=_text(raw.get("smsSenderName"), defaults.sms_sender_name, 11),
        deposit=_deposit(raw.get("deposit")),
    )


def preferences_for_location(location) -> BookingPreferences:
    metadata = location.meta if isinstance(location.meta, dict) else {}
    return derive_booking_preferences(metadata.get("bookingPreferences"))


def notification_preferences(preferences: BookingPreferences) -> NotificationPreferences:
    """Sender overrides for outbound messages; blank values mean "use the platform default"."""
    reply_to = preferences.email_reply_to if preferences.email_reply_to_enabled else ""
    return NotificationPreferences(
        email_sender_name=preferences.email_sender_name or None,
        email_reply_to=reply_to or None,
        sms_brand_name=preferences.sms_brand_name or None,
        sms_sender_name=preferences.sms_sender_name or None,
    )
