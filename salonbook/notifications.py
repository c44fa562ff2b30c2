"""Outbound booking notifications over email, SMS and WhatsApp."""
from __future__ import annotations

import logging
import re
from typing import Optional

import requests
import resend
from flask import current_app
from twilio.rest import Client

from .availability.intervals import resolve_timezone
from .breaker import CircuitOpenError, mail_breaker
from .extensions import db
from .ics import IcsAttendee, IcsEvent, create_ics_event
from .models import NotificationLog
from .preferences import NotificationPreferences, notification_preferences, preferences_for_location
from .timeutil import ensure_utc

logger = logging.getLogger(__name__)

SMS_SEND_PATH = "/api/internal/sms/send"
WHATSAPP_SEND_PATH = "/api/internal/whatsapp/send"
REMINDER_MINUTES_BEFORE = [60]


class NotificationError(Exception):
    """A provider rejected or could not deliver a message."""


def normalize_phone(value: Optional[str], country_code: Optional[str] = None) -> str:
    """Best-effort E.164: keep a leading +, turn 00 into +, and a local 0 into the default country code."""
    if not value or not value.strip():
        return ""
    trimmed = value.strip()
    if trimmed.startswith("+"):
        return trimmed
    digits = re.sub(r"\D", "", trimmed)
    if not digits:
        return ""
    if digits.startswith("00"):
        return f"+{digits[2:]}"
    if digits.startswith("0"):
        code = country_code or current_app.config.get("DEFAULT_PHONE_COUNTRY_CODE", "49")
        return f"+{code}{digits[1:]}"
    return f"+{digits}"


def _providers_enabled() -> bool:
    return not current_app.config.get("TESTING")


def _control_plane_headers() -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    secret = (current_app.config.get("PROVISION_SECRET") or "").strip()
    if secret:
        headers["x-provision-secret"] = secret
    return headers


def sms_endpoint() -> Optional[str]:
    explicit = (current_app.config.get("CONTROL_PLANE_SMS_URL") or "").strip().rstrip("/")
    if explicit:
        return explicit if explicit.endswith(SMS_SEND_PATH) else explicit + SMS_SEND_PATH
    base = (current_app.config.get("CONTROL_PLANE_URL") or "").strip().rstrip("/")
    return base + SMS_SEND_PATH if base else None


def whatsapp_endpoint() -> Optional[str]:
    explicit = (current_app.config.get("CONTROL_PLANE_WHATSAPP_URL") or "").strip()
    if explicit:
        return explicit
    base = (current_app.config.get("CONTROL_PLANE_URL") or "").strip().rstrip("/")
    return base + WHATSAPP_SEND_PATH if base else None


def is_sms_configured() -> bool:
    config = current_app.config
    return bool(sms_endpoint() or (config.get("TWILIO_ACCOUNT_SID") and config.get("TWILIO_AUTH_TOKEN")))


def is_whatsapp_configured() -> bool:
    return bool(whatsapp_endpoint())


def send_email(
    *,
    to: str,
    subject: str,
    html: str,
    text: str,
    from_name: Optional[str] = None,
    reply_to: Optional[str] = None,
    attachments: Optional[list[dict]] = None,
) -> dict:
    api_key = current_app.config.get("RESEND_API_KEY")
    if not api_key:
        raise NotificationError("RESEND_API_KEY is not configured")

    sender = current_app.config.get("MAIL_FROM", "bookings@example.com")
    params = {
        "from": f"{from_name} <{sender}>" if from_name else sender,
        "to": [to],
        "subject": subject,
        "html": html,
        "text": text,
    }
    if reply_to:
        params["reply_to"] = reply_to
    if attachments:
        params["attachments"] = [
            {"filename": attachment["filename"], "content": attachment["content"]}
            for attachment in attachments
        ]

    def deliver():
        resend.api_key = api_key
        return resend.Emails.send(params)

    return mail_breaker.call("mail", deliver)


def send_sms(to: str, body: str, *, tenant_id: Optional[str] = None, sender: Optional[str] = None) -> None:
    normalized = normalize_phone(to)
    if not normalized:
        raise NotificationError("SMS recipient has no usable phone number")

    endpoint = sms_endpoint()
    if endpoint and tenant_id:
        payload = {"tenantId": tenant_id, "to": normalized, "text": body}
        if sender:
            payload["sender"] = sender
        response = requests.post(endpoint, json=payload, headers=_control_plane_headers(), timeout=10)
        if not response.ok:
            raise NotificationError(f"Control plane SMS failed: {response.status_code} {response.text}")
        return

    config = current_app.config
    if not config.get("TWILIO_FROM_NUMBER"):
        raise NotificationError("TWILIO_FROM_NUMBER is not configured")
    if not (config.get("TWILIO_ACCOUNT_SID") and config.get("TWILIO_AUTH_TOKEN")):
        raise NotificationError("Twilio credentials are not configured")
    client = Client(config["TWILIO_ACCOUNT_SID"], config["TWILIO_AUTH_TOKEN"])
    client.messages.create(to=normalized, from_=config["TWILIO_FROM_NUMBER"], body=body)


def send_whatsapp(
    *,
    tenant_id: str,
    to: str,
    template_key: str,
    placeholders: list[str],
    fallback_text: Optional[str] = None,
) -> None:
    normalized = normalize_phone(to)
    if not normalized or normalized == "+":
        raise NotificationError("WhatsApp recipient has no usable phone number")
    endpoint = whatsapp_endpoint()
    if not endpoint:
        raise NotificationError("CONTROL_PLANE_URL is not configured")

    headers = _control_plane_headers()
    response = requests.post(
        endpoint,
        json={
            "tenantId": tenant_id,
            "to": normalized,
            "type": "template",
            "templateKey": template_key,
            "placeholders": placeholders,
        },
        headers=headers,
        timeout=10,
    )
    if response.ok:
        return
    if fallback_text:
        fallback = requests.post(
            endpoint,
            json={"tenantId": tenant_id, "to": normalized, "type": "text", "text": fallback_text},
            headers=headers,
            timeout=10,
        )
        if fallback.ok:
            return
    raise NotificationError(f"WhatsApp send failed: {response.status_code} {response.text}")


def _record(appointment, channel: str, template: str, recipient: str, status: str, error: Optional[str] = None):
    entry = NotificationLog(
        location_id=appointment.location_id,
        appointment_id=appointment.appointment_id,
        channel=channel,
        template=template,
        recipient=recipient,
        status=status,
        error=error,
    )
    db.session.add(entry)
    return entry


def _dispatch(appointment, channel: str, template: str, recipient: str, send) -> bool:
    """Run one provider call and log the outcome. Provider errors never propagate to the booking."""
    if not _providers_enabled():
        _record(appointment, channel, template, recipient, "SKIPPED")
        return False
    try:
        send()
    except CircuitOpenError as exc:
        logger.warning("Skipping %s %s for appointment %s: %s", channel, template, appointment.appointment_id, exc)
        _record(appointment, channel, template, recipient, "SKIPPED", str(exc))
        return False
    except Exception as exc:
        logger.exception("Failed to send %s %s for appointment %s", channel, template, appointment.appointment_id)
        _record(appointment, channel, template, recipient, "FAILED", str(exc))
        return False
    _record(appointment, channel, template, recipient, "SENT")
    return True


def _labels(appointment) -> dict[str, str]:
    location = appointment.location
    tz = resolve_timezone(location.timezone if location else None)
    starts_at = ensure_utc(appointment.starts_at).astimezone(tz)
    staff = next((item.staff for item in appointment.items if item.staff), None)
    if staff is not None:
        staff_first_name = (staff.first_name or "").strip() or (staff.display_name or "").split(" ")[0] or "Team"
    else:
        staff_first_name = "Team"
    return {
        "date": starts_at.strftime("%d.%m.%Y"),
        "time": starts_at.strftime("%H:%M"),
        "start": starts_at.strftime("%d.%m.%Y %H:%M"),
        "services": ", ".join(item.service.name if item.service else "Service" for item in appointment.items),
        "location": location.name if location else "Salon",
        "staff_first_name": staff_first_name,
    }


def _customer_name(customer) -> str:
    return f"{customer.first_name or ''} {customer.last_name or ''}".strip()


def _sender(appointment) -> NotificationPreferences:
    return notification_preferences(preferences_for_location(appointment.location))


def _confirmation_ics(appointment, labels: dict[str, str]) -> str:
    customer = appointment.customer
    location = appointment.location
    return create_ics_event(
        IcsEvent(
            uid=f"appointment-{appointment.appointment_id}@salonbook",
            summary=f"Appointment: {labels['services']}",
            description=f"See you at {labels['location']}.\nConfirmation code: {appointment.confirmation_code}",
            location=(location.address_line1 if location else None) or labels["location"],
            starts_at=appointment.starts_at,
            ends_at=appointment.ends_at,
            created_at=appointment.created_at,
            status="CONFIRMED",
            attendees=[IcsAttendee(name=_customer_name(customer), email=customer.email)],
            reminders_minutes_before=list(REMINDER_MINUTES_BEFORE),
        )
    )


def _send_phone_channels(appointment, template: str, text: str, labels: dict[str, str]) -> dict[str, bool]:
    customer = appointment.customer
    channels = {"sms": False, "whatsapp": False}
    if not customer.phone:
        return channels
    prefs = _sender(appointment)
    tenant_id = appointment.location.tenant_id if appointment.location else None

    if is_whatsapp_configured() and tenant_id:
        channels["whatsapp"] = _dispatch(
            appointment,
            "WHATSAPP",
            template,
            customer.phone,
            lambda: send_whatsapp(
                tenant_id=tenant_id,
                to=customer.phone,
                template_key=template,
                placeholders=[customer.first_name or "", labels["date"], labels["time"], labels["services"]],
                fallback_text=text,
            ),
        )
    if not channels["whatsapp"] and is_sms_configured():
        channels["sms"] = _dispatch(
            appointment,
            "SMS",
            template,
            customer.phone,
            lambda: send_sms(customer.phone, text, tenant_id=tenant_id, sender=prefs.sms_sender_name),
        )
    return channels


def send_booking_confirmation(appointment) -> dict[str, bool]:
    """Confirmation email with calendar attachment plus a WhatsApp or SMS message.

    Returns which phone channels delivered, as stored in ``metadata.bookingChannels``.
    """
    customer = appointment.customer
    labels = _labels(appointment)
    prefs = _sender(appointment)
    brand = prefs.sms_brand_name or labels["location"]

    if customer.email:
        greeting = f"Hello {customer.first_name}," if customer.first_name else "Hello,"
        text = (
            f"{greeting}\n\nyour appointment for {labels['services']} on {labels['start']} at "
            f"{labels['location']} is confirmed.\nConfirmation code: {appointment.confirmation_code}"
        )
        html = (
            f"<p>{greeting}</p><p>your appointment for {labels['services']} on "
            f"<strong>{labels['start']}</strong> at {labels['location']} is confirmed.</p>"
            f"<p>Confirmation code: <strong>{appointment.confirmation_code}</strong></p>"
        )
        ics = _confirmation_ics(appointment, labels)
        _dispatch(
            appointment,
            "EMAIL",
            "booking_confirmation",
            customer.email,
            lambda: send_email(
                to=customer.email,
                subject="Your appointment is confirmed",
                html=html,
                text=text,
                from_name=prefs.email_sender_name or labels["location"],
                reply_to=prefs.email_reply_to,
                attachments=[{"filename": "appointment.ics", "content": ics}],
            ),
        )

    sms_text = (
        f"Hi {customer.first_name or ''}, your appointment ({labels['services']}) on {labels['start']} "
        f"at {brand} is confirmed. Code: {appointment.confirmation_code}"
    )
    return _send_phone_channels(appointment, "booking_confirmation", sms_text, labels)


def send_booking_request(appointment) -> dict[str, bool]:
    """Acknowledge a pending booking that staff still have to confirm."""
    customer = appointment.customer
    labels = _labels(appointment)
    prefs = _sender(appointment)
    if customer.email:
        text = (
            f"We received your booking request for {labels['services']} on {labels['start']}. "
            f"{labels['location']} will confirm it shortly."
        )
        _dispatch(
            appointment,
            "EMAIL",
            "booking_request",
            customer.email,
            lambda: send_email(
                to=customer.email,
                subject="We received your booking request",
                html=f"<p>{text}</p>",
                text=text,
                from_name=prefs.email_sender_name or labels["location"],
                reply_to=prefs.email_reply_to,
            ),
        )
    return {"sms": False, "whatsapp": False}


def send_cancellation(appointment) -> dict[str, bool]:
    customer = appointment.customer
    labels = _labels(appointment)
    prefs = _sender(appointment)
    text = f"Your appointment for {labels['services']} on {labels['start']} at {labels['location']} was cancelled."
    if customer.email:
        _dispatch(
            appointment,
            "EMAIL",
            "booking_cancellation",
            customer.email,
            lambda: send_email(
                to=customer.email,
                subject="Your appointment was cancelled",
                html=f"<p>{text}</p>",
                text=text,
                from_name=prefs.email_sender_name or labels["location"],
                reply_to=prefs.email_reply_to,
            ),
        )
    return _send_phone_channels(appointment, "booking_cancellation", text, labels)
