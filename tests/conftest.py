"""Shared pytest fixtures: an in-memory app, its test client and a seeded location."""
from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Ensure the project root is available on sys.path so tests can import the app package.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from salonbook import create_app  # noqa: E402
from salonbook.availability import availability_cache  # noqa: E402
from salonbook.breaker import mail_breaker  # noqa: E402
from salonbook.config import TestConfig  # noqa: E402
from salonbook.extensions import db  # noqa: E402
from salonbook.holds import hold_store  # noqa: E402
from salonbook.memberships import reset_membership_check  # noqa: E402
from salonbook.models import (Appointment, AppointmentItem, Customer, Location, Schedule,  # noqa: E402
                              ScheduleRule, Service, Staff)
from salonbook.pin_auth import set_staff_pin  # noqa: E402
from salonbook.rate_limit import rate_limiter  # noqa: E402
from salonbook.shift_plan import clear_resolve_cache  # noqa: E402

# A Monday far enough ahead that every slot lies in the future.
MONDAY = datetime(2030, 3, 4, tzinfo=timezone.utc)
STAFF_PIN = "2468"


def _reset_process_state() -> None:
    hold_store.clear()
    availability_cache.clear()
    rate_limiter.reset()
    mail_breaker.reset()
    reset_membership_check()
    clear_resolve_cache()


@pytest.fixture
def app():
    _reset_process_state()
    flask_app = create_app(TestConfig)
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()
    _reset_process_state()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def salon(app):
    """Location acme/downtown open Monday-Friday 09:00-17:00 UTC with two stylists and a haircut."""
    location = Location(
        tenant_id="acme",
        slug="downtown",
        name="Downtown Studio",
        timezone="UTC",
        email="downtown@example.com",
        meta={"bookingPreferences": {"interval": "15", "maxAdvance": {"value": 0, "unit": "weeks"}}},
    )
    db.session.add(location)
    db.session.flush()

    opening_hours = Schedule(location_id=location.location_id, owner_type="LOCATION", timezone="UTC")
    for weekday in ("MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY"):
        opening_hours.rules.append(
            ScheduleRule(rule_type="WEEKLY", weekday=weekday, start_minute=9 * 60, end_minute=17 * 60)
        )

    lina = Staff(location_id=location.location_id, first_name="Lina", last_name="Berg")
    max_ = Staff(location_id=location.location_id, first_name="Max", last_name="Vogel")
    set_staff_pin(lina, STAFF_PIN)
    set_staff_pin(max_, STAFF_PIN)

    haircut = Service(
        location_id=location.location_id,
        name="Haircut",
        duration_minutes=30,
        price_cents=3000,
    )
    db.session.add_all([opening_hours, lina, max_, haircut])
    db.session.commit()

    return {
        "location": location,
        "lina": lina,
        "max": max_,
        "haircut": haircut,
    }


def make_appointment(salon, *, status="CONFIRMED", payment_status="UNPAID", hour=10, email="kim@example.com"):
    """Persist a single-item appointment for Lina on MONDAY at ``hour``:00."""
    location = salon["location"]
    customer = Customer(location_id=location.location_id, first_name="Kim", last_name="Lee", email=email)
    db.session.add(customer)
    db.session.flush()

    starts_at = MONDAY.replace(hour=hour)
    ends_at = MONDAY.replace(hour=hour, minute=30)
    appointment = Appointment(
        location_id=location.location_id,
        customer_id=customer.customer_id,
        confirmation_code="ABC123",
        status=status,
        payment_status=payment_status,
        total_cents=3000,
        meta={},
    )
    appointment.items = [
        AppointmentItem(
            service_id=salon["haircut"].service_id,
            staff_id=salon["lina"].staff_id,
            starts_at=starts_at,
            ends_at=ends_at,
            price_cents=3000,
        )
    ]
    appointment.refresh_time_range()
    db.session.add(appointment)
    db.session.commit()
    return appointment


def pin_token(client, salon, staff_key="lina") -> dict[str, object]:
    """``performedBy`` payload for a staff member who just entered their PIN."""
    staff = salon[staff_key]
    response = client.post(
        f"/backoffice/{salon['location'].location_id}/staff/verify-pin",
        json={"staffId": staff.staff_id, "pin": STAFF_PIN},
    )
    assert response.status_code == 200
    return {"staffId": staff.staff_id, "token": response.get_json()["data"]["token"]}
