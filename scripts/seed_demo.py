#!/usr/bin/env python3
"""Seed a demo location with opening hours, staff and services."""
import sys
from pathlib import Path

# Add the parent directory to the path so we can import the app
sys.path.insert(0, str(Path(__file__).parent.parent))

from salonbook import create_app
from salonbook.extensions import db
from salonbook.models import Location, Schedule, ScheduleRule, Service, ServiceStep, Staff
from salonbook.pin_auth import set_staff_pin

OPENING_DAYS = ("MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY")

def seed_demo():
    """Create the demo/mitte location unless it already exists."""
    app = create_app()

    with app.app_context():
        db.create_all()
        if Location.query.filter_by(tenant_id="demo", slug="mitte").first():
            print("ℹ️  Demo location already exists, nothing to do")
            return

        location = Location(
            tenant_id="demo",
            slug="mitte",
            name="Salon Mitte",
            timezone="Europe/Berlin",
            city="Berlin",
            email="mitte@example.com",
            meta={"bookingPreferences": {"interval": "15", "smartSlotsEnabled": True}},
        )
        db.session.add(location)
        db.session.flush()

        opening_hours = Schedule(location_id=location.location_id, owner_type="LOCATION", name="Opening hours")
        for weekday in OPENING_DAYS:
            # 09:00 - 18:00, Saturday until 14:00
            end_minute = 14 * 60 if weekday == "SATURDAY" else 18 * 60
            opening_hours.rules.append(
                ScheduleRule(rule_type="WEEKLY", weekday=weekday, start_minute=9 * 60, end_minute=end_minute)
            )
        db.session.add(opening_hours)

        staff_members = [
            Staff(location_id=location.location_id, first_name="Lina", last_name="Berg", email="lina@example.com"),
            Staff(location_id=location.location_id, first_name="Jonas", last_name="Wolf", email="jonas@example.com"),
        ]
        for member in staff_members:
            set_staff_pin(member, "1234")
        db.session.add_all(staff_members)

        haircut = Service(
            location_id=location.location_id,
            name="Haircut",
            duration_minutes=45,
            price_cents=4500,
            buffer_after=5,
        )
        colouring = Service(
            location_id=location.location_id,
            name="Colouring",
            duration_minutes=95,
            price_cents=8900,
            buffer_before=10,
        )
        colouring.steps = [
            ServiceStep(position=0, name="Apply colour", duration_minutes=30),
            ServiceStep(position=1, name="Processing", duration_minutes=35, min_staff=0),
            ServiceStep(position=2, name="Wash and finish", duration_minutes=30),
        ]
        db.session.add_all([haircut, colouring])
        db.session.commit()

        print(f"✅ Seeded location {location.location_id} (demo/mitte) with {len(staff_members)} staff and 2 services")
        print("   Staff PIN for both demo staff members: 1234")

if __name__ == "__main__":
    seed_demo()
