"""Tests for staff-created holds and the calendar hold listing."""
from __future__ import annotations

from conftest import MONDAY, pin_token

from salonbook.timeutil import to_iso


def holds_url(salon) -> str:
    return f"/backoffice/{salon['location'].location_id}/booking-holds"


def create_hold(client, salon, **overrides):
    body = {
        "staffId": salon["lina"].staff_id,
        "start": to_iso(MONDAY.replace(hour=10)),
        "end": to_iso(MONDAY.replace(hour=11)),
        "serviceNames": ["Haircut"],
        "performedBy": pin_token(client, salon),
    }
    body.update(overrides)
    return client.post(holds_url(salon), json=body)


def test_manual_hold_shows_in_calendar_and_blocks_booking(client, salon):
    created = create_hold(client, salon)

    assert created.status_code == 201
    slot_key = created.get_json()["slotKey"]
    assert "|manual:" in slot_key

    listed = client.get(
        holds_url(salon),
        query_string={"start": to_iso(MONDAY), "end": to_iso(MONDAY.replace(hour=23))},
    ).get_json()["data"]
    assert len(listed) == 1
    block = listed[0]
    assert block["id"] == f"hold:{slot_key}"
    assert block["startsAt"] == "2030-03-04T10:00:00.000Z"
    assert block["metadata"]["holdSource"] == "staff"
    assert block["metadata"]["serviceNames"] == ["Haircut"]
    assert block["metadata"]["createdByName"] == "Lina Berg"
    assert block["metadata"]["createdByStaffId"] == str(salon["lina"].staff_id)

    availability = client.get(
        "/book/acme/downtown/availability",
        query_string={
            "from": to_iso(MONDAY.replace(hour=9)),
            "to": to_iso(MONDAY.replace(hour=12)),
            "services": salon["haircut"].service_id,
            "staffId": salon["lina"].staff_id,
            "granularity": 30,
        },
    ).get_json()["data"]
    assert [slot["start"][11:16] for slot in availability] == ["09:00", "09:30", "11:00", "11:30"]


def test_listing_ignores_holds_outside_the_range(client, salon):
    create_hold(client, salon)

    listed = client.get(
        holds_url(salon),
        query_string={"start": to_iso(MONDAY.replace(hour=12)), "end": to_iso(MONDAY.replace(hour=13))},
    )

    assert listed.get_json()["data"] == []
    assert client.get(holds_url(salon), query_string={"start": "x"}).status_code == 400


def test_delete_manual_hold(client, salon):
    slot_key = create_hold(client, salon).get_json()["slotKey"]
    performer = pin_token(client, salon, "max")

    first = client.delete(holds_url(salon), json={"slotKey": slot_key, "performedBy": performer})
    second = client.delete(holds_url(salon), json={"slotKey": slot_key, "performedBy": performer})

    assert first.status_code == 200
    assert second.status_code == 404
    assert client.delete(holds_url(salon), json={"performedBy": performer}).status_code == 400


def test_manual_hold_validation(client, salon):
    assert create_hold(client, salon, end=to_iso(MONDAY.replace(hour=9))).status_code == 400
    assert create_hold(client, salon, staffId="lina").status_code == 400
    assert create_hold(client, salon, staffId=9999).status_code == 404


def test_hold_mutations_require_a_staff_token(client, salon):
    slot_key = create_hold(client, salon).get_json()["slotKey"]

    anonymous_create = create_hold(client, salon, performedBy=None)
    anonymous_delete = client.delete(holds_url(salon), json={"slotKey": slot_key})
    forged_delete = client.delete(
        holds_url(salon), json={"slotKey": slot_key, "performedBy": {"staffId": salon["lina"].staff_id, "token": "x"}}
    )

    assert anonymous_create.status_code == 401
    assert anonymous_delete.status_code == 401
    assert forged_delete.status_code == 401
    listed = client.get(
        holds_url(salon),
        query_string={"start": to_iso(MONDAY), "end": to_iso(MONDAY.replace(hour=23))},
    ).get_json()["data"]
    assert [block["id"] for block in listed] == [f"hold:{slot_key}"]
