"""Tests for PATCH /backoffice/<location>/appointments/<id>/payment-status."""
from __future__ import annotations

from conftest import make_appointment, pin_token

from salonbook.extensions import db
from salonbook.models import Appointment


def payment_url(salon, appointment_id) -> str:
    return f"/backoffice/{salon['location'].location_id}/appointments/{appointment_id}/payment-status"


def test_mark_paid_200(client, salon):
    appointment = make_appointment(salon)

    response = client.patch(
        payment_url(salon, appointment.appointment_id),
        json={"status": "PAID", "note": "Card", "performedBy": pin_token(client, salon)},
    )

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["appointment"]["payment_status"] == "PAID"
    assert data["entry"]["previousStatus"] == "UNPAID"
    assert data["entry"]["note"] == "Card"
    assert data["appointment"]["metadata"]["paymentHistory"] == [data["entry"]]


def test_partial_refund_requires_amount_and_note(client, salon):
    appointment = make_appointment(salon, payment_status="PAID")
    performer = pin_token(client, salon)
    url = payment_url(salon, appointment.appointment_id)

    no_amount = client.patch(url, json={"status": "PARTIALLY_REFUNDED", "note": "Late", "performedBy": performer})
    no_note = client.patch(url, json={"status": "PARTIALLY_REFUNDED", "amount": 10, "performedBy": performer})
    blank_note = client.patch(
        url, json={"status": "REFUNDED", "note": "   ", "performedBy": performer}
    )
    ok = client.patch(
        url, json={"status": "PARTIALLY_REFUNDED", "amount": 10.5, "note": "Late", "performedBy": performer}
    )

    assert no_amount.status_code == 400
    assert no_note.status_code == 400
    assert blank_note.status_code == 400
    assert ok.status_code == 200
    assert ok.get_json()["data"]["entry"]["amount"] == 10.5


def test_invalid_payload_400(client, salon):
    appointment = make_appointment(salon, payment_status="PAID")
    url = payment_url(salon, appointment.appointment_id)

    for body in (
        {"status": "FREE"},
        {"status": "REFUNDED", "note": "x" * 501},
        {"status": "PARTIALLY_REFUNDED", "amount": 0},
        {"status": "PARTIALLY_REFUNDED", "amount": True},
        {"status": "PARTIALLY_REFUNDED", "amount": 2_000_000},
    ):
        assert client.patch(url, json=body).status_code == 400


def test_missing_appointment_404(client, salon):
    assert client.patch(payment_url(salon, 9999), json={"status": "PAID"}).status_code == 404


def test_disallowed_transition_422(client, salon):
    appointment = make_appointment(salon)

    response = client.patch(
        payment_url(salon, appointment.appointment_id),
        json={"status": "REFUNDED", "note": "Oops", "performedBy": pin_token(client, salon)},
    )

    assert response.status_code == 422


def test_requires_pin_token_401(client, salon):
    appointment = make_appointment(salon)

    response = client.patch(
        payment_url(salon, appointment.appointment_id),
        json={"status": "PAID", "performedBy": {"staffId": salon["lina"].staff_id, "token": "forged"}},
    )

    assert response.status_code == 401
    assert db.session.get(Appointment, appointment.appointment_id).payment_status == "UNPAID"


def test_wrong_pin_and_pin_rate_limit(client, salon):
    url = f"/backoffice/{salon['location'].location_id}/staff/verify-pin"
    body = {"staffId": salon["lina"].staff_id, "pin": "0000"}

    statuses = [client.post(url, json=body).status_code for _ in range(6)]

    assert statuses == [401] * 5 + [429]
    assert client.post(url, json={"staffId": salon["lina"].staff_id}).status_code == 400
