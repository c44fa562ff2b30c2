"""Tests for the shift planning client."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest
import requests

from salonbook.availability.types import Interval
from salonbook.shift_plan import (ShiftPlanClient, ShiftPlanError, base_shift_plan_staff_id, clear_resolve_cache,
                                  month_keys, plan_days_in_window)


@pytest.fixture(autouse=True)
def fresh_resolve_cache():
    clear_resolve_cache()
    yield
    clear_resolve_cache()


def fake_response(status_code: int, payload=None) -> Mock:
    response = Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.content = json.dumps(payload).encode() if payload is not None else b""
    response.json.return_value = payload
    return response


def make_client(*responses) -> ShiftPlanClient:
    session = Mock()
    session.get.side_effect = list(responses)
    return ShiftPlanClient("https://plane.example.com/", "s3cret", "acme", session=session)


def staff_row(**overrides):
    values = {
        "staff_id": 7,
        "code": None,
        "meta": {},
        "email": "lina@example.com",
        "first_name": "Lina",
        "last_name": "Berg",
        "display_name": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_get_shift_plan_unwraps_data_and_sends_secret() -> None:
    client = make_client(fake_response(200, {"data": {"staffId": "x", "monthKey": "2030-03", "days": []}}))

    plan = client.get_shift_plan("x", "2030-03")

    assert plan["monthKey"] == "2030-03"
    args, kwargs = client.session.get.call_args
    assert args[0] == "https://plane.example.com/api/internal/shift-plan/staff"
    assert kwargs["params"] == {"tenantId": "acme", "staffId": "x", "month": "2030-03"}
    assert kwargs["headers"]["x-provision-secret"] == "s3cret"


def test_errors_raise_shift_plan_error() -> None:
    with pytest.raises(ShiftPlanError, match="planner offline"):
        make_client(fake_response(503, {"message": "planner offline"})).get_shift_plan("x")
    with pytest.raises(ShiftPlanError):
        make_client(fake_response(200, {"unexpected": True})).get_shift_plan("x")
    with pytest.raises(ShiftPlanError):
        make_client(requests.ConnectionError("boom")).get_shift_plan("x")


def test_unconfigured_client_refuses() -> None:
    client = ShiftPlanClient(None, None, "acme")

    assert not client.configured
    with pytest.raises(ShiftPlanError):
        client.get_shift_plan("x")


def test_resolve_returns_none_on_404_and_caches() -> None:
    client = make_client(fake_response(404))

    assert client.resolve_staff_id({"staffId": "7", "email": "lina@example.com"}) is None
    assert client.resolve_staff_id({"staffId": "7", "email": "lina@example.com"}) is None
    assert client.session.get.call_count == 1


def test_external_staff_id_prefers_resolved_id() -> None:
    client = make_client(fake_response(200, {"staffId": "ckresolvedstaffid00000001"}))

    assert client.external_staff_id(staff_row()) == "ckresolvedstaffid00000001"


def test_external_staff_id_falls_back_on_errors() -> None:
    client = make_client(fake_response(500))

    assert client.external_staff_id(staff_row()) == "7"


def test_control_plane_staff_use_their_code() -> None:
    staff = staff_row(code="ckcontrolplanestaff000001", meta={"source": "control-plane"})
    client = make_client()

    assert base_shift_plan_staff_id(staff) == "ckcontrolplanestaff000001"
    assert client.external_staff_id(staff) == "ckcontrolplanestaff000001"
    client.session.get.assert_not_called()


def test_get_days_spans_months() -> None:
    march = fake_response(200, {"days": [{"isoDate": "2030-03-31", "start": "09:00", "end": "17:00"}]})
    april = fake_response(200, {"days": [{"isoDate": "2030-04-01", "start": "09:00", "end": "12:00"}, "junk"]})
    client = make_client(march, april)
    window = Interval(datetime(2030, 3, 31, tzinfo=timezone.utc), datetime(2030, 4, 2, tzinfo=timezone.utc))

    days = client.get_days(staff_row(code="ckcontrolplanestaff000001", meta={"source": "control-plane"}), window, "UTC")

    assert [day["isoDate"] for day in days] == ["2030-03-31", "2030-04-01"]


def test_month_keys_cross_year() -> None:
    window = Interval(datetime(2029, 12, 30, tzinfo=timezone.utc), datetime(2030, 1, 2, tzinfo=timezone.utc))

    assert month_keys(window, "UTC") == ["2029-12", "2030-01"]


def test_plan_days_in_window_drops_days_off() -> None:
    window = Interval(datetime(2030, 3, 4, tzinfo=timezone.utc), datetime(2030, 3, 5, 12, tzinfo=timezone.utc))
    days = [
        {"isoDate": "2030-03-03", "start": "09:00", "end": "17:00"},
        {"isoDate": "2030-03-04", "start": "09:00", "end": "17:00"},
        {"isoDate": "2030-03-05", "start": None, "end": None},
    ]

    assert plan_days_in_window(days, window, "UTC") == [days[1]]


def test_shift_plan_route_reports_unconfigured_planner(client, salon):
    url = f"/backoffice/{salon['location'].location_id}/staff/{salon['lina'].staff_id}/shift-plan"

    response = client.get(url, query_string={"month": "2030-03"})

    assert response.status_code == 502
    assert response.get_json()["error"] == "shift_plan_unavailable"


def test_shift_plan_route_proxies_the_plan(client, salon):
    location_id = salon["location"].location_id
    plan = {"staffId": "7", "monthKey": "2030-03", "days": [{"isoDate": "2030-03-04", "start": "09:00", "end": "17:00"}]}

    with patch("salonbook.routes.ShiftPlanClient.get_shift_plan", return_value=plan) as get_plan:
        response = client.get(f"/backoffice/{location_id}/staff/{salon['lina'].staff_id}/shift-plan?month=2030-03")

    assert response.status_code == 200
    assert response.get_json()["data"] == plan
    get_plan.assert_called_once_with(str(salon["lina"].staff_id), "2030-03")
    assert client.get(f"/backoffice/{location_id}/staff/9999/shift-plan").status_code == 404
