"""Smoke tests for the health endpoints."""
from __future__ import annotations

from salonbook import create_app
from salonbook.config import TestConfig


def test_health_endpoint() -> None:
    app = create_app(TestConfig)
    client = app.test_client()

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json == {"status": "ok"}


def test_database_health_endpoint_ok(client) -> None:
    response = client.get("/db-health")

    assert response.status_code == 200
    assert response.json == {"database": "ok"}
