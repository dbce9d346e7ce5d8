"""
tests/test_health.py -- Integration tests for GET /api/health.

Covers:
  - 200 response with status, version, checks and breakers
  - database check reports 'ok' against the in-memory store
  - degraded status when the database breaker is open
  - No authentication required, never gated
"""

from __future__ import annotations

import pytest

from core.breaker import CircuitState


def _fail():
    raise RuntimeError("database down")


def test_health_returns_200_with_checks(client):
    """Health endpoint returns 200 with status, version, checks and breakers."""
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"]
    assert data["checks"]["database"] == {"status": "ok", "detail": None}
    assert data["checks"]["email"]["status"] == "disabled"
    assert set(data["breakers"]) == {"database", "email"}
    assert data["breakers"]["database"]["state"] == "CLOSED"


def test_health_degraded_when_database_breaker_open(client):
    from api.main import app

    breaker = app.state.breakers["database"]
    for _ in range(breaker.threshold):
        with pytest.raises(RuntimeError):
            breaker.call(_fail)
    assert breaker.state is CircuitState.OPEN

    data = client.get("/api/health").json()
    assert data["status"] == "degraded"
    assert data["checks"]["database"]["status"] == "error"
    assert data["breakers"]["database"]["state"] == "OPEN"


def test_health_no_auth_required(client):
    """Health endpoint is reachable without a session and ignores a bad cookie."""
    client.cookies.set("session_token", "garbage")
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert "set-cookie" not in resp.headers
