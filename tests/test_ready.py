"""
Tests for /health, /ready and /version.
"""
from __future__ import annotations

from unittest.mock import patch


def test_ready_ok(app_client):
    """Test /ready returns ok when all services are healthy."""
    _app, client = app_client

    with patch("app.routes.core._ping_redis", return_value=True):
        res = client.get("/ready")
        assert res.status_code == 200

        body = res.get_json()
        assert body["status"] == "ok"
        assert body["checks"]["db"] == "ok"
        assert body["checks"]["redis"] == "ok"


def test_ready_redis_down(app_client):
    """Test /ready returns degraded when the broker is down."""
    _app, client = app_client

    with patch("app.routes.core._ping_redis", return_value=False):
        res = client.get("/ready")
        assert res.status_code == 503
        body = res.get_json()
        assert body["status"] == "degraded"
        assert body["checks"]["redis"] == "error"


def test_health_and_security_headers(app_client):
    _app, client = app_client
    res = client.get("/health")
    assert res.status_code == 200
    assert res.get_json()["status"] == "ok"
    assert res.headers["X-Request-ID"]
    assert res.headers["X-Content-Type-Options"] == "nosniff"
    assert res.headers["X-Frame-Options"] == "DENY"
    assert res.headers["Cache-Control"] == "no-store"


def test_version_and_unknown_route(app_client):
    _app, client = app_client
    assert client.get("/version").get_json()["env"] == "test"

    res = client.get("/nope")
    assert res.status_code == 404
    assert res.get_json()["error"]["code"] == "NOT_FOUND"
