"""Health endpoint, the error envelope and logging setup."""
import logging

from fastapi.testclient import TestClient

from conftest import make_settings
from fastfolio.logging import setup_logging
from fastfolio.main import create_app


def test_health_returns_ok(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    j = r.json()
    assert j.get("status") == "ok"
    assert j.get("database") == "ok"
    assert j["gateways"] == {"STRIPE": True, "VNPAY": True, "MOMO": True}
    assert r.headers.get("X-Request-ID")


def test_health_reports_unconfigured_gateways():
    app = create_app(make_settings(momo_partner_code="", stripe_secret_key=""))
    with TestClient(app) as c:
        j = c.get("/health").json()
    assert j["gateways"] == {"STRIPE": False, "VNPAY": True, "MOMO": False}


def test_unknown_route_uses_error_envelope(client: TestClient):
    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    j = r.json()
    assert j["status_code"] == 404
    assert "error" in j
    assert j.get("request_id")


def test_setup_logging_aligns_uvicorn_and_app_levels():
    try:
        setup_logging(logging.WARNING)
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastfolio"):
            assert logging.getLogger(name).level == logging.WARNING
    finally:
        setup_logging()
