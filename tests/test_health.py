"""
tests/test_health.py -- Integration tests for GET /api/health and the middleware stack.

Covers:
  - 200 response with status, version and database fields, no auth required
  - 503 "degraded" when the database does not answer
  - First-run redirect to /setup, with /api/health exempt
  - Silent session refresh from the refresh cookie, including parallel requests
  - Auth-protected /docs
"""

from __future__ import annotations

from sqlalchemy.exc import OperationalError

from conftest import DEFAULT_PASSWORD


def test_health_returns_200(app_ctx):
    """Health endpoint returns 200 with status, version and database."""
    resp = app_ctx.client.get("/api/health", headers={})
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": "1.0.0", "database": "ok"}


def test_health_reports_database_failure(app_ctx, monkeypatch):
    def broken_ping():
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    monkeypatch.setattr(app_ctx.user_store, "ping", broken_ping)
    resp = app_ctx.client.get("/api/health")
    assert resp.status_code == 503
    assert resp.json()["status"] == "degraded"
    assert resp.json()["database"] == "unavailable"


def test_first_run_redirects_to_setup(fresh_ctx):
    for path in ("/", "/api/products", "/login"):
        resp = fresh_ctx.client.get(path)
        assert resp.status_code == 302, f"{path}: expected 302, got {resp.status_code}"
        assert resp.headers["location"] == "/setup"


def test_first_run_health_still_reachable(fresh_ctx):
    assert fresh_ctx.client.get("/api/health").status_code == 200


def test_expired_access_cookie_refreshed_silently(web_ctx):
    web_ctx.make_user(email="stay@example.com")
    login = web_ctx.client.post("/api/auth/login", json={"email": "stay@example.com", "password": DEFAULT_PASSWORD})
    refresh_token = login.json()["data"]["refresh_token"]
    web_ctx.client.cookies.clear()
    web_ctx.client.cookies.set("refresh_token", refresh_token)

    resp = web_ctx.client.get("/api/auth/me")
    assert resp.status_code == 200, resp.text
    assert resp.json()["data"]["user"]["email"] == "stay@example.com"
    assert "access_token" in resp.cookies
    assert resp.cookies["refresh_token"] != refresh_token


def test_parallel_requests_with_same_refresh_cookie_stay_signed_in(web_ctx):
    web_ctx.make_user(email="tabs@example.com")
    login = web_ctx.client.post("/api/auth/login", json={"email": "tabs@example.com", "password": DEFAULT_PASSWORD})
    refresh_token = login.json()["data"]["refresh_token"]

    responses = []
    for _ in range(2):
        web_ctx.client.cookies.clear()
        web_ctx.client.cookies.set("refresh_token", refresh_token)
        responses.append(web_ctx.client.get("/api/auth/me"))

    assert [resp.status_code for resp in responses] == [200, 200]
    assert responses[0].cookies["refresh_token"] == responses[1].cookies["refresh_token"]
    cleared = responses[1].headers.get_list("set-cookie")
    assert not any("Max-Age=0" in header for header in cleared)


def test_invalid_refresh_cookie_cleared(web_ctx):
    web_ctx.client.cookies.set("refresh_token", "not-a-token")
    resp = web_ctx.client.get("/api/auth/me")
    assert resp.status_code == 401
    cleared = resp.headers.get_list("set-cookie")
    assert any(header.startswith("refresh_token=") and "Max-Age=0" in header for header in cleared)


def test_docs_require_auth(app_ctx):
    assert app_ctx.client.get("/docs").status_code == 401
    assert app_ctx.client.get("/docs", headers=app_ctx.as_role("USER")).status_code == 200
