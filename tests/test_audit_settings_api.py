"""
tests/test_audit_settings_api.py -- Tests for /api/audit-logs, /api/settings and /api/dashboard.

Covers:
- Audit log listing: admin only, filters, date validation, user summaries
- Manual audit entries: missing fields, unknown target user
- Settings: read, partial and full update, bounds, explicit nulls, audit diff
- Maintenance mode: 503 for non-admins, admins unaffected
- Dashboard: analytics permission, period validation, zero-filled series
"""

from conftest import DEFAULT_PASSWORD, AppContext


def _code(resp) -> str:
    return resp.json()["error"]["code"]


class TestAuditLogs:
    def test_admin_only(self, app_ctx: AppContext) -> None:
        assert app_ctx.client.get("/api/audit-logs", headers=app_ctx.as_role("MANAGER")).status_code == 403
        assert app_ctx.client.get("/api/audit-logs", headers=app_ctx.as_role("ADMIN")).status_code == 200

    def test_filters_and_user_summary(self, app_ctx: AppContext) -> None:
        headers = app_ctx.as_role("ADMIN")
        app_ctx.client.get("/api/products", headers=headers)
        app_ctx.client.get("/api/orders", headers=headers)
        resp = app_ctx.client.get("/api/audit-logs?action=read_products", headers=headers)
        assert resp.status_code == 200, resp.text
        (entry,) = resp.json()["data"]
        assert entry["action"] == "READ_PRODUCTS"
        assert entry["user"]["role"] == "ADMIN"
        assert "hashed_password" not in entry["user"]

    def test_listing_is_itself_audited(self, app_ctx: AppContext) -> None:
        headers = app_ctx.as_role("ADMIN")
        app_ctx.client.get("/api/audit-logs?resource=Product", headers=headers)
        logs, _ = app_ctx.audit_store.list_logs(action="READ_AUDIT_LOGS")
        assert logs[0].details["filters"]["resource"] == "Product"

    def test_date_range(self, app_ctx: AppContext) -> None:
        headers = app_ctx.as_role("ADMIN")
        app_ctx.client.get("/api/products", headers=headers)
        resp = app_ctx.client.get("/api/audit-logs?end_date=2000-01-01", headers=headers)
        assert resp.json()["pagination"]["total"] == 0
        resp = app_ctx.client.get("/api/audit-logs?start_date=2000-01-01&action=READ_PRODUCTS", headers=headers)
        assert resp.json()["pagination"]["total"] == 1

    def test_invalid_date(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.get("/api/audit-logs?start_date=yesterday", headers=app_ctx.as_role("ADMIN"))
        assert resp.status_code == 400
        assert _code(resp) == "invalid_date"

    def test_invalid_sort(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.get("/api/audit-logs?sort_by=ip_address", headers=app_ctx.as_role("ADMIN"))
        assert resp.status_code == 400
        assert _code(resp) == "invalid_sort"


class TestManualAuditEntry:
    def test_create(self, app_ctx: AppContext) -> None:
        target = app_ctx.make_user()
        resp = app_ctx.client.post(
            "/api/audit-logs",
            json={"action": "DATA_EXPORT", "resource": "Users", "details": {"rows": 10}, "target_user_id": target.id},
            headers=app_ctx.as_role("ADMIN"),
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()["data"]
        assert data["user_id"] == target.id
        assert data["details"] == {"rows": 10}
        _, total = app_ctx.audit_store.list_logs(action="CREATE_AUDIT_LOG")
        assert total == 1

    def test_missing_fields(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.post("/api/audit-logs", json={"action": "X"}, headers=app_ctx.as_role("ADMIN"))
        assert resp.status_code == 400
        assert _code(resp) == "missing_fields"

    def test_unknown_target(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.post(
            "/api/audit-logs",
            json={"action": "X", "resource": "Y", "target_user_id": 9999},
            headers=app_ctx.as_role("ADMIN"),
        )
        assert resp.status_code == 404
        assert _code(resp) == "user_not_found"


class TestSettings:
    def test_read(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.get("/api/settings", headers=app_ctx.as_role("ADMIN"))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["max_login_attempts"] == 5
        assert data["session_timeout"] == 60

    def test_patch_records_diff(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.patch(
            "/api/settings", json={"site_name": "Shop HQ", "session_timeout": 60}, headers=app_ctx.as_role("ADMIN")
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["site_name"] == "Shop HQ"
        logs, _ = app_ctx.audit_store.list_logs(action="UPDATE_SETTINGS")
        assert list(logs[0].details["changes"]) == ["site_name"]

    def test_put_replaces(self, app_ctx: AppContext) -> None:
        body = {"site_name": "Replaced", "contact_email": "ops@example.com", "maintenance_mode": False}
        resp = app_ctx.client.put("/api/settings", json=body, headers=app_ctx.as_role("ADMIN"))
        assert resp.status_code == 200, resp.text
        data = resp.json()["data"]
        assert data["contact_email"] == "ops@example.com"
        assert data["max_login_attempts"] == 5

    def test_bounds(self, app_ctx: AppContext) -> None:
        headers = app_ctx.as_role("ADMIN")
        resp = app_ctx.client.patch("/api/settings", json={"max_login_attempts": 11}, headers=headers)
        assert resp.status_code == 422
        assert app_ctx.client.patch("/api/settings", json={"session_timeout": 10}, headers=headers).status_code == 422

    def test_malformed_contact_email_rejected(self, app_ctx: AppContext) -> None:
        headers = app_ctx.as_role("ADMIN")
        resp = app_ctx.client.patch("/api/settings", json={"contact_email": "ops@@example"}, headers=headers)
        assert resp.status_code == 422
        assert app_ctx.user_store.get_app_settings()["contact_email"] != "ops@@example"

    def test_explicit_null_rejected(self, app_ctx: AppContext) -> None:
        headers = app_ctx.as_role("ADMIN")
        assert app_ctx.client.patch("/api/settings", json={"site_name": None}, headers=headers).status_code == 422
        resp = app_ctx.client.patch("/api/settings", json={"maintenance_mode": None}, headers=headers)
        assert resp.status_code == 422

    def test_empty_patch(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.patch("/api/settings", json={}, headers=app_ctx.as_role("ADMIN"))
        assert resp.status_code == 400
        assert _code(resp) == "no_changes"

    def test_manager_cannot_write(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.patch("/api/settings", json={"site_name": "X"}, headers=app_ctx.as_role("MANAGER"))
        assert resp.status_code == 403

    def test_session_timeout_sets_token_lifetime(self, app_ctx: AppContext) -> None:
        app_ctx.user_store.update_app_settings(session_timeout=15)
        app_ctx.make_user(email="short@example.com")
        resp = app_ctx.client.post("/api/auth/login", json={"email": "short@example.com", "password": DEFAULT_PASSWORD})
        assert resp.json()["data"]["expires_in"] == 15 * 60


class TestMaintenanceMode:
    def test_non_admins_get_503(self, app_ctx: AppContext) -> None:
        app_ctx.user_store.update_app_settings(maintenance_mode=True)
        resp = app_ctx.client.get("/api/products", headers=app_ctx.as_role("MANAGER"))
        assert resp.status_code == 503
        assert _code(resp) == "maintenance"
        assert app_ctx.client.get("/api/products", headers=app_ctx.as_role("ADMIN")).status_code == 200

    def test_health_unaffected(self, app_ctx: AppContext) -> None:
        app_ctx.user_store.update_app_settings(maintenance_mode=True)
        assert app_ctx.client.get("/api/health").status_code == 200


class TestDashboard:
    def test_requires_analytics(self, app_ctx: AppContext) -> None:
        assert app_ctx.client.get("/api/dashboard", headers=app_ctx.as_role("USER")).status_code == 403

    def test_payload(self, app_ctx: AppContext) -> None:
        headers = app_ctx.as_role("MANAGER")
        product = app_ctx.make_product(category="Home")
        app_ctx.make_order(app_ctx.users["MANAGER"], [(product, 3)])
        resp = app_ctx.client.get("/api/dashboard?months=12", headers=headers)
        assert resp.status_code == 200, resp.text
        data = resp.json()["data"]
        assert len(data["months"]) == 12
        assert len(data["revenue_per_month"]) == 12
        assert data["revenue_per_month"][-1] == 30.0
        assert data["stats"]["total_orders"] == 1
        assert data["order_status"] == {"PENDING": 1}
        assert data["categories"] == {"Home": 1}
        assert data["top_products"][0]["product_id"] == product.id

    def test_invalid_period(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.get("/api/dashboard?months=5", headers=app_ctx.as_role("ADMIN"))
        assert resp.status_code == 400
        assert _code(resp) == "invalid_period"
