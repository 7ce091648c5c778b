"""
tests/test_users_api.py -- Tests for /api/users.

Covers:
- Role gates: MANAGER reads, ADMIN writes, USER is refused
- Search, filter and pagination metadata
- Create: duplicate email -> 409, super admin grants reserved to super admins
- Update: self-deactivation, last admin, refresh token revocation, change diff
- Delete: self-deletion, last admin
"""

from conftest import DEFAULT_PASSWORD, AppContext


def _code(resp) -> str:
    return resp.json()["error"]["code"]


_NEW_USER = {
    "email": "new.hire@example.com",
    "password": "welcome-aboard",
    "first_name": "New",
    "last_name": "Hire",
}


class TestAccess:
    def test_unauthenticated(self, app_ctx: AppContext) -> None:
        assert app_ctx.client.get("/api/users").status_code == 401

    def test_user_reads_but_cannot_write(self, app_ctx: AppContext) -> None:
        headers = app_ctx.as_role("USER")
        assert app_ctx.client.get("/api/users", headers=headers).status_code == 200
        resp = app_ctx.client.post("/api/users", json=_NEW_USER, headers=headers)
        assert resp.status_code == 403
        assert _code(resp) == "forbidden"

    def test_guest_forbidden(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.get("/api/users", headers=app_ctx.as_role("GUEST"))
        assert resp.status_code == 403
        assert _code(resp) == "forbidden"

    def test_manager_reads_but_cannot_write(self, app_ctx: AppContext) -> None:
        headers = app_ctx.as_role("MANAGER")
        assert app_ctx.client.get("/api/users", headers=headers).status_code == 200
        resp = app_ctx.client.post("/api/users", json=_NEW_USER, headers=headers)
        assert resp.status_code == 403


class TestList:
    def test_search_and_pagination(self, app_ctx: AppContext) -> None:
        headers = app_ctx.as_role("ADMIN")
        for i in range(3):
            app_ctx.make_user(email=f"findme{i}@example.com")
        resp = app_ctx.client.get("/api/users?search=findme&limit=2&sort_by=email&sort_order=asc", headers=headers)
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert [u["email"] for u in body["data"]] == ["findme0@example.com", "findme1@example.com"]
        assert body["pagination"] == {
            "page": 1,
            "limit": 2,
            "total": 3,
            "total_pages": 2,
            "has_next": True,
            "has_prev": False,
        }

    def test_filter_by_role(self, app_ctx: AppContext) -> None:
        headers = app_ctx.as_role("ADMIN")
        app_ctx.make_user("GUEST")
        resp = app_ctx.client.get("/api/users?role=GUEST", headers=headers)
        assert {u["role"] for u in resp.json()["data"]} == {"GUEST"}

    def test_invalid_sort(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.get("/api/users?sort_by=hashed_password", headers=app_ctx.as_role("ADMIN"))
        assert resp.status_code == 400
        assert _code(resp) == "invalid_sort"

    def test_read_is_audited(self, app_ctx: AppContext) -> None:
        app_ctx.client.get("/api/users?search=x", headers=app_ctx.as_role("ADMIN"))
        logs, _ = app_ctx.audit_store.list_logs(action="READ_USERS")
        assert logs[0].details["search"] == "x"


class TestCreate:
    def test_create(self, app_ctx: AppContext) -> None:
        body = {**_NEW_USER, "role": "MANAGER"}
        resp = app_ctx.client.post("/api/users", json=body, headers=app_ctx.as_role("ADMIN"))
        assert resp.status_code == 201, resp.text
        data = resp.json()["data"]
        assert data["role"] == "MANAGER"
        assert data["status"] == "ACTIVE"
        assert app_ctx.user_store.get_by_email("new.hire@example.com") is not None

    def test_duplicate(self, app_ctx: AppContext) -> None:
        app_ctx.make_user(email="new.hire@example.com")
        resp = app_ctx.client.post("/api/users", json=_NEW_USER, headers=app_ctx.as_role("ADMIN"))
        assert resp.status_code == 409
        assert _code(resp) == "user_exists"

    def test_admin_cannot_grant_super_admin(self, app_ctx: AppContext) -> None:
        body = {**_NEW_USER, "role": "SUPER_ADMIN"}
        assert app_ctx.client.post("/api/users", json=body, headers=app_ctx.as_role("ADMIN")).status_code == 403
        assert app_ctx.client.post("/api/users", json=body, headers=app_ctx.as_role("SUPER_ADMIN")).status_code == 201

    def test_validation(self, app_ctx: AppContext) -> None:
        body = {**_NEW_USER, "password": "short"}
        assert app_ctx.client.post("/api/users", json=body, headers=app_ctx.as_role("ADMIN")).status_code == 422


class TestUpdate:
    def test_update_records_diff(self, app_ctx: AppContext) -> None:
        target = app_ctx.make_user(email="old@example.com")
        resp = app_ctx.client.patch(
            f"/api/users/{target.id}",
            json={"first_name": "Renamed", "password": "brand-new-secret"},
            headers=app_ctx.as_role("ADMIN"),
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["first_name"] == "Renamed"
        (entry,) = app_ctx.audit_store.history("User", str(target.id))
        assert entry.details["changes"] == {
            "first_name": {"from": "Test", "to": "Renamed"},
            "password": "changed",
        }

    def test_no_changes(self, app_ctx: AppContext) -> None:
        target = app_ctx.make_user()
        resp = app_ctx.client.patch(f"/api/users/{target.id}", json={}, headers=app_ctx.as_role("ADMIN"))
        assert resp.status_code == 400
        assert _code(resp) == "no_changes"

    def test_not_found(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.patch("/api/users/9999", json={"first_name": "X"}, headers=app_ctx.as_role("ADMIN"))
        assert resp.status_code == 404

    def test_self_deactivation(self, app_ctx: AppContext) -> None:
        admin = app_ctx.make_user("ADMIN")
        app_ctx.make_user("SUPER_ADMIN")
        resp = app_ctx.client.patch(
            f"/api/users/{admin.id}", json={"status": "INACTIVE"}, headers=app_ctx.headers(admin)
        )
        assert resp.status_code == 400
        assert _code(resp) == "self_deactivation"

    def test_last_admin_cannot_be_demoted(self, app_ctx: AppContext) -> None:
        only_admin = app_ctx.make_user("SUPER_ADMIN")
        resp = app_ctx.client.patch(
            f"/api/users/{only_admin.id}", json={"role": "USER"}, headers=app_ctx.headers(only_admin)
        )
        assert resp.status_code == 400
        assert _code(resp) == "last_admin"

    def test_admin_cannot_touch_super_admin(self, app_ctx: AppContext) -> None:
        boss = app_ctx.make_user("SUPER_ADMIN")
        resp = app_ctx.client.patch(f"/api/users/{boss.id}", json={"first_name": "X"}, headers=app_ctx.as_role("ADMIN"))
        assert resp.status_code == 403

    def test_suspending_revokes_sessions(self, app_ctx: AppContext) -> None:
        target = app_ctx.make_user(email="soon-gone@example.com")
        login = app_ctx.client.post(
            "/api/auth/login", json={"email": "soon-gone@example.com", "password": DEFAULT_PASSWORD}
        )
        refresh_token = login.json()["data"]["refresh_token"]
        app_ctx.client.cookies.clear()

        resp = app_ctx.client.patch(
            f"/api/users/{target.id}", json={"status": "SUSPENDED"}, headers=app_ctx.as_role("ADMIN")
        )
        assert resp.status_code == 200, resp.text
        refresh = app_ctx.client.post("/api/auth/refresh", json={"refresh_token": refresh_token})
        assert refresh.status_code == 401

    def test_email_clash(self, app_ctx: AppContext) -> None:
        app_ctx.make_user(email="taken@example.com")
        target = app_ctx.make_user()
        resp = app_ctx.client.patch(
            f"/api/users/{target.id}", json={"email": "taken@example.com"}, headers=app_ctx.as_role("ADMIN")
        )
        assert resp.status_code == 409


class TestDelete:
    def test_delete(self, app_ctx: AppContext) -> None:
        target = app_ctx.make_user()
        resp = app_ctx.client.delete(f"/api/users/{target.id}", headers=app_ctx.as_role("ADMIN"))
        assert resp.status_code == 200
        assert app_ctx.user_store.get_by_id(target.id) is None
        _, total = app_ctx.audit_store.list_logs(action="DELETE_USER")
        assert total == 1

    def test_self_deletion(self, app_ctx: AppContext) -> None:
        admin = app_ctx.make_user("ADMIN")
        app_ctx.make_user("ADMIN")
        resp = app_ctx.client.delete(f"/api/users/{admin.id}", headers=app_ctx.headers(admin))
        assert resp.status_code == 400
        assert _code(resp) == "self_deletion"

    def test_other_admin_can_be_deleted(self, app_ctx: AppContext) -> None:
        boss = app_ctx.make_user("SUPER_ADMIN")
        second = app_ctx.make_user("ADMIN")
        resp = app_ctx.client.delete(f"/api/users/{second.id}", headers=app_ctx.headers(boss))
        assert resp.status_code == 200, resp.text
        assert app_ctx.user_store.count_active_admins() == 1

    def test_manager_cannot_delete(self, app_ctx: AppContext) -> None:
        target = app_ctx.make_user()
        assert app_ctx.client.delete(f"/api/users/{target.id}", headers=app_ctx.as_role("MANAGER")).status_code == 403
