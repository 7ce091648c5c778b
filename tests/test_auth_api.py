"""
tests/test_auth_api.py -- Tests for the /api/auth endpoints.

Covers:
- Login by email or phone with a password or a one-time code
- Error codes for bad input, bad credentials and non-active accounts
- Lockout after max_login_attempts consecutive failures
- Two-factor challenge and response
- Signup: pending verification vs. immediate activation, disabled registration
- Email / phone verification activating the account
- Refresh token rotation and logout revocation
- /me and /two-factor

The TestClient keeps cookies from login responses, and the cookie takes
priority over a Bearer header. Tests that switch identity clear the jar first.
"""

import pytest

from auth import sessions
from auth.verification import TWO_FACTOR, issue_code
from conftest import DEFAULT_PASSWORD, AppContext


def _login(ctx: AppContext, **body):
    return ctx.client.post("/api/auth/login", json=body)


def _error_code(resp) -> str:
    return resp.json()["error"]["code"]


class TestLogin:
    def test_password_login_by_email(self, app_ctx: AppContext) -> None:
        user = app_ctx.make_user("MANAGER", email="mgr@example.com")
        resp = _login(app_ctx, email="MGR@example.com", password=DEFAULT_PASSWORD)
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        body = resp.json()
        assert body["success"] is True
        data = body["data"]
        assert data["user"]["id"] == user.id
        assert "hashed_password" not in data["user"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 60 * 60
        assert data["access_token"] and data["refresh_token"]
        assert resp.headers["cache-control"] == "no-store"
        assert "access_token" in resp.cookies
        assert "refresh_token" in resp.cookies
        assert app_ctx.user_store.get_by_id(user.id).last_login is not None

    def test_password_login_by_phone(self, app_ctx: AppContext) -> None:
        app_ctx.make_user(phone="+15550123")
        resp = _login(app_ctx, phone="+15550123", password=DEFAULT_PASSWORD)
        assert resp.status_code == 200, resp.text

    def test_otp_login(self, app_ctx: AppContext) -> None:
        app_ctx.make_user(email="otp@example.com")
        sent = app_ctx.client.post("/api/auth/send-otp", json={"email": "otp@example.com"})
        assert sent.status_code == 200, sent.text
        otp = sent.json()["data"]["otp"]
        resp = _login(app_ctx, email="otp@example.com", otp=otp)
        assert resp.status_code == 200, resp.text
        replay = _login(app_ctx, email="otp@example.com", otp=otp)
        assert replay.status_code == 401
        assert _error_code(replay) == "invalid_credentials"

    def test_otp_only_signs_in_the_owner_of_the_code(self, app_ctx: AppContext) -> None:
        owner = app_ctx.make_user(email="mallory@example.com")
        admin = app_ctx.make_user("SUPER_ADMIN", email="boss@example.com", phone="+15550001")
        otp = app_ctx.client.post("/api/auth/send-otp", json={"email": "mallory@example.com"}).json()["data"]["otp"]
        resp = _login(app_ctx, email="mallory@example.com", phone="+15550001", otp=otp)
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["user"]["id"] == owner.id != admin.id

    def test_otp_for_one_identifier_rejected_for_another(self, app_ctx: AppContext) -> None:
        app_ctx.make_user(email="mallory@example.com")
        app_ctx.make_user("SUPER_ADMIN", phone="+15550001")
        otp = app_ctx.client.post("/api/auth/send-otp", json={"email": "mallory@example.com"}).json()["data"]["otp"]
        resp = _login(app_ctx, phone="+15550001", otp=otp)
        assert resp.status_code == 401
        assert _error_code(resp) == "invalid_credentials"

    def test_provider_points_to_oauth_flow(self, app_ctx: AppContext) -> None:
        resp = _login(app_ctx, email="a@example.com", provider="google")
        assert resp.status_code == 400
        assert _error_code(resp) == "use_oauth_flow"

    def test_missing_identifier(self, app_ctx: AppContext) -> None:
        resp = _login(app_ctx, password="whatever")
        assert resp.status_code == 400
        assert _error_code(resp) == "missing_identifier"

    def test_missing_credentials(self, app_ctx: AppContext) -> None:
        resp = _login(app_ctx, email="a@example.com")
        assert resp.status_code == 400
        assert _error_code(resp) == "missing_credentials"

    def test_wrong_password_and_unknown_user_look_the_same(self, app_ctx: AppContext) -> None:
        app_ctx.make_user(email="real@example.com")
        wrong = _login(app_ctx, email="real@example.com", password="nope-nope")
        unknown = _login(app_ctx, email="ghost@example.com", password="nope-nope")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert _error_code(wrong) == "invalid_credentials"

    def test_failed_login_is_audited(self, app_ctx: AppContext) -> None:
        _login(app_ctx, email="ghost@example.com", password="nope-nope")
        logs, total = app_ctx.audit_store.list_logs(action="LOGIN_FAILED")
        assert total == 1
        assert logs[0].user_id is None
        assert logs[0].details["identifier"] == "ghost@example.com"

    def test_inactive_account(self, app_ctx: AppContext) -> None:
        app_ctx.make_user(email="off@example.com", status="INACTIVE")
        resp = _login(app_ctx, email="off@example.com", password=DEFAULT_PASSWORD)
        assert resp.status_code == 401
        assert _error_code(resp) == "account_inactive"

    def test_malformed_email_is_validation_error(self, app_ctx: AppContext) -> None:
        resp = _login(app_ctx, email="not-an-email", password="x")
        assert resp.status_code == 422
        assert _error_code(resp) == "validation_error"


class TestLockout:
    def test_account_suspended_after_max_attempts(self, app_ctx: AppContext) -> None:
        app_ctx.user_store.update_app_settings(max_login_attempts=3)
        user = app_ctx.make_user(email="target@example.com")
        for _ in range(3):
            resp = _login(app_ctx, email="target@example.com", password="wrong-password")
            assert resp.status_code == 401
        assert app_ctx.user_store.get_by_id(user.id).status == "SUSPENDED"
        _, locked = app_ctx.audit_store.list_logs(action="ACCOUNT_LOCKED")
        assert locked == 1

        resp = _login(app_ctx, email="target@example.com", password=DEFAULT_PASSWORD)
        assert resp.status_code == 401
        assert _error_code(resp) == "account_inactive"

    def test_success_resets_counter(self, app_ctx: AppContext) -> None:
        app_ctx.user_store.update_app_settings(max_login_attempts=3)
        user = app_ctx.make_user(email="target@example.com")
        for _ in range(2):
            _login(app_ctx, email="target@example.com", password="wrong-password")
        assert _login(app_ctx, email="target@example.com", password=DEFAULT_PASSWORD).status_code == 200
        for _ in range(2):
            _login(app_ctx, email="target@example.com", password="wrong-password")
        assert app_ctx.user_store.get_by_id(user.id).status == "ACTIVE"


class TestTwoFactor:
    def test_challenge_then_code(self, app_ctx: AppContext) -> None:
        user = app_ctx.make_user(email="2fa@example.com", two_factor_enabled=True)
        first = _login(app_ctx, email="2fa@example.com", password=DEFAULT_PASSWORD)
        assert first.status_code == 401
        assert _error_code(first) == "two_factor_required"

        bad = _login(app_ctx, email="2fa@example.com", password=DEFAULT_PASSWORD, two_factor_token="000000")
        code = issue_code(app_ctx.user_store, user.identifier, TWO_FACTOR)
        if code != "000000":
            assert bad.status_code == 401
            assert _error_code(bad) == "invalid_two_factor_token"

        ok = _login(app_ctx, email="2fa@example.com", password=DEFAULT_PASSWORD, two_factor_token=code)
        assert ok.status_code == 200, ok.text

    def test_wrong_codes_count_toward_lockout(self, app_ctx: AppContext) -> None:
        app_ctx.user_store.update_app_settings(max_login_attempts=3)
        user = app_ctx.make_user(email="2fa@example.com", two_factor_enabled=True)
        _login(app_ctx, email="2fa@example.com", password=DEFAULT_PASSWORD)
        code = issue_code(app_ctx.user_store, user.identifier, TWO_FACTOR)
        wrong = "111111" if code != "111111" else "222222"
        for _ in range(3):
            resp = _login(app_ctx, email="2fa@example.com", password=DEFAULT_PASSWORD, two_factor_token=wrong)
            assert resp.status_code == 401
        assert app_ctx.user_store.get_by_id(user.id).status == "SUSPENDED"
        _, locked = app_ctx.audit_store.list_logs(action="ACCOUNT_LOCKED")
        assert locked == 1

        resp = _login(app_ctx, email="2fa@example.com", password=DEFAULT_PASSWORD, two_factor_token=code)
        assert _error_code(resp) == "account_inactive"

    def test_toggle_via_api(self, app_ctx: AppContext) -> None:
        user = app_ctx.make_user()
        resp = app_ctx.client.post("/api/auth/two-factor", json={"enabled": True}, headers=app_ctx.headers(user))
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["user"]["two_factor_enabled"] is True
        _, total = app_ctx.audit_store.list_logs(action="ENABLE_2FA")
        assert total == 1


class TestSignup:
    def test_email_signup_pending_verification(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.post(
            "/api/auth/signup",
            json={"email": "New@Example.com", "password": "longenough", "first_name": "Nia", "last_name": "Obi"},
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()["data"]
        assert data["user"]["email"] == "new@example.com"
        assert data["user"]["status"] == "PENDING_VERIFICATION"
        assert data["user"]["role"] == "USER"
        assert data["verification_required"] == ["email_verification"]
        assert "access_token" not in data

        token = data["verification_codes"]["email_verification"]
        verified = app_ctx.client.post("/api/auth/verify-email", json={"token": token})
        assert verified.status_code == 200, verified.text
        assert verified.json()["data"]["user"]["status"] == "ACTIVE"

        again = app_ctx.client.post("/api/auth/verify-email", json={"token": token})
        assert again.status_code == 400
        assert _error_code(again) == "invalid_token"

    @pytest.mark.parametrize("email", ["someone@@example.com", "no-at-sign.example.com", "trailing@dot."])
    def test_signup_rejects_malformed_email(self, app_ctx: AppContext, email: str) -> None:
        resp = app_ctx.client.post("/api/auth/signup", json={"email": email, "password": "longenough"})
        assert resp.status_code == 422
        assert _error_code(resp) == "validation_error"
        assert app_ctx.user_store.get_by_email(email) is None

    def test_signup_active_when_verification_off(self, app_ctx: AppContext) -> None:
        app_ctx.user_store.update_app_settings(require_email_verification=False)
        resp = app_ctx.client.post("/api/auth/signup", json={"email": "now@example.com", "password": "longenough"})
        assert resp.status_code == 201, resp.text
        data = resp.json()["data"]
        assert data["user"]["status"] == "ACTIVE"
        assert data["access_token"]
        assert data["verification_required"] == []

    def test_phone_signup_and_verify(self, app_ctx: AppContext) -> None:
        app_ctx.user_store.update_app_settings(require_phone_verification=True)
        resp = app_ctx.client.post("/api/auth/signup", json={"phone": "+15550199", "password": "longenough"})
        assert resp.status_code == 201, resp.text
        code = resp.json()["data"]["verification_codes"]["phone_verification"]

        wrong_phone = app_ctx.client.post("/api/auth/verify-phone", json={"token": code, "phone": "+15550000"})
        assert wrong_phone.status_code == 400

        ok = app_ctx.client.post("/api/auth/verify-phone", json={"token": code, "phone": "+15550199"})
        assert ok.status_code == 200, ok.text
        user = ok.json()["data"]["user"]
        assert user["status"] == "ACTIVE"
        assert user["phone_verified_at"] is not None

    def test_duplicate_rejected(self, app_ctx: AppContext) -> None:
        app_ctx.make_user(email="taken@example.com")
        resp = app_ctx.client.post("/api/auth/signup", json={"email": "TAKEN@example.com", "password": "longenough"})
        assert resp.status_code == 409
        assert _error_code(resp) == "user_exists"

    def test_registration_disabled(self, app_ctx: AppContext) -> None:
        app_ctx.user_store.update_app_settings(allow_registration=False)
        resp = app_ctx.client.post("/api/auth/signup", json={"email": "x@example.com", "password": "longenough"})
        assert resp.status_code == 403
        assert _error_code(resp) == "registration_disabled"

    def test_short_password_is_validation_error(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.post("/api/auth/signup", json={"email": "x@example.com", "password": "short"})
        assert resp.status_code == 422


class TestSendOtp:
    def test_unknown_user(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.post("/api/auth/send-otp", json={"email": "ghost@example.com"})
        assert resp.status_code == 404
        assert _error_code(resp) == "user_not_found"

    def test_code_returned_in_debug(self, app_ctx: AppContext) -> None:
        app_ctx.make_user(phone="+15550777")
        resp = app_ctx.client.post("/api/auth/send-otp", json={"phone": "+15550777"})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["identifier"] == "+15550777"
        assert len(data["otp"]) == 6


class TestRefreshAndLogout:
    def test_rotation_invalidates_old_token(self, app_ctx: AppContext, monkeypatch) -> None:
        monkeypatch.setattr(sessions, "ROTATION_GRACE_SECONDS", 0)
        app_ctx.make_user(email="r@example.com")
        login = _login(app_ctx, email="r@example.com", password=DEFAULT_PASSWORD)
        refresh_token = login.json()["data"]["refresh_token"]
        app_ctx.client.cookies.clear()

        first = app_ctx.client.post("/api/auth/refresh", json={"refresh_token": refresh_token})
        assert first.status_code == 200, first.text
        assert first.json()["data"]["refresh_token"] != refresh_token
        app_ctx.client.cookies.clear()

        replay = app_ctx.client.post("/api/auth/refresh", json={"refresh_token": refresh_token})
        assert replay.status_code == 401
        assert _error_code(replay) == "invalid_refresh_token"

    def test_parallel_refresh_gets_same_pair(self, app_ctx: AppContext) -> None:
        app_ctx.make_user(email="tabs@example.com")
        refresh_token = _login(app_ctx, email="tabs@example.com", password=DEFAULT_PASSWORD).json()["data"][
            "refresh_token"
        ]
        app_ctx.client.cookies.clear()

        first = app_ctx.client.post("/api/auth/refresh", json={"refresh_token": refresh_token})
        app_ctx.client.cookies.clear()
        second = app_ctx.client.post("/api/auth/refresh", json={"refresh_token": refresh_token})
        assert first.status_code == second.status_code == 200
        assert second.json()["data"]["refresh_token"] == first.json()["data"]["refresh_token"]

    def test_refresh_from_cookie(self, app_ctx: AppContext) -> None:
        app_ctx.make_user(email="r@example.com")
        _login(app_ctx, email="r@example.com", password=DEFAULT_PASSWORD)
        resp = app_ctx.client.post("/api/auth/refresh")
        assert resp.status_code == 200, resp.text

    def test_missing_token(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.post("/api/auth/refresh")
        assert resp.status_code == 401

    def test_logout_revokes_refresh_token(self, app_ctx: AppContext) -> None:
        app_ctx.make_user(email="bye@example.com")
        refresh_token = _login(app_ctx, email="bye@example.com", password=DEFAULT_PASSWORD).json()["data"][
            "refresh_token"
        ]
        resp = app_ctx.client.post("/api/auth/logout")
        assert resp.status_code == 200
        assert "access_token" not in app_ctx.client.cookies
        _, total = app_ctx.audit_store.list_logs(action="LOGOUT")
        assert total == 1

        replay = app_ctx.client.post("/api/auth/refresh", json={"refresh_token": refresh_token})
        assert replay.status_code == 401


class TestMe:
    def test_requires_auth(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.get("/api/auth/me")
        assert resp.status_code == 401
        assert _error_code(resp) == "unauthorized"

    def test_returns_permissions(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.get("/api/auth/me", headers=app_ctx.as_role("MANAGER"))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["user"]["role"] == "MANAGER"
        assert data["permissions"]["can_view_analytics"] is True
        assert data["permissions"]["can_manage_users"] is False

    def test_token_of_suspended_user_rejected(self, app_ctx: AppContext) -> None:
        user = app_ctx.make_user()
        headers = app_ctx.headers(user)
        app_ctx.user_store.update_user(user.id, status="SUSPENDED")
        assert app_ctx.client.get("/api/auth/me", headers=headers).status_code == 401

    def test_providers_public(self, app_ctx: AppContext) -> None:
        resp = app_ctx.client.get("/api/auth/providers")
        assert resp.status_code == 200
        assert isinstance(resp.json()["data"], list)
