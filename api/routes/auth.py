"""
api/routes/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/auth/login          -- email|phone + password|otp (+2FA); sets cookies
  POST /api/auth/signup         -- self-registration
  POST /api/auth/refresh        -- rotate refresh token; re-sets cookies
  POST /api/auth/send-otp       -- issue a login OTP
  POST /api/auth/verify-email   -- consume an email verification token
  POST /api/auth/verify-phone   -- consume a phone verification code
  POST /api/auth/logout         -- revoke refresh token; clear cookies
  GET  /api/auth/me             -- current user + permissions (requires auth)
  POST /api/auth/two-factor     -- enable/disable 2FA (requires auth)
  GET  /api/auth/providers      -- enabled OAuth providers (public)

Security:
  [H2] login, signup and send-otp are rate-limited per IP (Settings).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Consecutive failed logins reaching max_login_attempts suspend the account.
  Codes are only echoed in response bodies when DEBUG is on.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    LoginRequest,
    OAuthProviderInfo,
    RefreshRequest,
    SendOtpRequest,
    SignupRequest,
    TwoFactorRequest,
    UserOut,
    VerifyEmailRequest,
    VerifyPhoneRequest,
    success_envelope,
)
from audit.events import log_audit_event
from auth.dependencies import get_current_user, try_get_current_user
from auth.models import User
from auth.oauth import get_enabled_providers
from auth.permissions import get_user_permissions
from auth.sessions import (
    InactiveAccountError,
    SessionTokens,
    issue_session,
    register_failed_login,
    revoke_refresh_token,
    rotate_refresh_token,
)
from auth.store import UserStore
from auth.tokens import (
    REFRESH_COOKIE,
    access_token_lifetime,
    authenticate_user,
    clear_auth_cookies,
    hash_password,
    set_auth_cookies,
)
from auth.verification import (
    EMAIL_VERIFICATION,
    LOGIN_OTP,
    PHONE_VERIFICATION,
    TWO_FACTOR,
    consume_code,
    deliver_code,
    issue_code,
    mark_verified,
    pending_verifications,
    send_verification_codes,
)
from core.config import get_settings

_cfg = get_settings()

# Auth policy:
# - login, signup, refresh, send-otp, verify-*, logout, providers: public
# - me, two-factor: requires auth (get_current_user)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fail(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _session_response(
    user: User,
    tokens: SessionTokens,
    message: str,
    status_code: int = 200,
    extra: Optional[dict] = None,
) -> JSONResponse:
    """Build the JSON body carrying a fresh token pair and set the auth cookies."""
    data = {
        "user": UserOut.from_user(user),
        "access_token": tokens.access_token,
        "refresh_token": tokens.refresh_token,
        "token_type": "bearer",  # noqa: S105 -- OAuth token type, not a password
        "expires_in": tokens.access_expires_in,
    }
    if extra:
        data.update(extra)
    resp = JSONResponse(status_code=status_code, content=success_envelope(data, message=message))
    set_auth_cookies(resp, tokens.access_token, tokens.refresh_token, user.id, tokens.access_expires_in)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _normalize_email(email: Optional[str]) -> Optional[str]:
    return email.lower() if email else None


def _count_failure(request: Request, store: UserStore, user: User, max_attempts: int) -> bool:
    """Register one failed sign-in for user and audit a resulting lockout. Returns locked."""
    attempts, locked = register_failed_login(store, user, max_attempts)
    if locked:
        log_audit_event(
            request.app.state.audit_store,
            user.id,
            "ACCOUNT_LOCKED",
            "Auth",
            user.id,
            {"failed_attempts": attempts},
            request,
        )
    return locked


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@limiter.limit(_cfg.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with (email or phone) and (password or OTP).

    Failure codes:
      400 use_oauth_flow        -- a provider was named; OAuth runs through /login/oauth/{provider}
      400 missing_identifier    -- neither email nor phone
      400 missing_credentials   -- neither password nor otp
      401 invalid_credentials   -- unknown user or wrong secret (same message for both)
      401 account_inactive      -- credentials fine, status is not ACTIVE
      401 two_factor_required   -- 2FA is on and no two_factor_token was sent; a code was issued
      401 invalid_two_factor_token
    """
    store: UserStore = request.app.state.user_store
    audit_store = request.app.state.audit_store

    if body.provider:
        raise _fail(400, "use_oauth_flow", f"Sign in with {body.provider} through the OAuth redirect flow.")
    email = _normalize_email(body.email)
    if not email and not body.phone:
        raise _fail(400, "missing_identifier", "Email or phone is required.")
    if not body.password and not body.otp:
        raise _fail(400, "missing_credentials", "Password or one-time code is required.")

    app_settings = store.get_app_settings()
    identifier = email or body.phone

    if body.password:
        user = authenticate_user(store, body.password, email=email, phone=body.phone)  # [C1]
        target = None if user else store.find_by_email_or_phone(email, body.phone)
    else:
        # Only the owner of the identifier the code was issued for may use it.
        target = store.get_by_email(email) if email else store.get_by_phone(body.phone)
        user = target
        if user is not None and consume_code(store, body.otp, LOGIN_OTP, identifier) is None:
            user = None

    if user is None:
        if target is not None:
            _count_failure(request, store, target, app_settings["max_login_attempts"])
        log_audit_event(
            audit_store,
            target.id if target else None,
            "LOGIN_FAILED",
            "Auth",
            None,
            {"identifier": identifier, "reason": "invalid_credentials"},
            request,
        )
        raise _fail(401, "invalid_credentials", "Invalid credentials.")

    if user.status != "ACTIVE":
        log_audit_event(
            audit_store,
            user.id,
            "LOGIN_FAILED",
            "Auth",
            user.id,
            {"identifier": identifier, "reason": "account_inactive", "status": user.status},
            request,
        )
        raise _fail(401, "account_inactive", f"Account is not active (status: {user.status}).")

    if user.two_factor_enabled:
        if not body.two_factor_token:
            code = issue_code(store, user.identifier, TWO_FACTOR)
            deliver_code(user.identifier, code, TWO_FACTOR)
            raise _fail(401, "two_factor_required", "A verification code was sent. Submit it as two_factor_token.")
        if consume_code(store, body.two_factor_token, TWO_FACTOR, user.identifier) is None:
            _count_failure(request, store, user, app_settings["max_login_attempts"])
            log_audit_event(
                audit_store,
                user.id,
                "LOGIN_FAILED",
                "Auth",
                user.id,
                {"identifier": identifier, "reason": "invalid_two_factor_token"},
                request,
            )
            raise _fail(401, "invalid_two_factor_token", "Invalid or expired two-factor code.")

    store.record_login(user.id)
    user = store.get_by_id(user.id) or user
    tokens = issue_session(store, user, access_token_lifetime(app_settings["session_timeout"]))
    log_audit_event(
        audit_store,
        user.id,
        "LOGIN",
        "Auth",
        user.id,
        {"method": "password" if body.password else "otp"},
        request,
    )
    return _session_response(user, tokens, "Login successful")


# ---------------------------------------------------------------------------
# Signup
# ---------------------------------------------------------------------------


@limiter.limit(_cfg.signup_rate_limit)  # [H2]
@router.post("/auth/signup", status_code=201)
def signup(request: Request, body: SignupRequest) -> JSONResponse:
    """Register a new USER account.

    When the site settings require verification of a supplied identifier, the
    account starts as PENDING_VERIFICATION, codes are sent and no tokens are
    issued. Otherwise the account is ACTIVE and signed in immediately.
    """
    store: UserStore = request.app.state.user_store
    email = _normalize_email(body.email)
    if not email and not body.phone:
        raise _fail(400, "missing_identifier", "Email or phone is required.")

    app_settings = store.get_app_settings()
    if not app_settings["allow_registration"]:
        raise _fail(403, "registration_disabled", "Registration is currently disabled.")
    if store.find_by_email_or_phone(email, body.phone) is not None:
        raise _fail(409, "user_exists", "A user with this email or phone already exists.")

    draft = User(
        email=email,
        phone=body.phone,
        hashed_password=hash_password(body.password) if body.password else None,
        first_name=body.first_name,
        last_name=body.last_name,
        role="USER",
    )
    draft.status = "PENDING_VERIFICATION" if pending_verifications(draft, app_settings) else "ACTIVE"
    try:
        user_id = store.create_user(draft)
    except IntegrityError as exc:
        raise _fail(409, "user_exists", "A user with this email or phone already exists.") from exc
    user = store.get_by_id(user_id)

    codes = send_verification_codes(store, user, app_settings)
    log_audit_event(
        request.app.state.audit_store,
        user.id,
        "SIGNUP",
        "User",
        user.id,
        {"email": user.email, "phone": user.phone, "status": user.status},
        request,
    )

    extra: dict = {"verification_required": sorted(codes)}
    if _cfg.debug and codes:
        extra["verification_codes"] = codes

    if user.status != "ACTIVE":
        data = {"user": UserOut.from_user(user), **extra}
        return JSONResponse(
            status_code=201,
            content=success_envelope(data, message="Account created. Please verify your account."),
        )

    tokens = issue_session(store, user, access_token_lifetime(app_settings["session_timeout"]))
    return _session_response(user, tokens, "Account created successfully", status_code=201, extra=extra)


# ---------------------------------------------------------------------------
# Refresh / logout
# ---------------------------------------------------------------------------


@router.post("/auth/refresh")
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token (body, else cookie) for a new token pair.

    The presented token is invalidated. Within the rotation grace window a
    replay returns the same new pair; after it, a replay returns 401.
    """
    store: UserStore = request.app.state.user_store
    raw = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not raw:
        raise _fail(401, "invalid_refresh_token", "Refresh token is required.")

    access_seconds = access_token_lifetime(store.get_app_settings()["session_timeout"])
    try:
        result = rotate_refresh_token(store, raw, access_seconds)
    except InactiveAccountError as exc:
        raise _fail(401, "account_inactive", "Account is not active.") from exc
    if result is None:
        raise _fail(401, "invalid_refresh_token", "Invalid or expired refresh token.")

    user, tokens = result
    return _session_response(user, tokens, "Token refreshed")


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Revoke the refresh token and clear all auth cookies. Always succeeds."""
    store: UserStore = request.app.state.user_store
    user = try_get_current_user(request)
    revoke_refresh_token(store, request.cookies.get(REFRESH_COOKIE))
    if user is not None:
        log_audit_event(request.app.state.audit_store, user.id, "LOGOUT", "Auth", user.id, None, request)
    resp = JSONResponse(content=success_envelope(None, message="Logged out successfully"))
    clear_auth_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# OTP and verification
# ---------------------------------------------------------------------------


@limiter.limit(_cfg.otp_rate_limit)  # [H2]
@router.post("/auth/send-otp")
def send_otp(request: Request, body: SendOtpRequest) -> dict:
    """Issue a 6-digit login code to an existing user's email or phone."""
    store: UserStore = request.app.state.user_store
    email = _normalize_email(body.email)
    if not email and not body.phone:
        raise _fail(400, "missing_identifier", "Email or phone is required.")

    user = store.find_by_email_or_phone(email, body.phone)
    if user is None:
        raise _fail(404, "user_not_found", "No user found with this email or phone.")

    identifier = email or body.phone
    code = issue_code(store, identifier, LOGIN_OTP)
    deliver_code(identifier, code, LOGIN_OTP)
    log_audit_event(
        request.app.state.audit_store,
        user.id,
        "SEND_OTP",
        "Auth",
        user.id,
        {"identifier": identifier},
        request,
    )

    data: dict = {"identifier": identifier, "expires_in": _cfg.otp_expire_minutes * 60}
    if _cfg.debug:
        data["otp"] = code
    return success_envelope(data, message="OTP sent successfully")


@router.post("/auth/verify-email")
def verify_email(request: Request, body: VerifyEmailRequest) -> dict:
    store: UserStore = request.app.state.user_store
    token = consume_code(store, body.token, EMAIL_VERIFICATION)
    if token is None:
        raise _fail(400, "invalid_token", "Invalid or expired verification token.")
    user = store.get_by_email(token.identifier)
    if user is None:
        raise _fail(404, "user_not_found", "User not found.")

    user = mark_verified(store, user, EMAIL_VERIFICATION, store.get_app_settings())
    log_audit_event(request.app.state.audit_store, user.id, "VERIFY_EMAIL", "User", user.id, None, request)
    return success_envelope({"user": UserOut.from_user(user)}, message="Email verified successfully")


@router.post("/auth/verify-phone")
def verify_phone(request: Request, body: VerifyPhoneRequest) -> dict:
    store: UserStore = request.app.state.user_store
    token = consume_code(store, body.token, PHONE_VERIFICATION, body.phone)
    if token is None:
        raise _fail(400, "invalid_token", "Invalid or expired verification code.")
    user = store.get_by_phone(token.identifier)
    if user is None:
        raise _fail(404, "user_not_found", "User not found.")

    user = mark_verified(store, user, PHONE_VERIFICATION, store.get_app_settings())
    log_audit_event(request.app.state.audit_store, user.id, "VERIFY_PHONE", "User", user.id, None, request)
    return success_envelope({"user": UserOut.from_user(user)}, message="Phone verified successfully")


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------


@router.get("/auth/me")
def me(current_user: User = Depends(get_current_user)) -> dict:
    """Return the authenticated user and the permission flags of their role."""
    return success_envelope(
        {
            "user": UserOut.from_user(current_user),
            "permissions": get_user_permissions(current_user.role).as_dict(),
        }
    )


@router.post("/auth/two-factor")
def set_two_factor(
    request: Request,
    body: TwoFactorRequest,
    current_user: User = Depends(get_current_user),
) -> dict:
    """Turn the login second factor on or off for the current user."""
    store: UserStore = request.app.state.user_store
    store.update_user(current_user.id, two_factor_enabled=body.enabled)
    log_audit_event(
        request.app.state.audit_store,
        current_user.id,
        "ENABLE_2FA" if body.enabled else "DISABLE_2FA",
        "User",
        current_user.id,
        None,
        request,
    )
    user = store.get_by_id(current_user.id)
    state = "enabled" if body.enabled else "disabled"
    return success_envelope({"user": UserOut.from_user(user)}, message=f"Two-factor authentication {state}")


@router.get("/auth/providers")
def list_providers() -> dict:
    """Return the configured OAuth providers (empty list when none are set up)."""
    return success_envelope([OAuthProviderInfo(**p) for p in get_enabled_providers()])
