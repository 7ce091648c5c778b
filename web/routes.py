"""
web/routes.py -- Jinja2 template routes for the back-office web UI.

These routes serve server-rendered HTML. They share app.state with the API
routes (same user, audit and commerce stores) but return HTML instead of JSON.

Route registration order matters. FastAPI resolves same-level paths in order:
  - GET /users/new and GET /products/new must be registered before
    GET /users/{user_id} and GET /products/{product_id}.
  - GET /login/oauth/{provider} and /login/callback/{provider} must be
    registered before GET /login.

Routes:
  GET  /                                  -- dashboard: stat cards + charts (auth required)
  GET  /login/oauth/{provider}            -- OAuth redirect to provider
  GET  /login/callback/{provider}         -- OAuth callback (POST too: Apple form_post)
  POST /login/otp                         -- send a one-time login code
  POST /login/two-factor                  -- complete a 2FA login
  GET  /login                             -- login form (password or OTP)
  POST /login                             -- handle login
  GET  /signup, POST /signup              -- self-registration
  GET  /verify, POST /verify              -- email token / phone code verification
  POST /logout                            -- revoke session, clear cookies
  GET  /setup, POST /setup                -- first-run wizard (first SUPER_ADMIN)
  GET  /users, GET /users/new, POST /users, GET/POST /users/{id}
  GET  /products, GET /products/new, POST /products, GET/POST /products/{id},
       POST /products/{id}/delete, GET /products/{id}/history
  GET  /orders, GET /orders/{id}, POST /orders/{id}/status
  GET  /analytics                         -- charts and monthly figures (analytics)
  GET  /reports, GET /reports/{slug}.csv  -- quick CSV reports (analytics)
  GET  /audit-logs                        -- filterable audit trail (admins)
  GET  /settings, POST /settings          -- site settings (admins)

Access control for every protected page goes through _require_auth():
unauthenticated -> 302 /login?next=<path>; check_route_access() or
can_access_resource() denial -> 403 page; maintenance mode -> 503 page for
non-admins.
"""

import logging
import re
from dataclasses import asdict
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from pydantic import EmailStr, TypeAdapter, ValidationError
from sqlalchemy.exc import IntegrityError

from audit.events import diff_changes, log_audit_event
from audit.models import AuditLog
from audit.store import AuditStore, parse_bound
from auth.dependencies import try_get_current_user
from auth.models import User
from auth.oauth import OAuthLoginError, get_enabled_providers, get_oauth_user_info, resolve_oauth_user
from auth.permissions import ROLES, can_access_resource, check_route_access, get_user_permissions
from auth.sessions import issue_session, register_failed_login, revoke_refresh_token
from auth.store import ADMIN_ROLES, UserStore, now_iso
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
from commerce.analytics import PERIODS, build_dashboard
from commerce.models import ORDER_STATUSES, Product
from commerce.store import CommerceStore
from core.config import get_settings
from web.charts import dashboard_charts, month_label
from web.reports import REPORTS

logger = logging.getLogger("backoffice.web")

_cfg = get_settings()

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
# layout.html builds the navigation from the current user's role without
# every handler passing it in.
templates.env.globals["try_get_current_user"] = try_get_current_user
templates.env.globals["get_user_permissions"] = get_user_permissions
templates.env.globals["check_route_access"] = check_route_access
router = APIRouter()

# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

# Whitelist mapping for ?error= query params on /login [M3].
# The raw query param is NEVER passed to templates -- only the message from
# this dict is. Prevents reflected XSS via crafted error query strings.
_ERROR_MESSAGES: dict[str, str] = {
    "bad_credentials": "Invalid email, phone or password.",
    "account_inactive": "Your account is not active. Verify it or contact an admin.",
    "account_locked": "Too many failed attempts. Your account has been suspended.",
    "not_provisioned": "Your account has not been provisioned. Contact an admin.",
    "account_disabled": "Your account has been disabled. Contact an admin.",
    "oauth_failed": "OAuth authentication failed. Please try again.",
    "setup_complete": "Setup already complete. Please log in.",
    "two_factor_expired": "Your sign-in attempt expired. Please start again.",
}

# Same whitelist approach for ?notice= (informational banners).
_NOTICES: dict[str, str] = {
    "logged_out": "You have been signed out.",
    "verified": "Your account is verified. You can sign in now.",
    "setup_done": "Administrator account created. Please sign in.",
    "signed_up": "Account created. Check your email or phone for a verification code.",
}

_EMAIL = TypeAdapter(EmailStr)
_PHONE_RE = re.compile(r"^\+?[0-9 ()\-]{7,20}$")

_PAGE_SIZE = 20
_USER_STATUSES = ("ACTIVE", "INACTIVE", "SUSPENDED", "PENDING_VERIFICATION")


def _is_email(value: str) -> bool:
    try:
        _EMAIL.validate_python(value)
    except ValidationError:
        return False
    return True


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths. [C2]

    Prevents open redirect attacks where an attacker crafts a URL like:
      /login?next=https://attacker.com  or  /login?next=//attacker.com
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return "/"


def _render(request: Request, name: str, context: Optional[dict] = None, status_code: int = 200) -> HTMLResponse:
    ctx = {"current_user": getattr(request.state, "user", None)}
    ctx.update(context or {})
    return templates.TemplateResponse(request, name, ctx, status_code=status_code)


def _error_page(request: Request, status_code: int, title: str, message: str) -> HTMLResponse:
    return _render(request, "error.html", {"title": title, "message": message}, status_code=status_code)


def _forbidden(request: Request) -> HTMLResponse:
    return _error_page(request, 403, "Access denied", "Your role does not allow access to this page.")


def _require_auth(request: Request, resource: Optional[str] = None, action: str = "read") -> Optional[Response]:
    """Check the current request is authenticated and allowed on this page.

    Returns a response to send instead of the page (redirect to /login, 403 or
    503), or None if OK. On success the user is available as request.state.user.
    Call at the top of protected route handlers:
        if denied := _require_auth(request, "products", "write"):
            return denied
    """
    user = try_get_current_user(request)
    if user is None:
        return RedirectResponse(f"/login?next={quote(request.url.path)}", status_code=302)
    request.state.user = user

    if user.role not in ADMIN_ROLES and request.app.state.user_store.get_app_settings()["maintenance_mode"]:
        return _error_page(request, 503, "Maintenance", "The site is under maintenance. Try again later.")
    if not check_route_access(user.role, request.url.path):
        return _forbidden(request)
    if resource and not can_access_resource(user.role, resource, action):
        return _forbidden(request)
    return None


def _can(request: Request, resource: str, action: str) -> bool:
    user = getattr(request.state, "user", None)
    return user is not None and can_access_resource(user.role, resource, action)


def _audit(request: Request, action: str, resource: str, resource_id=None, details: Optional[dict] = None) -> None:
    user = getattr(request.state, "user", None)
    log_audit_event(
        request.app.state.audit_store,
        user.id if user else None,
        action,
        resource,
        resource_id,
        details,
        request,
    )


def _split_identifier(identifier: str) -> tuple[Optional[str], Optional[str]]:
    """A login identifier is an email when it contains "@", otherwise a phone number."""
    value = identifier.strip()
    if not value:
        return None, None
    if "@" in value:
        return value.lower(), None
    return None, value


def _count_failure(request: Request, user: User, max_attempts: int) -> bool:
    """Register one failed sign-in for user and audit a resulting lockout. Returns locked."""
    attempts, locked = register_failed_login(request.app.state.user_store, user, max_attempts)
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


def _signed_in_redirect(request: Request, user: User, next_url: Optional[str], method: str) -> RedirectResponse:
    """Finish a successful sign-in: reset counters, audit, issue a session and redirect."""
    store: UserStore = request.app.state.user_store
    store.record_login(user.id)
    request.state.user = user
    _audit(request, "LOGIN", "Auth", user.id, {"method": method})
    tokens = issue_session(store, user, access_token_lifetime(store.get_app_settings()["session_timeout"]))
    resp = RedirectResponse(_safe_next(next_url), status_code=303)
    set_auth_cookies(resp, tokens.access_token, tokens.refresh_token, user.id, tokens.access_expires_in)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _pagination(page: int, total: int, limit: int = _PAGE_SIZE) -> dict:
    total_pages = max(1, (total + limit - 1) // limit)
    return {
        "page": page,
        "total": total,
        "total_pages": total_pages,
        "has_prev": page > 1,
        "has_next": page < total_pages,
    }


def _with_users(user_store: UserStore, logs: list[AuditLog]) -> list[dict]:
    users = user_store.get_many({log.user_id for log in logs if log.user_id is not None})
    return [{"log": log, "user": users.get(log.user_id)} for log in logs]


# ---------------------------------------------------------------------------
# GET / -- dashboard
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def dashboard(request: Request, months: int = 6) -> Response:
    if denied := _require_auth(request):
        return denied
    user: User = request.state.user
    if months not in PERIODS:
        months = 6

    context: dict = {
        "months": months,
        "periods": PERIODS,
        "show_analytics": can_access_resource(user.role, "analytics", "read"),
        "permissions": get_user_permissions(user.role),
    }
    if context["show_analytics"]:
        user_store: UserStore = request.app.state.user_store
        commerce: CommerceStore = request.app.state.commerce
        data = build_dashboard(commerce, user_store.signups_by_month(), user_store.count_users(), months=months)
        context.update(
            stats=data["stats"],
            charts=dashboard_charts(data),
            top_products=data["top_products"],
            low_stock=commerce.low_stock(),
        )
        if can_access_resource(user.role, "admin", "read"):
            context["recent_activity"] = _with_users(user_store, request.app.state.audit_store.recent(8))
        _audit(request, "READ_DASHBOARD", "Dashboard", None, {"months": months})
    return _render(request, "dashboard.html", context)


# ---------------------------------------------------------------------------
# Auth routes -- OAuth, login, signup, verification, logout, setup
# ---------------------------------------------------------------------------


@router.get("/login/oauth/{provider}", response_class=HTMLResponse)
async def oauth_redirect(request: Request, provider: str) -> Response:
    """Redirect the browser to the OAuth provider's authorization page.

    Validates the provider name against the enabled provider list before
    redirecting. The post-login target is kept in the session because the
    provider only echoes back the state parameter.
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return RedirectResponse("/login?error=oauth_failed", status_code=302)

    request.session["oauth_next"] = _safe_next(request.query_params.get("next"))
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.api_route("/login/callback/{provider}", methods=["GET", "POST"], name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> Response:
    """Handle the OAuth provider callback and sign the user in.

    Flow:
      1. Exchange authorization code for token (authlib handles CSRF via session state).
      2. Extract (email, subject) from the token -- ValueError if unverified [H1].
      3. resolve_oauth_user(): linked identity, then email, then (if allowed) a new USER.
      4. Issue the session cookies and redirect to the stored next URL.
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return RedirectResponse("/login?error=oauth_failed", status_code=302)

    user_store: UserStore = request.app.state.user_store
    client = request.app.state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return RedirectResponse("/login?error=oauth_failed", status_code=302)

    try:
        email, subject, profile = get_oauth_user_info(provider, token)
    except ValueError:
        logger.warning("OAuth login rejected: unverified or missing email from %r", provider)
        return RedirectResponse("/login?error=oauth_failed", status_code=302)

    allow_registration = user_store.get_app_settings()["allow_registration"]
    try:
        user = resolve_oauth_user(user_store, provider, email, subject, profile, allow_registration)
    except OAuthLoginError as exc:
        return RedirectResponse(f"/login?error={exc.code}", status_code=302)

    next_url = request.session.pop("oauth_next", None)
    return _signed_in_redirect(request, user, next_url, provider)


@router.post("/login/otp", response_class=HTMLResponse)
def login_send_otp(request: Request, identifier: str = Form(...), next: str = Form(default="")) -> HTMLResponse:
    """Send a login code and show the code entry form.

    The page reads the same whether or not the identifier is registered, so it
    cannot be used to discover which accounts exist.
    """
    store: UserStore = request.app.state.user_store
    email, phone = _split_identifier(identifier)
    user = store.find_by_email_or_phone(email, phone) if (email or phone) else None
    debug_code = None
    if user is not None:
        code = issue_code(store, email or phone, LOGIN_OTP)
        deliver_code(email or phone, code, LOGIN_OTP)
        log_audit_event(
            request.app.state.audit_store,
            user.id,
            "SEND_OTP",
            "Auth",
            user.id,
            {"identifier": email or phone},
            request,
        )
        debug_code = code if _cfg.debug else None
    return _render(
        request,
        "login.html",
        {
            "mode": "otp",
            "identifier": identifier.strip(),
            "next": next,
            "code_sent": True,
            "debug_code": debug_code,
            "providers": get_enabled_providers(),
            "error_msg": None,
            "notice_msg": None,
        },
    )


@router.post("/login/two-factor", response_class=HTMLResponse)
def login_two_factor(request: Request, code: str = Form(...)) -> Response:
    """Second step of a 2FA login started by POST /login."""
    store: UserStore = request.app.state.user_store
    user_id = request.session.get("two_factor_user_id")
    user = store.get_by_id(user_id) if user_id else None
    if user is None or user.status != "ACTIVE":
        request.session.pop("two_factor_user_id", None)
        return RedirectResponse("/login?error=two_factor_expired", status_code=303)

    if consume_code(store, code.strip(), TWO_FACTOR, user.identifier) is None:
        log_audit_event(
            request.app.state.audit_store,
            user.id,
            "LOGIN_FAILED",
            "Auth",
            user.id,
            {"identifier": user.identifier, "reason": "invalid_two_factor_token"},
            request,
        )
        if _count_failure(request, user, store.get_app_settings()["max_login_attempts"]):
            request.session.pop("two_factor_user_id", None)
            request.session.pop("two_factor_next", None)
            return RedirectResponse("/login?error=account_locked", status_code=303)
        return _render(request, "two_factor.html", {"error_msg": "Invalid or expired code.", "debug_code": None})

    request.session.pop("two_factor_user_id", None)
    next_url = request.session.pop("two_factor_next", None)
    return _signed_in_redirect(request, user, next_url, "two_factor")


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> Response:
    """Render the login page with password/OTP forms and OAuth buttons."""
    if try_get_current_user(request) is not None:
        return RedirectResponse("/", status_code=302)

    # Map ?error= / ?notice= through whitelists [M3]
    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""))
    notice_msg = _NOTICES.get(request.query_params.get("notice", ""))
    return _render(
        request,
        "login.html",
        {
            "mode": "otp" if request.query_params.get("mode") == "otp" else "password",
            "identifier": "",
            "next": _safe_next(request.query_params.get("next")),
            "code_sent": False,
            "debug_code": None,
            "error_msg": error_msg,
            "notice_msg": notice_msg,
            "providers": get_enabled_providers(),
            "allow_registration": request.app.state.user_store.get_app_settings()["allow_registration"],
        },
    )


@router.post("/login", response_class=HTMLResponse)
def login_post(
    request: Request,
    identifier: str = Form(...),
    password: str = Form(default=""),
    otp: str = Form(default=""),
    next: str = Form(default=""),
) -> Response:
    """Handle password or OTP login form submission."""
    store: UserStore = request.app.state.user_store
    audit_store: AuditStore = request.app.state.audit_store
    email, phone = _split_identifier(identifier)
    if not (email or phone) or not (password or otp):
        return RedirectResponse("/login?error=bad_credentials", status_code=303)

    app_settings = store.get_app_settings()
    if password:
        user = authenticate_user(store, password, email=email, phone=phone)  # [C1] timing equalization
    else:
        user = store.find_by_email_or_phone(email, phone)
        if user is not None and consume_code(store, otp.strip(), LOGIN_OTP, email or phone) is None:
            user = None

    if user is None:
        target = store.find_by_email_or_phone(email, phone)
        locked = False
        if target is not None:
            locked = _count_failure(request, target, app_settings["max_login_attempts"])
        log_audit_event(
            audit_store,
            target.id if target else None,
            "LOGIN_FAILED",
            "Auth",
            None,
            {"identifier": email or phone, "reason": "invalid_credentials"},
            request,
        )
        error = "account_locked" if locked else "bad_credentials"
        return RedirectResponse(f"/login?error={error}", status_code=303)

    if user.status != "ACTIVE":
        log_audit_event(
            audit_store,
            user.id,
            "LOGIN_FAILED",
            "Auth",
            user.id,
            {"identifier": email or phone, "reason": "account_inactive", "status": user.status},
            request,
        )
        return RedirectResponse("/login?error=account_inactive", status_code=303)

    if user.two_factor_enabled:
        code = issue_code(store, user.identifier, TWO_FACTOR)
        deliver_code(user.identifier, code, TWO_FACTOR)
        request.session["two_factor_user_id"] = user.id
        request.session["two_factor_next"] = _safe_next(next)
        debug_code = code if _cfg.debug else None
        return _render(request, "two_factor.html", {"error_msg": None, "debug_code": debug_code})

    return _signed_in_redirect(request, user, next, "password" if password else "otp")


@router.get("/signup", response_class=HTMLResponse)
def signup_form(request: Request) -> Response:
    if try_get_current_user(request) is not None:
        return RedirectResponse("/", status_code=302)
    if not request.app.state.user_store.get_app_settings()["allow_registration"]:
        return _error_page(request, 403, "Registration closed", "Registration is currently disabled.")
    return _render(request, "signup.html", {"error_msg": None, "form_data": {}})


@router.post("/signup", response_class=HTMLResponse)
def signup_post(
    request: Request,
    email: str = Form(default=""),
    phone: str = Form(default=""),
    password: str = Form(default=""),
    confirm_password: str = Form(default=""),
    first_name: str = Form(default=""),
    last_name: str = Form(default=""),
) -> Response:
    """Register a USER account; verification codes go out when the settings require them."""
    store: UserStore = request.app.state.user_store
    app_settings = store.get_app_settings()
    if not app_settings["allow_registration"]:
        return _error_page(request, 403, "Registration closed", "Registration is currently disabled.")

    form_data = {"email": email, "phone": phone, "first_name": first_name, "last_name": last_name}
    email_clean = email.strip().lower() or None
    phone_clean = phone.strip() or None

    error = None
    if not email_clean and not phone_clean:
        error = "Email or phone is required."
    elif email_clean and not _is_email(email_clean):
        error = "Enter a valid email address."
    elif phone_clean and not _PHONE_RE.match(phone_clean):
        error = "Enter a valid phone number."
    elif password and len(password) < 8:
        error = "Password must be at least 8 characters."
    elif password != confirm_password:
        error = "Passwords do not match."
    elif any(name.strip() and len(name.strip()) < 2 for name in (first_name, last_name)):
        error = "Names must be at least 2 characters."
    elif store.find_by_email_or_phone(email_clean, phone_clean) is not None:
        error = "An account with this email or phone already exists."
    if error:
        return _render(request, "signup.html", {"error_msg": error, "form_data": form_data})

    draft = User(
        email=email_clean,
        phone=phone_clean,
        hashed_password=hash_password(password) if password else None,
        first_name=first_name.strip() or None,
        last_name=last_name.strip() or None,
        role="USER",
    )
    draft.status = "PENDING_VERIFICATION" if pending_verifications(draft, app_settings) else "ACTIVE"
    try:
        user_id = store.create_user(draft)
    except IntegrityError:
        return _render(
            request,
            "signup.html",
            {"error_msg": "An account with this email or phone already exists.", "form_data": form_data},
        )
    user = store.get_by_id(user_id)
    codes = send_verification_codes(store, user, app_settings)
    request.state.user = user
    _audit(request, "SIGNUP", "User", user.id, {"email": user.email, "phone": user.phone, "status": user.status})

    if user.status != "ACTIVE":
        return _render(
            request,
            "verify.html",
            {
                "error_msg": None,
                "notice_msg": _NOTICES["signed_up"],
                "pending": sorted(codes),
                "phone": user.phone or "",
                "debug_codes": codes if _cfg.debug else {},
            },
        )
    return _signed_in_redirect(request, user, "/", "signup")


@router.get("/verify", response_class=HTMLResponse)
def verify_form(request: Request) -> HTMLResponse:
    """Verification form. ?token= prefills the email token from a verification link."""
    return _render(
        request,
        "verify.html",
        {
            "error_msg": None,
            "notice_msg": None,
            "pending": [EMAIL_VERIFICATION, PHONE_VERIFICATION],
            "phone": "",
            "token": request.query_params.get("token", "")[:200],
            "debug_codes": {},
        },
    )


@router.post("/verify", response_class=HTMLResponse)
def verify_post(
    request: Request,
    kind: str = Form(...),
    token: str = Form(...),
    phone: str = Form(default=""),
) -> Response:
    """Consume an email verification token or a phone verification code."""
    store: UserStore = request.app.state.user_store
    purpose = EMAIL_VERIFICATION if kind == "email" else PHONE_VERIFICATION
    identifier = (phone.strip() or None) if purpose == PHONE_VERIFICATION else None
    consumed = consume_code(store, token.strip(), purpose, identifier)
    user = None
    if consumed is not None:
        if purpose == EMAIL_VERIFICATION:
            user = store.get_by_email(consumed.identifier)
        else:
            user = store.get_by_phone(consumed.identifier)
    if user is None:
        return _render(
            request,
            "verify.html",
            {
                "error_msg": "Invalid or expired verification code.",
                "notice_msg": None,
                "pending": [EMAIL_VERIFICATION, PHONE_VERIFICATION],
                "phone": phone,
                "debug_codes": {},
            },
        )

    user = mark_verified(store, user, purpose, store.get_app_settings())
    request.state.user = user
    _audit(request, "VERIFY_EMAIL" if purpose == EMAIL_VERIFICATION else "VERIFY_PHONE", "User", user.id)
    return RedirectResponse("/login?notice=verified", status_code=303)


@router.post("/logout")
def logout(request: Request) -> RedirectResponse:
    """Revoke the refresh token, clear every auth cookie and redirect to the login page."""
    user = try_get_current_user(request)
    revoke_refresh_token(request.app.state.user_store, request.cookies.get(REFRESH_COOKIE))
    if user is not None:
        request.state.user = user
        _audit(request, "LOGOUT", "Auth", user.id)
    resp = RedirectResponse("/login?notice=logged_out", status_code=302)
    clear_auth_cookies(resp)
    return resp


@router.get("/setup", response_class=HTMLResponse)
def setup_form(request: Request) -> HTMLResponse:
    """Render the first-run setup wizard.

    Returns 404 after the first account has been created. The setup redirect
    middleware only redirects while setup_required is True.
    """
    if not getattr(request.app.state, "setup_required", True):
        raise HTTPException(status_code=404)
    return _render(request, "setup.html", {"error_msg": None, "form_data": {}})


@router.post("/setup", response_class=HTMLResponse)
def setup_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
    first_name: str = Form(default=""),
    last_name: str = Form(default=""),
) -> Response:
    """Create the first SUPER_ADMIN account.

    [M1] Race condition guard: re-checks has_users() inside the handler even
    though the middleware already checked setup_required. Two concurrent requests
    could both pass the middleware check before either creates a user. The DB-
    level check and IntegrityError catch ensure only one wins.
    """
    user_store: UserStore = request.app.state.user_store

    # Re-check at DB level [M1]
    if user_store.has_users():
        return RedirectResponse("/login?error=setup_complete", status_code=302)

    form_data = {"email": email, "first_name": first_name, "last_name": last_name}
    email_clean = email.strip().lower()
    error = None
    if not _is_email(email_clean):
        error = "Enter a valid email address."
    elif password != confirm_password:
        error = "Passwords do not match."
    elif len(password) < 8:
        error = "Password must be at least 8 characters."
    if error:
        return _render(request, "setup.html", {"error_msg": error, "form_data": form_data})

    admin = User(
        email=email_clean,
        hashed_password=hash_password(password),
        first_name=first_name.strip() or None,
        last_name=last_name.strip() or None,
        role="SUPER_ADMIN",
        status="ACTIVE",
        email_verified_at=now_iso(),
    )
    try:
        user_id = user_store.create_user(admin)
        request.app.state.setup_required = False
    except IntegrityError:
        # Race condition: another request created an admin first [M1]
        return RedirectResponse("/login?error=setup_complete", status_code=302)

    log_audit_event(request.app.state.audit_store, user_id, "CREATE_USER", "User", user_id, {"setup": True}, request)
    logger.info("First-run setup created super admin user_id=%s", user_id)
    return RedirectResponse("/login?notice=setup_done", status_code=302)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _assignable_roles(actor: User) -> list[str]:
    return [r for r in ROLES if r != "SUPER_ADMIN" or actor.role == "SUPER_ADMIN"]


def _user_form(request: Request, target: Optional[User], form_data: dict, error: Optional[str]) -> HTMLResponse:
    return _render(
        request,
        "user_form.html",
        {
            "target": target,
            "form_data": form_data,
            "error_msg": error,
            "roles": _assignable_roles(request.state.user),
            "statuses": _USER_STATUSES,
            "can_edit": _can(request, "users", "write"),
        },
    )


@router.get("/users", response_class=HTMLResponse)
def users_list(
    request: Request,
    search: str = "",
    role: str = "",
    status: str = "",
    page: int = 1,
) -> Response:
    if denied := _require_auth(request, "users", "read"):
        return denied
    store: UserStore = request.app.state.user_store
    role = role if role in ROLES else ""
    status = status if status in _USER_STATUSES else ""
    page = max(1, page)
    users, total = store.list_users(search=search[:100], role=role, status=status, page=page, limit=_PAGE_SIZE)
    _audit(request, "READ_USERS", "Users", None, {"page": page, "search": search, "role": role, "status": status})
    return _render(
        request,
        "users.html",
        {
            "users": users,
            "filters": {"search": search, "role": role, "status": status},
            "roles": ROLES,
            "statuses": _USER_STATUSES,
            "pagination": _pagination(page, total),
            "can_edit": _can(request, "users", "write"),
        },
    )


@router.get("/users/new", response_class=HTMLResponse)
def user_create_form(request: Request) -> Response:
    if denied := _require_auth(request, "users", "write"):
        return denied
    return _user_form(request, None, {"role": "USER", "status": "ACTIVE"}, None)


@router.post("/users", response_class=HTMLResponse)
def user_create(
    request: Request,
    email: str = Form(default=""),
    phone: str = Form(default=""),
    password: str = Form(default=""),
    first_name: str = Form(default=""),
    last_name: str = Form(default=""),
    role: str = Form(default="USER"),
    status: str = Form(default="ACTIVE"),
) -> Response:
    """Handle the user creation form. Redirects to /users on success."""
    if denied := _require_auth(request, "users", "write"):
        return denied
    actor: User = request.state.user
    store: UserStore = request.app.state.user_store
    form_data = {
        "email": email,
        "phone": phone,
        "first_name": first_name,
        "last_name": last_name,
        "role": role,
        "status": status,
    }
    email_clean = email.strip().lower()
    phone_clean = phone.strip() or None

    error = None
    if not _is_email(email_clean):
        error = "Enter a valid email address."
    elif phone_clean and not _PHONE_RE.match(phone_clean):
        error = "Enter a valid phone number."
    elif len(password) < 8:
        error = "Password must be at least 8 characters."
    elif role not in _assignable_roles(actor):
        error = "You cannot assign this role."
    elif status not in _USER_STATUSES:
        error = "Unknown status."
    elif store.find_by_email_or_phone(email_clean, phone_clean) is not None:
        error = "A user with this email or phone already exists."
    if error:
        return _user_form(request, None, form_data, error)

    new_user = User(
        email=email_clean,
        phone=phone_clean,
        hashed_password=hash_password(password),
        first_name=first_name.strip() or None,
        last_name=last_name.strip() or None,
        role=role,
        status=status,
    )
    try:
        user_id = store.create_user(new_user)
    except IntegrityError:
        return _user_form(request, None, form_data, "A user with this email or phone already exists.")

    _audit(request, "CREATE_USER", "User", user_id, {"email": email_clean, "role": role, "status": status})
    return RedirectResponse("/users", status_code=303)


@router.get("/users/{user_id}", response_class=HTMLResponse)
def user_detail(request: Request, user_id: int) -> Response:
    if denied := _require_auth(request, "users", "read"):
        return denied
    target = request.app.state.user_store.get_by_id(user_id)
    if target is None:
        return _error_page(request, 404, "Not found", "User not found.")
    _audit(request, "READ_USER", "User", user_id)
    form_data = {k: v for k, v in asdict(target).items() if k != "hashed_password"}
    return _user_form(request, target, form_data, None)


@router.post("/users/{user_id}", response_class=HTMLResponse)
def user_update(
    request: Request,
    user_id: int,
    email: str = Form(default=""),
    phone: str = Form(default=""),
    password: str = Form(default=""),
    first_name: str = Form(default=""),
    last_name: str = Form(default=""),
    role: str = Form(...),
    status: str = Form(...),
) -> Response:
    """Handle the user edit form. [M4] guards match PATCH /api/users/{id}."""
    if denied := _require_auth(request, "users", "write"):
        return denied
    actor: User = request.state.user
    store: UserStore = request.app.state.user_store
    target = store.get_by_id(user_id)
    if target is None:
        return _error_page(request, 404, "Not found", "User not found.")

    form_data = {
        "email": email,
        "phone": phone,
        "first_name": first_name,
        "last_name": last_name,
        "role": role,
        "status": status,
    }
    email_clean = email.strip().lower() or None
    phone_clean = phone.strip() or None
    loses_admin = role not in ADMIN_ROLES or status != "ACTIVE"

    error = None
    if actor.role != "SUPER_ADMIN" and (target.role == "SUPER_ADMIN" or role == "SUPER_ADMIN"):
        return _forbidden(request)
    if role not in ROLES or status not in _USER_STATUSES:
        error = "Unknown role or status."
    elif not email_clean and not phone_clean:
        error = "Email or phone is required."
    elif email_clean and not _is_email(email_clean):
        error = "Enter a valid email address."
    elif phone_clean and not _PHONE_RE.match(phone_clean):
        error = "Enter a valid phone number."
    elif password and len(password) < 8:
        error = "Password must be at least 8 characters."
    elif target.id == actor.id and status != "ACTIVE":
        error = "You cannot deactivate your own account."
    elif (
        target.role in ADMIN_ROLES
        and target.status == "ACTIVE"
        and loses_admin
        and store.count_active_admins() <= 1
    ):
        error = "Cannot remove the last active admin account."
    else:
        clash = store.find_by_email_or_phone(email_clean, phone_clean)
        if clash is not None and clash.id != target.id:
            error = "Another user already has this email or phone."
    if error:
        return _user_form(request, target, form_data, error)

    updates = {
        "email": email_clean,
        "phone": phone_clean,
        "first_name": first_name.strip() or None,
        "last_name": last_name.strip() or None,
        "role": role,
        "status": status,
    }
    changes = diff_changes(asdict(target), updates)
    if password:
        updates["hashed_password"] = hash_password(password)
        changes["password"] = "changed"
    try:
        store.update_user(user_id, **updates)
    except IntegrityError:
        return _user_form(request, target, form_data, "Another user already has this email or phone.")
    if status != "ACTIVE":
        store.delete_user_refresh_tokens(user_id)

    _audit(request, "UPDATE_USER", "User", user_id, {"changes": changes})
    return RedirectResponse("/users", status_code=303)


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def _product_form(request: Request, product: Optional[Product], form_data: dict, error: Optional[str]) -> HTMLResponse:
    return _render(
        request,
        "product_form.html",
        {
            "product": product,
            "form_data": form_data,
            "error_msg": error,
            "categories": request.app.state.commerce.list_categories(),
            "can_edit": _can(request, "products", "write"),
            "can_delete": _can(request, "products", "delete"),
        },
    )


def _parse_product_form(
    name: str, description: str, price: str, category: str, sku: str, stock: str, is_active: Optional[str]
) -> tuple[Optional[dict], Optional[str]]:
    """Validate product form fields. Returns (fields, None) or (None, error message)."""
    if not name.strip():
        return None, "Name is required."
    if not category.strip():
        return None, "Category is required."
    if not sku.strip():
        return None, "SKU is required."
    try:
        price_value = round(float(price), 2)
    except ValueError:
        return None, "Price must be a number."
    if price_value <= 0:
        return None, "Price must be greater than zero."
    try:
        stock_value = int(stock or 0)
    except ValueError:
        return None, "Stock must be a whole number."
    if stock_value < 0:
        return None, "Stock cannot be negative."
    return {
        "name": name.strip()[:200],
        "description": description.strip() or None,
        "price": price_value,
        "category": category.strip()[:100],
        "sku": sku.strip().upper()[:64],
        "stock": stock_value,
        "is_active": bool(is_active),
    }, None


@router.get("/products", response_class=HTMLResponse)
def products_list(
    request: Request,
    search: str = "",
    category: str = "",
    active: str = "",
    page: int = 1,
) -> Response:
    if denied := _require_auth(request, "products", "read"):
        return denied
    commerce: CommerceStore = request.app.state.commerce
    is_active = {"active": True, "inactive": False}.get(active)
    page = max(1, page)
    products, total = commerce.list_products(
        search=search[:100], category=category[:100], is_active=is_active, page=page, limit=_PAGE_SIZE
    )
    _audit(request, "READ_PRODUCTS", "Products", None, {"page": page, "search": search, "category": category})
    return _render(
        request,
        "products.html",
        {
            "products": products,
            "filters": {"search": search, "category": category, "active": active},
            "categories": commerce.list_categories(),
            "pagination": _pagination(page, total),
            "can_edit": _can(request, "products", "write"),
        },
    )


@router.get("/products/new", response_class=HTMLResponse)
def product_create_form(request: Request) -> Response:
    if denied := _require_auth(request, "products", "write"):
        return denied
    return _product_form(request, None, {"is_active": True, "stock": 0}, None)


@router.post("/products", response_class=HTMLResponse)
def product_create(
    request: Request,
    name: str = Form(default=""),
    description: str = Form(default=""),
    price: str = Form(default=""),
    category: str = Form(default=""),
    sku: str = Form(default=""),
    stock: str = Form(default="0"),
    is_active: Optional[str] = Form(default=None),
) -> Response:
    """Handle product creation form POST. Redirects to /products on success."""
    if denied := _require_auth(request, "products", "write"):
        return denied
    form_data = {
        "name": name,
        "description": description,
        "price": price,
        "category": category,
        "sku": sku,
        "stock": stock,
        "is_active": bool(is_active),
    }
    fields, error = _parse_product_form(name, description, price, category, sku, stock, is_active)
    if error:
        return _product_form(request, None, form_data, error)

    try:
        product_id = request.app.state.commerce.create_product(Product(**fields))
    except IntegrityError:
        return _product_form(request, None, form_data, f"A product with SKU {fields['sku']} already exists.")

    _audit(request, "CREATE_PRODUCT", "Product", product_id, fields)
    return RedirectResponse("/products", status_code=303)


@router.get("/products/{product_id}", response_class=HTMLResponse)
def product_detail(request: Request, product_id: int) -> Response:
    if denied := _require_auth(request, "products", "read"):
        return denied
    product = request.app.state.commerce.get_product(product_id)
    if product is None:
        return _error_page(request, 404, "Not found", "Product not found.")
    _audit(request, "READ_PRODUCT", "Product", product_id)
    return _product_form(request, product, asdict(product), None)


@router.post("/products/{product_id}", response_class=HTMLResponse)
def product_update(
    request: Request,
    product_id: int,
    name: str = Form(default=""),
    description: str = Form(default=""),
    price: str = Form(default=""),
    category: str = Form(default=""),
    sku: str = Form(default=""),
    stock: str = Form(default="0"),
    is_active: Optional[str] = Form(default=None),
) -> Response:
    if denied := _require_auth(request, "products", "write"):
        return denied
    commerce: CommerceStore = request.app.state.commerce
    product = commerce.get_product(product_id)
    if product is None:
        return _error_page(request, 404, "Not found", "Product not found.")

    form_data = {
        "name": name,
        "description": description,
        "price": price,
        "category": category,
        "sku": sku,
        "stock": stock,
        "is_active": bool(is_active),
    }
    fields, error = _parse_product_form(name, description, price, category, sku, stock, is_active)
    if error:
        return _product_form(request, product, form_data, error)

    changes = diff_changes(asdict(product), fields)
    if changes:
        try:
            commerce.update_product(product_id, **fields)
        except IntegrityError:
            return _product_form(request, product, form_data, f"A product with SKU {fields['sku']} already exists.")
        _audit(request, "UPDATE_PRODUCT", "Product", product_id, {"changes": changes})
    return RedirectResponse(f"/products/{product_id}", status_code=303)


@router.post("/products/{product_id}/delete")
def product_delete(request: Request, product_id: int) -> Response:
    if denied := _require_auth(request, "products", "delete"):
        return denied
    commerce: CommerceStore = request.app.state.commerce
    product = commerce.get_product(product_id)
    if product is None:
        return _error_page(request, 404, "Not found", "Product not found.")
    commerce.delete_product(product_id)
    _audit(request, "DELETE_PRODUCT", "Product", product_id, {"name": product.name, "sku": product.sku})
    return RedirectResponse("/products", status_code=303)


@router.get("/products/{product_id}/history", response_class=HTMLResponse)
def product_history(request: Request, product_id: int) -> Response:
    """Change history of a product, oldest first. Still viewable after deletion."""
    if denied := _require_auth(request, "products", "read"):
        return denied
    logs = request.app.state.audit_store.history("Product", str(product_id))
    product = request.app.state.commerce.get_product(product_id)
    if not logs and product is None:
        return _error_page(request, 404, "Not found", "Product not found.")
    return _render(
        request,
        "history.html",
        {
            "title": product.name if product else f"Product #{product_id}",
            "back_url": f"/products/{product_id}" if product else "/products",
            "entries": _with_users(request.app.state.user_store, logs),
        },
    )


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

_FINAL_ORDER_STATUSES = frozenset({"DELIVERED", "CANCELLED"})


@router.get("/orders", response_class=HTMLResponse)
def orders_list(request: Request, search: str = "", status: str = "", page: int = 1) -> Response:
    if denied := _require_auth(request, "orders", "read"):
        return denied
    status = status if status in ORDER_STATUSES else ""
    page = max(1, page)
    orders, total = request.app.state.commerce.list_orders(
        search=search[:100], status=status, page=page, limit=_PAGE_SIZE
    )
    _audit(request, "READ_ORDERS", "Orders", None, {"page": page, "search": search, "status": status or None})
    return _render(
        request,
        "orders.html",
        {
            "orders": orders,
            "filters": {"search": search, "status": status},
            "statuses": ORDER_STATUSES,
            "pagination": _pagination(page, total),
        },
    )


def _order_page(request: Request, order, error: Optional[str] = None) -> HTMLResponse:
    return _render(
        request,
        "order_detail.html",
        {
            "order": order,
            "statuses": ORDER_STATUSES,
            "is_final": order.status in _FINAL_ORDER_STATUSES,
            "can_edit": _can(request, "orders", "write"),
            "history": _with_users(
                request.app.state.user_store, request.app.state.audit_store.history("Order", str(order.id))
            ),
            "error_msg": error,
        },
    )


@router.get("/orders/{order_id}", response_class=HTMLResponse)
def order_detail(request: Request, order_id: int) -> Response:
    if denied := _require_auth(request, "orders", "read"):
        return denied
    order = request.app.state.commerce.get_order(order_id)
    if order is None:
        return _error_page(request, 404, "Not found", "Order not found.")
    _audit(request, "READ_ORDER", "Order", order_id)
    return _order_page(request, order)


@router.post("/orders/{order_id}/status", response_class=HTMLResponse)
def order_update_status(
    request: Request,
    order_id: int,
    status: str = Form(...),
    tracking_number: str = Form(default=""),
) -> Response:
    """Change an order's status and tracking number. DELIVERED and CANCELLED are final."""
    if denied := _require_auth(request, "orders", "write"):
        return denied
    commerce: CommerceStore = request.app.state.commerce
    order = commerce.get_order(order_id)
    if order is None:
        return _error_page(request, 404, "Not found", "Order not found.")
    if status not in ORDER_STATUSES:
        return _order_page(request, order, "Unknown status.")
    if order.status in _FINAL_ORDER_STATUSES and status != order.status:
        return _order_page(request, order, f"Order is {order.status}; its status can no longer change.")

    updates = {"status": status, "tracking_number": tracking_number.strip()[:100] or None}
    changes = diff_changes(asdict(order), updates)
    if changes:
        commerce.update_order(order_id, **updates)
        _audit(request, "UPDATE_ORDER", "Order", order_id, {"changes": changes})
    return RedirectResponse(f"/orders/{order_id}", status_code=303)


# ---------------------------------------------------------------------------
# Analytics and reports
# ---------------------------------------------------------------------------


@router.get("/analytics", response_class=HTMLResponse)
def analytics_page(request: Request, months: int = 12) -> Response:
    """Every dashboard chart plus the monthly figures behind them."""
    if denied := _require_auth(request, "analytics", "read"):
        return denied
    if months not in PERIODS:
        months = 12

    user_store: UserStore = request.app.state.user_store
    data = build_dashboard(
        request.app.state.commerce, user_store.signups_by_month(), user_store.count_users(), months=months
    )
    monthly = [
        {"label": month_label(month), "signups": signups, "orders": orders, "revenue": revenue}
        for month, signups, orders, revenue in zip(
            data["months"], data["user_growth"], data["orders_per_month"], data["revenue_per_month"]
        )
    ]
    _audit(request, "READ_ANALYTICS", "Analytics", None, {"months": months})
    return _render(
        request,
        "analytics.html",
        {
            "months": months,
            "periods": PERIODS,
            "stats": data["stats"],
            "charts": dashboard_charts(data),
            "monthly": monthly,
            "top_products": data["top_products"],
            "roles": user_store.role_distribution(),
        },
    )


@router.get("/reports", response_class=HTMLResponse)
def reports_page(request: Request) -> Response:
    if denied := _require_auth(request, "analytics", "read"):
        return denied
    return _render(request, "reports.html", {"reports": list(REPORTS.values())})


@router.get("/reports/{slug}.csv")
def report_download(request: Request, slug: str) -> Response:
    """Send one quick report as a CSV attachment."""
    if denied := _require_auth(request, "analytics", "read"):
        return denied
    report = REPORTS.get(slug)
    if report is None:
        return _error_page(request, 404, "Not found", "No such report.")

    body = report.render(request.app.state.user_store, request.app.state.commerce)
    _audit(request, "EXPORT_REPORT", "Reports", None, {"report": slug})
    return Response(
        body,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{report.filename}"'},
    )


# ---------------------------------------------------------------------------
# Audit logs
# ---------------------------------------------------------------------------


@router.get("/audit-logs", response_class=HTMLResponse)
def audit_logs_page(
    request: Request,
    action: str = "",
    resource: str = "",
    user_id: str = "",
    start_date: str = "",
    end_date: str = "",
    page: int = 1,
) -> Response:
    if denied := _require_auth(request, "admin", "read"):
        return denied
    filters = {
        "action": action,
        "resource": resource,
        "user_id": user_id,
        "start_date": start_date,
        "end_date": end_date,
    }
    error = None
    try:
        start = parse_bound(start_date[:40], end=False)
        end = parse_bound(end_date[:40], end=True)
    except ValueError:
        start = end = None
        error = "Dates must be in YYYY-MM-DD format."
    uid = int(user_id) if user_id.strip().isdigit() else None
    page = max(1, page)

    logs, total = request.app.state.audit_store.list_logs(
        action=action[:100],
        resource=resource[:100],
        user_id=uid,
        start_date=start,
        end_date=end,
        page=page,
        limit=50,
    )
    _audit(request, "READ_AUDIT_LOGS", "AuditLogs", None, {"page": page, "action": action, "resource": resource})
    return _render(
        request,
        "audit_logs.html",
        {
            "entries": _with_users(request.app.state.user_store, logs),
            "filters": filters,
            "pagination": _pagination(page, total, limit=50),
            "error_msg": error,
        },
    )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@router.get("/settings", response_class=HTMLResponse)
def settings_page(request: Request) -> Response:
    if denied := _require_auth(request, "settings", "read"):
        return denied
    app_settings = request.app.state.user_store.get_app_settings()
    _audit(request, "READ_SETTINGS", "Settings")
    return _render(
        request,
        "settings.html",
        {
            "settings": app_settings,
            "error_msg": None,
            "saved": request.query_params.get("saved") == "1",
            "can_edit": _can(request, "settings", "write"),
        },
    )


@router.post("/settings", response_class=HTMLResponse)
def settings_save(
    request: Request,
    site_name: str = Form(default=""),
    site_description: str = Form(default=""),
    contact_email: str = Form(default=""),
    contact_phone: str = Form(default=""),
    max_login_attempts: str = Form(default="5"),
    session_timeout: str = Form(default="60"),
    maintenance_mode: Optional[str] = Form(default=None),
    allow_registration: Optional[str] = Form(default=None),
    require_email_verification: Optional[str] = Form(default=None),
    require_phone_verification: Optional[str] = Form(default=None),
) -> Response:
    """Save every site setting from the form. Unchecked checkboxes mean False."""
    if denied := _require_auth(request, "settings", "write"):
        return denied
    store: UserStore = request.app.state.user_store
    before = store.get_app_settings()

    submitted = {
        **before,
        "site_name": site_name.strip(),
        "site_description": site_description.strip() or None,
        "contact_email": contact_email.strip().lower(),
        "contact_phone": contact_phone.strip() or None,
        "maintenance_mode": bool(maintenance_mode),
        "allow_registration": bool(allow_registration),
        "require_email_verification": bool(require_email_verification),
        "require_phone_verification": bool(require_phone_verification),
    }
    error = None
    try:
        submitted["max_login_attempts"] = int(max_login_attempts)
        submitted["session_timeout"] = int(session_timeout)
    except ValueError:
        error = "Login attempts and session timeout must be whole numbers."
    if error is None:
        if not submitted["site_name"]:
            error = "Site name is required."
        elif not _is_email(submitted["contact_email"]):
            error = "Enter a valid contact email."
        elif not 1 <= submitted["max_login_attempts"] <= 10:
            error = "Max login attempts must be between 1 and 10."
        elif not 15 <= submitted["session_timeout"] <= 1440:
            error = "Session timeout must be between 15 and 1440 minutes."
    if error:
        return _render(
            request,
            "settings.html",
            {"settings": submitted, "error_msg": error, "saved": False, "can_edit": True},
        )

    updates = {k: v for k, v in submitted.items() if k in before}
    store.update_app_settings(**updates)
    _audit(request, "UPDATE_SETTINGS", "Settings", None, {"changes": diff_changes(before, updates)})
    return RedirectResponse("/settings?saved=1", status_code=303)
