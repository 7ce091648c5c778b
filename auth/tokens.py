"""
auth/tokens.py -- JWT, password hashing, and token hashing utilities.

Security design decisions:
  JWT: python-jose with HS256. Two token types are issued:
       access  -- signed with SECRET_KEY, carries user_id, email, role, status.
                  Lifetime follows the session_timeout app setting.
       refresh -- signed with REFRESH_SECRET_KEY, carries only user_id and a
                  random jti. Lifetime REFRESH_TOKEN_EXPIRE_DAYS.
       Each carries a "type" claim so a refresh token can never be replayed as
       an access token (and vice versa). Verification returns None on any
       failure -- route layer turns that into a 401.

  Passwords: bcrypt. The _DUMMY_HASH constant enables timing equalization in
       authenticate_user() so response time does not reveal whether an
       email or phone is registered [C1].

  Refresh tokens at rest: HMAC-SHA256(SECRET_KEY, raw_jwt). The DB never holds
       a usable token; lookup by hash is O(1).

Layer rule: no imports from api/, web/, audit/, or commerce/. Import from core/
is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("backoffice.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
USER_ID_COOKIE = "user_id"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input at 72 bytes. The API layer caps passwords at 128
    characters (Pydantic field).
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load. Always call verify_password() even when the
# user does not exist so response time does not leak account existence.
_DUMMY_HASH: str = hash_password("backoffice_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def access_token_lifetime(session_timeout_minutes: int | None = None) -> int:
    """Return the access token lifetime in seconds.

    session_timeout_minutes comes from the app_settings row. When unavailable,
    Settings.access_token_expire_seconds is used.
    """
    if session_timeout_minutes and session_timeout_minutes > 0:
        return session_timeout_minutes * 60
    return _settings.access_token_expire_seconds


def refresh_token_lifetime() -> int:
    return _settings.refresh_token_expire_days * 24 * 3600


def create_access_token(user: User, expire_seconds: int = 0) -> str:
    """Encode a signed access JWT for user.

    Args:
        user:           The authenticated user (must have an id).
        expire_seconds: Lifetime in seconds. 0 means the Settings default.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": user.identifier,
        "user_id": user.id,
        "email": user.email,
        "role": user.role,
        "status": user.status,
        "type": "access",
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify an access JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != "access" or "user_id" not in payload or "role" not in payload:
        return None
    return payload


def create_refresh_token(user_id: int) -> tuple[str, datetime]:
    """Encode a signed refresh JWT. Returns (token, expires_at).

    The random jti makes every token unique even when two are issued for the
    same user within the same second (token_hash is UNIQUE in the DB).
    """
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=refresh_token_lifetime())
    payload = {
        "user_id": user_id,
        "jti": secrets.token_hex(16),
        "type": "refresh",
        "exp": expires_at,
    }
    token = jwt.encode(payload, _settings.refresh_secret_key, algorithm=_ALGORITHM)
    return token, expires_at


def decode_refresh_token(token: str) -> dict | None:
    try:
        payload = jwt.decode(token, _settings.refresh_secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != "refresh" or "user_id" not in payload:
        return None
    return payload


def hash_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    Deterministic, so the stored hash doubles as the lookup key.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# User authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, password: str, email: str | None = None, phone: str | None = None) -> User | None:
    """Check an email-or-phone / password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown identifier or password-less account: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User when the credentials match, None otherwise. Account status
    is NOT checked here -- the caller reports inactive accounts separately,
    after the credentials were proven.
    """
    user = store.find_by_email_or_phone(email, phone)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _set_cookie(response, name: str, value: str, max_age: int) -> None:
    # httponly: JS cannot read the cookie (XSS mitigation).
    # samesite=lax: not sent on cross-site POST (CSRF mitigation).
    response.set_cookie(
        name,
        value=value,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=max_age,
        path="/",
    )


def set_auth_cookies(response, access_token: str, refresh_token: str, user_id: int, access_seconds: int = 0) -> None:
    """Write the access, refresh and user_id cookies on the response.

    max_age of the access cookie matches the JWT expiry so both expire together.
    """
    duration = access_seconds if access_seconds > 0 else _settings.access_token_expire_seconds
    _set_cookie(response, ACCESS_COOKIE, access_token, duration)
    _set_cookie(response, REFRESH_COOKIE, refresh_token, refresh_token_lifetime())
    _set_cookie(response, USER_ID_COOKIE, str(user_id), refresh_token_lifetime())


def clear_auth_cookies(response) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE, USER_ID_COOKIE):
        response.delete_cookie(name, path="/", httponly=True, samesite="lax", secure=_settings.secure_cookies)
