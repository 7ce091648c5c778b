"""
auth/verification.py -- One-time codes: login OTP, email/phone verification, 2FA.

Codes live in the verification_tokens table and are single use: consume_code()
deletes the row it matched. Issuing a new code for the same identifier and
purpose replaces the outstanding one.

  login_otp           6 digits, 10 minutes
  phone_verification  6 digits, 10 minutes
  two_factor          6 digits, 10 minutes
  email_verification  URL-safe token, 24 hours (sent as a link)

Delivery (deliver_code) is a logging stub. There is no mail or SMS transport;
the code itself is only written to the log in DEBUG mode.

Layer rule: no imports from api/, web/, audit/, or commerce/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from auth.models import User, VerificationToken
from auth.store import UserStore, now_iso
from core.config import get_settings

logger = logging.getLogger("backoffice.auth.verification")

LOGIN_OTP = "login_otp"
EMAIL_VERIFICATION = "email_verification"
PHONE_VERIFICATION = "phone_verification"
TWO_FACTOR = "two_factor"

PURPOSES = (LOGIN_OTP, EMAIL_VERIFICATION, PHONE_VERIFICATION, TWO_FACTOR)


def _ttl(purpose: str) -> timedelta:
    cfg = get_settings()
    if purpose == EMAIL_VERIFICATION:
        return timedelta(hours=cfg.email_verification_expire_hours)
    return timedelta(minutes=cfg.otp_expire_minutes)


def generate_otp() -> str:
    """Return a 6-digit numeric code (leading zeros kept)."""
    return f"{secrets.randbelow(10**6):06d}"


def issue_code(store: UserStore, identifier: str, purpose: str) -> str:
    """Create and persist a fresh code for (identifier, purpose). Returns the raw code."""
    if purpose not in PURPOSES:
        raise ValueError(f"Unknown verification purpose: {purpose!r}")
    code = secrets.token_urlsafe(32) if purpose == EMAIL_VERIFICATION else generate_otp()
    expires_at = datetime.now(timezone.utc) + _ttl(purpose)
    store.create_verification_token(
        VerificationToken(
            identifier=identifier,
            token=code,
            purpose=purpose,
            expires_at=expires_at.isoformat(timespec="microseconds"),
        )
    )
    return code


def consume_code(
    store: UserStore, code: str, purpose: str, identifier: str | None = None
) -> VerificationToken | None:
    """Validate and burn a code.

    Returns the matched token (its identifier tells the caller whose code it
    was) or None when no unexpired code matches. identifier narrows the match
    when the caller already knows it (login OTP, 2FA).
    """
    if not code:
        return None
    token = store.find_verification_token(code, purpose, identifier)
    if token is None:
        return None
    store.delete_verification_token(token.id)
    return token


def deliver_code(identifier: str, code: str, purpose: str) -> None:
    """Hand a code to the (stub) delivery channel."""
    if get_settings().debug:
        logger.info("Verification code for %s (%s): %s", identifier, purpose, code)
    else:
        logger.info("Verification code issued for %s (%s)", identifier, purpose)


# ---------------------------------------------------------------------------
# Account verification state
# ---------------------------------------------------------------------------


def pending_verifications(user: User, app_settings: dict) -> list[str]:
    """Return the verification purposes this user still has to complete.

    Only identifiers the user actually registered count, and only when the
    site settings require them to be verified.
    """
    pending = []
    if user.email and app_settings.get("require_email_verification") and not user.email_verified_at:
        pending.append(EMAIL_VERIFICATION)
    if user.phone and app_settings.get("require_phone_verification") and not user.phone_verified_at:
        pending.append(PHONE_VERIFICATION)
    return pending


def send_verification_codes(store: UserStore, user: User, app_settings: dict) -> dict[str, str]:
    """Issue and deliver every code the user still needs. Returns {purpose: code}."""
    codes: dict[str, str] = {}
    for purpose in pending_verifications(user, app_settings):
        identifier = user.email if purpose == EMAIL_VERIFICATION else user.phone
        code = issue_code(store, identifier, purpose)
        deliver_code(identifier, code, purpose)
        codes[purpose] = code
    return codes


def mark_verified(store: UserStore, user: User, purpose: str, app_settings: dict) -> User:
    """Stamp the verified-at column for purpose and activate the account if nothing is pending.

    Only PENDING_VERIFICATION accounts are promoted. Suspended or inactive
    accounts stay as they are.
    """
    field = "email_verified_at" if purpose == EMAIL_VERIFICATION else "phone_verified_at"
    setattr(user, field, now_iso())
    fields = {field: getattr(user, field)}
    if user.status == "PENDING_VERIFICATION" and not pending_verifications(user, app_settings):
        user.status = "ACTIVE"
        fields["status"] = "ACTIVE"
    store.update_user(user.id, **fields)
    return store.get_by_id(user.id) or user
