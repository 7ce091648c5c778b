"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores and routes do the work.

Layer rule: no imports from api/, web/, audit/, or commerce/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """An identity that can sign in to the back office.

    A user has an email, a phone, or both. hashed_password is None for users
    who only sign in via OAuth or OTP. oauth_provider / oauth_subject are
    filled in on the first OAuth login (see UserStore.link_oauth).

    email_verified_at / phone_verified_at are ISO 8601 timestamps, None until
    the matching verification token is consumed.
    """

    role: str = "USER"  # SUPER_ADMIN, ADMIN, MANAGER, USER, GUEST
    status: str = "ACTIVE"  # ACTIVE, INACTIVE, SUSPENDED, PENDING_VERIFICATION
    id: int | None = None
    email: str | None = None
    phone: str | None = None
    hashed_password: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    avatar: str | None = None
    email_verified_at: str | None = None
    phone_verified_at: str | None = None
    two_factor_enabled: bool = False
    oauth_provider: str | None = None  # "google", "apple"
    oauth_subject: str | None = None
    failed_login_attempts: int = 0
    last_login: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def identifier(self) -> str:
        """The address codes are delivered to: email first, then phone."""
        return self.email or self.phone or ""

    @property
    def display_name(self) -> str:
        full = " ".join(p for p in (self.first_name, self.last_name) if p)
        return full or self.identifier


@dataclass
class VerificationToken:
    """A single-use code bound to an identifier (email or phone) and a purpose.

    purpose separates login OTPs from verification and 2FA codes so a code
    issued for one flow can never be replayed in another.
    """

    identifier: str
    token: str
    purpose: str  # login_otp, email_verification, phone_verification, two_factor
    expires_at: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class RefreshToken:
    """A persisted refresh token.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_jwt). The raw token only ever
    lives in the client's cookie / response body.
    """

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None
