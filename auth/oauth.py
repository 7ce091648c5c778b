"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration.

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with both client ID and secret
configured get registered -- the login template renders buttons dynamically
based on get_enabled_providers().

Security notes:
  [H1] Email verification is mandatory. get_oauth_user_info() raises ValueError
       if the provider does not confirm the email is verified. An unverified
       email could belong to an attacker who typed a victim's address.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware.

Supported providers (both via OIDC discovery):
  google -- Authorization code flow.
  apple  -- Authorization code flow, response_mode=form_post. Apple sends the
            callback as a POST and encodes email_verified as the string "true".

Layer rule: no imports from api/, web/, audit/, or commerce/. Import from core/
is allowed -- core/ is the kernel layer.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth
from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.store import UserStore, now_iso
from core.config import get_settings

logger = logging.getLogger("backoffice.auth.oauth")

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

# Google -- OIDC discovery
if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Google OAuth provider registered")

# Apple -- OIDC discovery; client_secret is the pre-generated ES256 JWT
if _cfg.apple_client_id and _cfg.apple_client_secret:
    oauth.register(
        name="apple",
        client_id=_cfg.apple_client_id,
        client_secret=_cfg.apple_client_secret,
        server_metadata_url="https://appleid.apple.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email name", "token_endpoint_auth_method": "client_secret_post"},
        authorize_params={"response_mode": "form_post"},
    )
    logger.info("Apple OAuth provider registered")


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers() -> list[dict]:
    """Return metadata for every configured OAuth provider.

    Used by GET /api/auth/providers and the login template.

    Returns list of {"name": str, "label": str} dicts.
    """
    cfg = get_settings()
    providers: list[dict] = []
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if cfg.apple_client_id and cfg.apple_client_secret:
        providers.append({"name": "apple", "label": "Apple"})
    return providers


# ---------------------------------------------------------------------------
# Email / subject extraction [H1]
# ---------------------------------------------------------------------------


def _is_verified(value) -> bool:
    # Apple sends "true"/"false" strings, Google sends booleans.
    if isinstance(value, str):
        return value.lower() == "true"
    return value is True


def get_oauth_user_info(provider: str, token: dict) -> tuple[str, str, dict]:
    """Extract (email, subject_id, profile) from a provider token response.

    profile holds first_name / last_name / avatar when the provider sent them.

    Raises:
        ValueError: If the provider is unknown or a verified email cannot be
            confirmed. The caller must treat this as an authentication failure.
    """
    if provider not in ("google", "apple"):
        raise ValueError(f"Unknown OAuth provider: {provider!r}")

    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if not _is_verified(userinfo.get("email_verified", False)):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    profile = {
        "first_name": userinfo.get("given_name"),
        "last_name": userinfo.get("family_name"),
        "avatar": userinfo.get("picture"),
    }
    return email, subject_id, profile


# ---------------------------------------------------------------------------
# Account resolution
# ---------------------------------------------------------------------------


class OAuthLoginError(Exception):
    """Raised when a verified OAuth identity cannot be signed in.

    code is one of the /login?error= keys: not_provisioned, account_disabled.
    """

    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


def resolve_oauth_user(
    store: UserStore,
    provider: str,
    email: str,
    subject: str,
    profile: dict,
    allow_registration: bool,
) -> User:
    """Map a verified OAuth identity to a local ACTIVE user.

    Order:
      1. (provider, subject) -- returning user already linked.
      2. email -- first OAuth login of an existing account; link it. The
         provider verified the email, so email_verified_at is stamped too.
      3. unknown email -- create an ACTIVE USER when registration is allowed,
         otherwise not_provisioned.

    Raises OAuthLoginError when the account cannot be used.
    """
    user = store.get_by_oauth(provider, subject)

    if user is None:
        user = store.get_by_email(email)
        if user is not None:
            if user.oauth_subject is not None and user.oauth_provider == provider:
                # Same email, different subject at the same provider
                raise OAuthLoginError("not_provisioned")
            store.update_user(
                user.id,
                oauth_provider=provider,
                oauth_subject=subject,
                email_verified_at=user.email_verified_at or now_iso(),
            )
            user = store.get_by_id(user.id)
        elif not allow_registration:
            raise OAuthLoginError("not_provisioned")
        else:
            new_user = User(
                email=email,
                role="USER",
                status="ACTIVE",
                first_name=profile.get("first_name"),
                last_name=profile.get("last_name"),
                avatar=profile.get("avatar"),
                email_verified_at=now_iso(),
                oauth_provider=provider,
                oauth_subject=subject,
            )
            try:
                user_id = store.create_user(new_user)
            except IntegrityError:
                # Concurrent first login for the same email
                raise OAuthLoginError("not_provisioned") from None
            user = store.get_by_id(user_id)
            logger.info("Provisioned new user via %s OAuth: user_id=%s", provider, user_id)

    if user is None or user.status != "ACTIVE":
        raise OAuthLoginError("account_disabled")
    return user
