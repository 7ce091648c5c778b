"""
auth/sessions.py -- Access/refresh token pair lifecycle.

A session is an (access JWT, refresh JWT) pair. The refresh token is persisted
as an HMAC hash (see auth.tokens.hash_token) so that:
  - logout can revoke it,
  - every refresh rotates it (the old token stops working after a short grace window),
  - a status change can revoke every session of a user.

Layer rule: no imports from api/, web/, audit/, or commerce/.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from auth.models import RefreshToken, User
from auth.store import UserStore
from auth.tokens import create_access_token, create_refresh_token, decode_refresh_token, hash_token

logger = logging.getLogger("backoffice.auth.sessions")


class InactiveAccountError(Exception):
    """The refresh token is valid but its owner is no longer ACTIVE."""


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    refresh_token: str
    access_expires_in: int  # seconds


# Seconds during which a just-rotated refresh token still yields the pair it
# was rotated into. Parallel requests from one browser all present the same
# cookie. Process-local.
ROTATION_GRACE_SECONDS = 30

_rotation_lock = threading.Lock()
# old token hash -> (monotonic deadline, user_id, pair issued for it)
_recent_rotations: dict[str, tuple[float, int, SessionTokens]] = {}


def issue_session(store: UserStore, user: User, access_seconds: int) -> SessionTokens:
    """Create a new token pair for user and persist the refresh token."""
    access = create_access_token(user, expire_seconds=access_seconds)
    refresh, expires_at = create_refresh_token(user.id)
    store.create_refresh_token(
        RefreshToken(
            user_id=user.id,
            token_hash=hash_token(refresh),
            expires_at=expires_at.isoformat(timespec="microseconds"),
        )
    )
    return SessionTokens(access_token=access, refresh_token=refresh, access_expires_in=access_seconds)


def rotate_refresh_token(store: UserStore, raw_token: str, access_seconds: int) -> tuple[User, SessionTokens] | None:
    """Exchange a valid refresh token for a new pair.

    Returns None when the JWT is invalid or expired, when no stored row
    matches it, or when the row belongs to another user. Raises
    InactiveAccountError when the owner is no longer ACTIVE. On success the
    stored row is replaced, so the presented token stops working once
    ROTATION_GRACE_SECONDS have passed. Inside that window it returns the
    pair it was already rotated into, as long as that pair is not revoked.
    """
    payload = decode_refresh_token(raw_token)
    if payload is None:
        return None
    old_hash = hash_token(raw_token)
    with _rotation_lock:
        _prune_rotations()
        if old_hash in _recent_rotations:
            return _replay_rotation(store, old_hash)

        stored = store.get_refresh_token(old_hash)
        if stored is None or stored.user_id != payload["user_id"]:
            return None
        user = store.get_by_id(stored.user_id)
        if user is None:
            return None
        if user.status != "ACTIVE":
            raise InactiveAccountError(user.status)

        access = create_access_token(user, expire_seconds=access_seconds)
        refresh, expires_at = create_refresh_token(user.id)
        new_hash = hash_token(refresh)
        if not store.replace_refresh_token(stored.id, old_hash, new_hash, expires_at.isoformat(timespec="microseconds")):
            # Revoked concurrently (logout in another tab)
            return None
        tokens = SessionTokens(access_token=access, refresh_token=refresh, access_expires_in=access_seconds)
        if ROTATION_GRACE_SECONDS > 0:
            _recent_rotations[old_hash] = (time.monotonic() + ROTATION_GRACE_SECONDS, user.id, tokens)
    logger.debug("Rotated refresh token for user_id=%s", user.id)
    return user, tokens


def _prune_rotations() -> None:
    now = time.monotonic()
    for token_hash in [h for h, (deadline, _, _) in _recent_rotations.items() if deadline <= now]:
        del _recent_rotations[token_hash]


def _replay_rotation(store: UserStore, old_hash: str) -> tuple[User, SessionTokens] | None:
    """Return the newest pair old_hash was rotated into. Caller holds _rotation_lock."""
    _, user_id, tokens = _recent_rotations[old_hash]
    token_hash = hash_token(tokens.refresh_token)
    while token_hash in _recent_rotations:
        _, user_id, tokens = _recent_rotations[token_hash]
        token_hash = hash_token(tokens.refresh_token)
    if store.get_refresh_token(token_hash) is None:
        return None
    user = store.get_by_id(user_id)
    if user is None:
        return None
    if user.status != "ACTIVE":
        raise InactiveAccountError(user.status)
    logger.debug("Replayed refresh rotation for user_id=%s", user.id)
    return user, tokens


def revoke_refresh_token(store: UserStore, raw_token: str | None) -> bool:
    """Delete the stored refresh token. Unknown or empty tokens are a no-op.

    A token rotated moments ago also revokes the pair it was rotated into.
    """
    if not raw_token:
        return False
    token_hash = hash_token(raw_token)
    revoked = store.delete_refresh_token(token_hash)
    with _rotation_lock:
        while token_hash in _recent_rotations:
            _, _, tokens = _recent_rotations.pop(token_hash)
            token_hash = hash_token(tokens.refresh_token)
            revoked = store.delete_refresh_token(token_hash) or revoked
    return revoked


def register_failed_login(store: UserStore, user: User, max_attempts: int) -> tuple[int, bool]:
    """Count one failed sign-in for user.

    An ACTIVE account is suspended, and its sessions revoked, once the
    consecutive failure count reaches max_attempts. A successful login resets
    the counter (UserStore.record_login).

    Returns (attempts, locked) where locked is True only on the call that
    suspended the account.
    """
    attempts = store.record_failed_login(user.id)
    if user.status == "ACTIVE" and attempts >= max_attempts:
        store.update_user(user.id, status="SUSPENDED")
        store.delete_user_refresh_tokens(user.id)
        logger.warning("Suspended user_id=%s after %d failed logins", user.id, attempts)
        return attempts, True
    return attempts, False
