"""Unit tests for auth/tokens.py -- bcrypt, JWT and credential checks.

Covers:
- Password hashing round trip and malformed hashes
- Access and refresh tokens cannot be swapped for each other
- Access token lifetime follows the session_timeout setting
- authenticate_user() by email (case-insensitive) and by phone
"""

from datetime import datetime, timedelta, timezone

from jose import jwt

from auth.models import User
from auth.store import UserStore
from auth.tokens import (
    access_token_lifetime,
    authenticate_user,
    create_access_token,
    create_refresh_token,
    decode_access_token,
    decode_refresh_token,
    hash_password,
    hash_token,
    verify_password,
)
from core.config import get_settings


def _store_with_user(**fields) -> tuple[UserStore, User]:
    store = UserStore("sqlite:///:memory:")
    uid = store.create_user(User(hashed_password=hash_password("correct-horse"), **fields))
    return store, store.get_by_id(uid)


class TestPasswords:
    def test_round_trip(self) -> None:
        hashed = hash_password("s3cret-pass")
        assert hashed != "s3cret-pass"
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("wrong", hashed)

    def test_malformed_hash_is_false_not_error(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestJwt:
    def test_access_token_claims(self) -> None:
        user = User(id=7, email="a@example.com", role="MANAGER")
        payload = decode_access_token(create_access_token(user, expire_seconds=60))
        assert payload["user_id"] == 7
        assert payload["role"] == "MANAGER"
        assert payload["sub"] == "a@example.com"
        assert payload["type"] == "access"

    def test_refresh_token_rejected_as_access(self) -> None:
        token, _ = create_refresh_token(7)
        assert decode_access_token(token) is None
        assert decode_refresh_token(token)["user_id"] == 7

    def test_access_token_rejected_as_refresh(self) -> None:
        token = create_access_token(User(id=7, email="a@example.com"))
        assert decode_refresh_token(token) is None

    def test_expired_token_rejected(self) -> None:
        expired = jwt.encode(
            {
                "user_id": 1,
                "role": "USER",
                "type": "access",
                "exp": datetime.now(timezone.utc) - timedelta(seconds=5),
            },
            get_settings().secret_key,
            algorithm="HS256",
        )
        assert decode_access_token(expired) is None

    def test_garbage_rejected(self) -> None:
        assert decode_access_token("not.a.jwt") is None

    def test_refresh_tokens_unique(self) -> None:
        assert create_refresh_token(1)[0] != create_refresh_token(1)[0]

    def test_hash_token_is_deterministic(self) -> None:
        assert hash_token("abc") == hash_token("abc")
        assert hash_token("abc") != hash_token("abd")
        assert len(hash_token("abc")) == 64


class TestLifetime:
    def test_session_timeout_minutes(self) -> None:
        assert access_token_lifetime(15) == 900

    def test_falls_back_to_settings(self) -> None:
        assert access_token_lifetime(None) == get_settings().access_token_expire_seconds
        assert access_token_lifetime(0) == get_settings().access_token_expire_seconds


class TestAuthenticateUser:
    def test_by_email_any_case(self) -> None:
        store, user = _store_with_user(email="jane@example.com")
        assert authenticate_user(store, "correct-horse", email="JANE@example.com").id == user.id

    def test_by_phone(self) -> None:
        store, user = _store_with_user(phone="+15550100")
        assert authenticate_user(store, "correct-horse", phone="+15550100").id == user.id

    def test_wrong_password(self) -> None:
        store, _ = _store_with_user(email="jane@example.com")
        assert authenticate_user(store, "battery-staple", email="jane@example.com") is None

    def test_unknown_user(self) -> None:
        store, _ = _store_with_user(email="jane@example.com")
        assert authenticate_user(store, "correct-horse", email="nobody@example.com") is None

    def test_passwordless_account_never_matches(self) -> None:
        store = UserStore("sqlite:///:memory:")
        store.create_user(User(email="oauth@example.com", oauth_provider="google", oauth_subject="1"))
        assert authenticate_user(store, "", email="oauth@example.com") is None

    def test_status_not_checked_here(self) -> None:
        store, user = _store_with_user(email="off@example.com", status="SUSPENDED")
        assert authenticate_user(store, "correct-horse", email="off@example.com").id == user.id
