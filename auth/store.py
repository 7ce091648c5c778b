"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. UserStore is the repository; the _row_to_*
functions are the mappers. Route and dependency code never touches SQL
directly.

Tables:
  users                -- accounts (email and/or phone, role, status, 2FA flag)
  verification_tokens  -- single-use OTP / verification / 2FA codes
  refresh_tokens       -- HMAC hashes of issued refresh JWTs
  app_settings         -- single-row site settings (id = 1)

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(oauth_provider, oauth_subject) is enforced in code rather than SQL
  because SQLite treats two NULL values as distinct in UNIQUE constraints.
  get_by_oauth() + link_oauth() handle this.

Layer rule: no imports from api/, web/, audit/, or commerce/. core/ is allowed.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import RefreshToken, User, VerificationToken
from core.config import get_settings

ADMIN_ROLES = ("SUPER_ADMIN", "ADMIN")

# Columns that list_users() may sort on. Anything else is rejected so user input
# never reaches ORDER BY.
USER_SORT_FIELDS = frozenset(
    {"created_at", "updated_at", "email", "first_name", "last_name", "role", "status", "last_login"}
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True),
    Column("phone", String(32), unique=True),
    Column("hashed_password", Text),  # NULL for OAuth/OTP-only users
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("avatar", Text),
    Column("role", String(20), nullable=False, server_default="USER"),
    Column("status", String(30), nullable=False, server_default="ACTIVE"),
    Column("email_verified_at", String(32)),
    Column("phone_verified_at", String(32)),
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("oauth_provider", String(30)),
    Column("oauth_subject", Text),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_verification_tokens = Table(
    "verification_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(255), nullable=False),
    Column("token", String(128), nullable=False),
    Column("purpose", String(30), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("identifier", "token", "purpose", name="uq_identifier_token_purpose"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_app_settings = Table(
    "app_settings",
    _metadata,
    Column("id", Integer, primary_key=True),
    Column("site_name", String(255), nullable=False),
    Column("site_description", Text),
    Column("contact_email", String(255), nullable=False),
    Column("contact_phone", String(32)),
    Column("maintenance_mode", Boolean, nullable=False),
    Column("allow_registration", Boolean, nullable=False),
    Column("require_email_verification", Boolean, nullable=False),
    Column("require_phone_verification", Boolean, nullable=False),
    Column("max_login_attempts", Integer, nullable=False),
    Column("session_timeout", Integer, nullable=False),
    CheckConstraint("id = 1", name="ck_app_settings_single_row"),
)

APP_SETTINGS_KEYS = frozenset(c.name for c in _app_settings.columns if c.name != "id")


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite tweaks every store needs."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _settings_seed() -> dict:
    cfg = get_settings()
    return {key: getattr(cfg, key) for key in APP_SETTINGS_KEYS}


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, VerificationToken, RefreshToken and app settings.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="a@example.com", role="ADMIN",
                                     hashed_password=hash_password("secret123")))
        user = store.get_by_email("a@example.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)
        self._ensure_app_settings()

    def _ensure_app_settings(self) -> None:
        """Seed the single app_settings row from Settings if it does not exist.

        The CHECK (id = 1) constraint enforces the single-row invariant at the
        DB level. Safe to call on every startup.
        """
        with self.engine.connect() as conn:
            exists = conn.execute(select(_app_settings.c.id).where(_app_settings.c.id == 1)).first()
            if exists is None:
                conn.execute(_app_settings.insert().values(id=1, **_settings_seed()))
                conn.commit()

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists (first-run detection)."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email or phone already
        exists. Callers translate that into a 409.
        """
        now = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    phone=user.phone,
                    hashed_password=user.hashed_password,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    avatar=user.avatar,
                    role=user.role,
                    status=user.status,
                    email_verified_at=user.email_verified_at,
                    phone_verified_at=user.phone_verified_at,
                    two_factor_enabled=1 if user.two_factor_enabled else 0,
                    oauth_provider=user.oauth_provider,
                    oauth_subject=user.oauth_subject,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_many(self, user_ids: set[int]) -> dict[int, User]:
        """Return {id: User} for the given ids in one query (missing ids are absent)."""
        if not user_ids:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().where(_users.c.id.in_(user_ids))).fetchall()
        return {row.id: _row_to_user(row) for row in rows}

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(func.lower(_users.c.email) == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_phone(self, phone: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.phone == phone)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_email_or_phone(self, email: str | None, phone: str | None) -> User | None:
        """Return the first user matching either identifier. Empty identifiers are ignored."""
        clauses = []
        if email:
            clauses.append(func.lower(_users.c.email) == email.lower())
        if phone:
            clauses.append(_users.c.phone == phone)
        if not clauses:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(or_(*clauses)).order_by(_users.c.id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_oauth(self, provider: str, subject: str) -> User | None:
        """Look up a user by (oauth_provider, oauth_subject) pair."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.oauth_provider == provider) & (_users.c.oauth_subject == subject))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def link_oauth(self, user_id: int, provider: str, subject: str) -> None:
        """Associate an OAuth identity with an existing user record."""
        self.update_user(user_id, oauth_provider=provider, oauth_subject=subject)

    def list_users(
        self,
        search: str = "",
        role: str = "",
        status: str = "",
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[User], int]:
        """Return one page of users plus the total match count.

        search is a case-insensitive substring match on email, first_name and
        last_name. Raises ValueError for a sort_by outside USER_SORT_FIELDS.
        """
        if sort_by not in USER_SORT_FIELDS:
            raise ValueError(f"Cannot sort users by {sort_by!r}")
        conditions = []
        if search:
            term = search.lower()
            conditions.append(
                or_(
                    func.lower(_users.c.email).contains(term, autoescape=True),
                    func.lower(_users.c.first_name).contains(term, autoescape=True),
                    func.lower(_users.c.last_name).contains(term, autoescape=True),
                )
            )
        if role:
            conditions.append(_users.c.role == role)
        if status:
            conditions.append(_users.c.status == status)

        column = _users.c[sort_by]
        order = column.asc() if sort_order == "asc" else column.desc()
        query = _users.select().where(*conditions).order_by(order, _users.c.id)
        count_query = select(func.count()).select_from(_users).where(*conditions)

        with self.engine.connect() as conn:
            total = conn.execute(count_query).scalar() or 0
            rows = conn.execute(query.offset((page - 1) * limit).limit(limit)).fetchall()
        return [_row_to_user(r) for r in rows], total

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user and stamp updated_at.

        Booleans (two_factor_enabled) are converted to int for SQLite.
        Returns True if a row was updated, False if user_id was not found.
        """
        if "two_factor_enabled" in fields:
            fields["two_factor_enabled"] = 1 if fields["two_factor_enabled"] else 0
        fields["updated_at"] = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        """Return the number of ACTIVE users holding SUPER_ADMIN or ADMIN.

        Used to refuse demoting, deactivating or deleting the last admin.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where(_users.c.role.in_(ADMIN_ROLES) & (_users.c.status == "ACTIVE"))
            ).scalar()
        return result or 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user and their refresh tokens.

        Callers must check last-admin invariants before calling this method.
        """
        with self.engine.connect() as conn:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    def record_login(self, user_id: int) -> None:
        """Stamp last_login and reset the failed attempt counter after a successful login."""
        now = now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(last_login=now, failed_login_attempts=0, updated_at=now)
            )
            conn.commit()

    def record_failed_login(self, user_id: int) -> int:
        """Increment and return the consecutive failed login counter."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=_users.c.failed_login_attempts + 1)
            )
            attempts = conn.execute(
                select(_users.c.failed_login_attempts).where(_users.c.id == user_id)
            ).scalar()
            conn.commit()
        return attempts or 0

    def signups_by_month(self) -> dict[str, int]:
        """Return {"YYYY-MM": new user count} for the dashboard growth chart."""
        month = func.substr(_users.c.created_at, 1, 7)
        with self.engine.connect() as conn:
            rows = conn.execute(select(month, func.count()).group_by(month).order_by(month)).fetchall()
        return {r[0]: r[1] for r in rows}

    def role_distribution(self) -> dict[str, int]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(_users.c.role, func.count()).group_by(_users.c.role)).fetchall()
        return {r[0]: r[1] for r in rows}

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def create_verification_token(self, token: VerificationToken) -> int:
        """Store a code, replacing any outstanding code for the same identifier and purpose."""
        with self.engine.connect() as conn:
            conn.execute(
                _verification_tokens.delete().where(
                    (_verification_tokens.c.identifier == token.identifier)
                    & (_verification_tokens.c.purpose == token.purpose)
                )
            )
            result = conn.execute(
                _verification_tokens.insert().values(
                    identifier=token.identifier,
                    token=token.token,
                    purpose=token.purpose,
                    expires_at=token.expires_at,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_verification_token(
        self, token: str, purpose: str, identifier: str | None = None
    ) -> VerificationToken | None:
        """Return the unexpired token matching (token, purpose[, identifier]) or None."""
        conditions = [
            _verification_tokens.c.token == token,
            _verification_tokens.c.purpose == purpose,
            _verification_tokens.c.expires_at > now_iso(),
        ]
        if identifier is not None:
            conditions.append(_verification_tokens.c.identifier == identifier)
        with self.engine.connect() as conn:
            row = conn.execute(
                _verification_tokens.select().where(*conditions).order_by(_verification_tokens.c.id.desc())
            ).fetchone()
        return _row_to_verification_token(row) if row is not None else None

    def delete_verification_token(self, token_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_verification_tokens.delete().where(_verification_tokens.c.id == token_id))
            conn.commit()
        return result.rowcount > 0

    def purge_expired_tokens(self) -> int:
        """Delete expired verification and refresh tokens. Returns rows removed."""
        now = now_iso()
        with self.engine.connect() as conn:
            removed = conn.execute(
                _verification_tokens.delete().where(_verification_tokens.c.expires_at <= now)
            ).rowcount
            removed += conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= now)).rowcount
            conn.commit()
        return removed

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=token.expires_at,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        """Return the unexpired refresh token row for this hash, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(
                    (_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.expires_at > now_iso())
                )
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def replace_refresh_token(self, token_id: int, old_hash: str, token_hash: str, expires_at: str) -> bool:
        """Rotate a refresh token in place.

        Only swaps while the row still holds old_hash. Returns False if the row
        vanished or was already rotated.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == token_id) & (_refresh_tokens.c.token_hash == old_hash))
                .values(token_hash=token_hash, expires_at=expires_at)
            )
            conn.commit()
        return result.rowcount > 0

    def delete_refresh_token(self, token_hash: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token_hash == token_hash))
            conn.commit()
        return result.rowcount > 0

    def delete_user_refresh_tokens(self, user_id: int) -> int:
        """Revoke every session of a user (status change, password reset)."""
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # App settings
    # ------------------------------------------------------------------

    def get_app_settings(self) -> dict:
        """Return the app_settings row as a dict (without the id column)."""
        with self.engine.connect() as conn:
            row = conn.execute(_app_settings.select().where(_app_settings.c.id == 1)).fetchone()
        if row is None:
            # Should never happen; _ensure_app_settings() seeds this row.
            return _settings_seed()
        data = dict(row._mapping)
        data.pop("id", None)
        return data

    def update_app_settings(self, **kwargs) -> dict:
        """Update one or more app_settings fields and return the new row.

        Only keys in APP_SETTINGS_KEYS are accepted. Unknown keys raise
        ValueError rather than being silently ignored.
        """
        unknown = set(kwargs) - APP_SETTINGS_KEYS
        if unknown:
            raise ValueError(f"Unknown app_settings keys: {sorted(unknown)!r}")
        if kwargs:
            with self.engine.connect() as conn:
                conn.execute(_app_settings.update().where(_app_settings.c.id == 1).values(**kwargs))
                conn.commit()
        return self.get_app_settings()

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        phone=row.phone,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        avatar=row.avatar,
        role=row.role,
        status=row.status,
        email_verified_at=row.email_verified_at,
        phone_verified_at=row.phone_verified_at,
        two_factor_enabled=bool(row.two_factor_enabled),
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        failed_login_attempts=row.failed_login_attempts or 0,
        last_login=row.last_login,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_verification_token(row) -> VerificationToken:
    return VerificationToken(
        id=row.id,
        identifier=row.identifier,
        token=row.token,
        purpose=row.purpose,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )
