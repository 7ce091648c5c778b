"""
audit/store.py -- SQLAlchemy Core persistence layer for the audit trail.

Pattern: Repository + Data Mapper, same as auth/store.py. The audit_logs table
is append-only: there is no update or delete method.

details is stored as JSON text. Anything json.dumps cannot encode natively is
written with str() so recording an event never fails on an odd value.

Layer rule: no imports from api/, web/, auth/, or commerce/. core/ is allowed.
"""

from __future__ import annotations

import json
from datetime import date, datetime, time, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine

from audit.models import AuditLog
from core.config import get_settings

LOG_SORT_FIELDS = frozenset({"timestamp", "action", "resource", "user_id"})

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, index=True),
    Column("action", String(100), nullable=False, index=True),
    Column("resource", String(100), nullable=False),
    Column("resource_id", String(100)),
    Column("details", Text),  # JSON object
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("timestamp", String(32), nullable=False, index=True),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def parse_bound(value: str | None, end: bool) -> str | None:
    """Normalize a date or datetime filter value to a comparable ISO timestamp.

    A bare date covers the whole day: start 2024-01-31 means from 00:00,
    end 2024-01-31 means up to 23:59:59.999999 (UTC).
    Raises ValueError for anything that is not ISO 8601.
    """
    if not value:
        return None
    if len(value) == 10:
        moment = datetime.combine(date.fromisoformat(value), time.max if end else time.min, tzinfo=timezone.utc)
    else:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="microseconds")


class AuditStore:
    """Repository for AuditLog entries.

    Usage:
        store = AuditStore()
        store.record(AuditLog(action="LOGIN", resource="Auth", user_id=1))
        logs, total = store.list_logs(action="login", page=1, limit=50)
    """

    def __init__(self, db_url: str | None = None) -> None:
        url = db_url or get_settings().database_url
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine: Engine = create_engine(url, connect_args=connect_args)
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def record(self, log: AuditLog) -> int:
        """Append one entry and return its ID. The timestamp is set here."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    user_id=log.user_id,
                    action=log.action,
                    resource=log.resource,
                    resource_id=log.resource_id,
                    details=json.dumps(log.details or {}, default=str),
                    ip_address=log.ip_address,
                    user_agent=log.user_agent,
                    timestamp=log.timestamp or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get(self, log_id: int) -> AuditLog | None:
        with self.engine.connect() as conn:
            row = conn.execute(_audit_logs.select().where(_audit_logs.c.id == log_id)).fetchone()
        return _row_to_log(row) if row is not None else None

    def list_logs(
        self,
        action: str = "",
        resource: str = "",
        user_id: int | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
        sort_by: str = "timestamp",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[AuditLog], int]:
        """Return one page of entries plus the total match count.

        action / resource: case-insensitive substring match.
        start_date / end_date: inclusive ISO 8601 bounds on timestamp.
        Raises ValueError for a sort_by outside LOG_SORT_FIELDS.
        """
        if sort_by not in LOG_SORT_FIELDS:
            raise ValueError(f"Cannot sort audit logs by {sort_by!r}")
        conditions = []
        if action:
            conditions.append(func.lower(_audit_logs.c.action).contains(action.lower(), autoescape=True))
        if resource:
            conditions.append(func.lower(_audit_logs.c.resource).contains(resource.lower(), autoescape=True))
        if user_id is not None:
            conditions.append(_audit_logs.c.user_id == user_id)
        if start_date:
            conditions.append(_audit_logs.c.timestamp >= start_date)
        if end_date:
            conditions.append(_audit_logs.c.timestamp <= end_date)

        column = _audit_logs.c[sort_by]
        order = column.asc() if sort_order == "asc" else column.desc()
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_audit_logs).where(*conditions)).scalar() or 0
            rows = conn.execute(
                _audit_logs.select()
                .where(*conditions)
                .order_by(order, _audit_logs.c.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).fetchall()
        return [_row_to_log(r) for r in rows], total

    def history(self, resource: str, resource_id: str) -> list[AuditLog]:
        """Return every entry about one entity, oldest first (the change history)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_logs.select()
                .where((_audit_logs.c.resource == resource) & (_audit_logs.c.resource_id == str(resource_id)))
                .order_by(_audit_logs.c.timestamp.asc(), _audit_logs.c.id.asc())
            ).fetchall()
        return [_row_to_log(r) for r in rows]

    def recent(self, limit: int = 10) -> list[AuditLog]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_logs.select().order_by(_audit_logs.c.timestamp.desc(), _audit_logs.c.id.desc()).limit(limit)
            ).fetchall()
        return [_row_to_log(r) for r in rows]

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_audit_logs)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


def _row_to_log(row) -> AuditLog:
    return AuditLog(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        resource=row.resource,
        resource_id=row.resource_id,
        details=json.loads(row.details) if row.details else {},
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        timestamp=row.timestamp,
    )
