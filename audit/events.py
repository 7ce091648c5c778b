"""
audit/events.py -- log_audit_event(), the single entry point routes use.

Recording an audit entry must never break the action being audited: a
persistence failure is logged with its traceback and swallowed here, and only
here.

Layer rule: no imports from api/, web/, auth/, or commerce/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import Request

from audit.models import AuditLog
from audit.store import AuditStore

logger = logging.getLogger("backoffice.audit")


def get_client_ip(request: Request | None) -> str | None:
    """Best-effort client address: X-Forwarded-For (first hop), X-Real-IP, then the socket peer."""
    if request is None:
        return None
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    real_ip = request.headers.get("X-Real-IP", "")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def log_audit_event(
    store: AuditStore,
    user_id: int | None,
    action: str,
    resource: str,
    resource_id=None,
    details: dict | None = None,
    request: Request | None = None,
) -> int | None:
    """Record one audit entry. Returns the new entry ID, or None when recording failed."""
    entry = AuditLog(
        user_id=user_id,
        action=action,
        resource=resource,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details or {},
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent") if request is not None else None,
    )
    try:
        return store.record(entry)
    except SQLAlchemyError:
        logger.exception("Failed to record audit event %s on %s", action, resource)
        return None


def diff_changes(before: dict, updates: dict) -> dict:
    """Return {field: {"from": old, "to": new}} for every update that changes a value.

    Stored as the details of UPDATE_* events; the history views render it.
    """
    return {
        key: {"from": before.get(key), "to": value}
        for key, value in updates.items()
        if before.get(key) != value
    }
