"""
api/routes/audit_logs.py -- Audit trail REST endpoints.

Routes:
  GET  /api/audit-logs   -- filter/sort/paginate (admin:read)
  POST /api/audit-logs   -- record a manual entry (admin:write)

Reading the log is itself audited (READ_AUDIT_LOGS) and so is a manual entry
(CREATE_AUDIT_LOG).

entity_history() is shared with the products and orders routers for their
/{id}/history endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import AuditLogCreate, AuditLogOut, PaginationMeta, SortOrderEnum, success_envelope
from audit.events import log_audit_event
from audit.models import AuditLog
from audit.store import AuditStore, parse_bound
from auth.dependencies import require_permission
from auth.models import User
from auth.store import UserStore

router = APIRouter()


def _fail(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _with_users(user_store: UserStore, logs: list[AuditLog]) -> list[AuditLogOut]:
    """Attach the acting user to each entry with a single user lookup."""
    users = user_store.get_many({log.user_id for log in logs if log.user_id is not None})
    return [AuditLogOut.from_log(log, users.get(log.user_id)) for log in logs]


def entity_history(request: Request, resource: str, resource_id: int) -> list[AuditLogOut]:
    """Return the audit entries about one entity, oldest first."""
    audit_store: AuditStore = request.app.state.audit_store
    return _with_users(request.app.state.user_store, audit_store.history(resource, str(resource_id)))


@router.get("/audit-logs")
def list_audit_logs(
    request: Request,
    action: str = Query(default="", max_length=100),
    resource: str = Query(default="", max_length=100),
    user_id: Optional[int] = None,
    start_date: Optional[str] = Query(default=None, max_length=40),
    end_date: Optional[str] = Query(default=None, max_length=40),
    sort_by: str = Query(default="timestamp", max_length=30),
    sort_order: SortOrderEnum = SortOrderEnum.desc,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    current_user: User = Depends(require_permission("admin", "read")),
) -> dict:
    audit_store: AuditStore = request.app.state.audit_store
    try:
        start = parse_bound(start_date, end=False)
        end = parse_bound(end_date, end=True)
    except ValueError as exc:
        raise _fail(400, "invalid_date", "start_date and end_date must be ISO 8601 dates.") from exc
    try:
        logs, total = audit_store.list_logs(
            action=action,
            resource=resource,
            user_id=user_id,
            start_date=start,
            end_date=end,
            sort_by=sort_by,
            sort_order=sort_order.value,
            page=page,
            limit=limit,
        )
    except ValueError as exc:
        raise _fail(400, "invalid_sort", str(exc)) from exc

    log_audit_event(
        audit_store,
        current_user.id,
        "READ_AUDIT_LOGS",
        "AuditLogs",
        None,
        {
            "page": page,
            "limit": limit,
            "filters": {
                "action": action,
                "resource": resource,
                "user_id": user_id,
                "start_date": start_date,
                "end_date": end_date,
            },
        },
        request,
    )
    return success_envelope(
        _with_users(request.app.state.user_store, logs),
        pagination=PaginationMeta.build(page, limit, total),
    )


@router.post("/audit-logs", status_code=201)
def create_audit_log(
    request: Request,
    body: AuditLogCreate,
    current_user: User = Depends(require_permission("admin", "write")),
) -> dict:
    """Record a manual entry, e.g. for an out-of-band system event.

    target_user_id attributes the entry to another user; it defaults to the caller.
    """
    if not body.action or not body.resource:
        raise _fail(400, "missing_fields", "Action and resource are required.")

    user_store: UserStore = request.app.state.user_store
    audit_store: AuditStore = request.app.state.audit_store
    subject_id = body.target_user_id or current_user.id
    if body.target_user_id is not None and user_store.get_by_id(body.target_user_id) is None:
        raise _fail(404, "user_not_found", "Target user not found.")

    log_id = log_audit_event(
        audit_store, subject_id, body.action, body.resource, body.resource_id, body.details, request
    )
    if log_id is None:
        raise _fail(500, "internal_error", "Failed to record audit log.")
    log_audit_event(
        audit_store,
        current_user.id,
        "CREATE_AUDIT_LOG",
        "AuditLog",
        log_id,
        {"action": body.action, "resource": body.resource},
        request,
    )
    entry = audit_store.get(log_id)
    return success_envelope(
        AuditLogOut.from_log(entry, user_store.get_by_id(subject_id)),
        message="Audit log created successfully",
    )
