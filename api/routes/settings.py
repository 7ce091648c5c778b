"""
api/routes/settings.py -- Site settings REST endpoints.

Routes:
  GET   /api/settings   -- current settings (settings:read)
  PUT   /api/settings   -- replace every field (settings:write)
  PATCH /api/settings   -- change only the supplied fields (settings:write)

The settings live in the single-row app_settings table (see auth/store.py).
Changes take effect on the next request: max_login_attempts on the next failed
login, session_timeout on the next token issued, maintenance_mode on the next
authenticated request.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import AppSettingsModel, AppSettingsPatch, success_envelope
from audit.events import diff_changes, log_audit_event
from auth.dependencies import require_permission
from auth.models import User
from auth.store import UserStore

router = APIRouter()


def _save(request: Request, current_user: User, updates: dict) -> dict:
    store: UserStore = request.app.state.user_store
    before = store.get_app_settings()
    after = store.update_app_settings(**updates)
    log_audit_event(
        request.app.state.audit_store,
        current_user.id,
        "UPDATE_SETTINGS",
        "Settings",
        None,
        {"changes": diff_changes(before, updates)},
        request,
    )
    return success_envelope(AppSettingsModel(**after), message="Settings updated successfully")


@router.get("/settings")
def get_settings_route(
    request: Request,
    current_user: User = Depends(require_permission("settings", "read")),
) -> dict:
    store: UserStore = request.app.state.user_store
    log_audit_event(request.app.state.audit_store, current_user.id, "READ_SETTINGS", "Settings", None, None, request)
    return success_envelope(AppSettingsModel(**store.get_app_settings()))


@router.put("/settings")
def replace_settings(
    request: Request,
    body: AppSettingsModel,
    current_user: User = Depends(require_permission("settings", "write")),
) -> dict:
    """Replace every setting. Omitted optional fields fall back to their defaults."""
    return _save(request, current_user, body.model_dump())


@router.patch("/settings")
def patch_settings(
    request: Request,
    body: AppSettingsPatch,
    current_user: User = Depends(require_permission("settings", "write")),
) -> dict:
    updates = body.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    return _save(request, current_user, updates)
