"""
api/routes/users.py -- User administration REST endpoints.

Routes:
  GET    /api/users          -- search/filter/sort/paginate (users:read)
  POST   /api/users          -- create an account (users:write)
  GET    /api/users/{id}     -- one user (users:read)
  PATCH  /api/users/{id}     -- update profile, role, status, password (users:write)
  DELETE /api/users/{id}     -- delete (users:delete)

Security:
  [M4] PATCH/DELETE block self-deactivation, self-deletion and removing the
       last active SUPER_ADMIN/ADMIN (no recovery path without DB access).
  Only a SUPER_ADMIN may grant SUPER_ADMIN or modify/delete a SUPER_ADMIN.
  Deactivating or suspending a user revokes all of their refresh tokens.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    PaginationMeta,
    RoleEnum,
    SortOrderEnum,
    UserCreate,
    UserOut,
    UserPatch,
    UserStatusEnum,
    success_envelope,
)
from audit.events import diff_changes, log_audit_event
from auth.dependencies import require_permission
from auth.models import User
from auth.store import ADMIN_ROLES, UserStore
from auth.tokens import hash_password

router = APIRouter()


def _fail(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _get_or_404(store: UserStore, user_id: int) -> User:
    user = store.get_by_id(user_id)
    if user is None:
        raise _fail(404, "not_found", "User not found.")
    return user


def _guard_super_admin(current_user: User, target: User, new_role: Optional[str] = None) -> None:
    if current_user.role == "SUPER_ADMIN":
        return
    if target.role == "SUPER_ADMIN" or new_role == "SUPER_ADMIN":
        raise _fail(403, "forbidden", "Only a super admin can manage super admin accounts.")


def _is_active_admin(user: User) -> bool:
    return user.role in ADMIN_ROLES and user.status == "ACTIVE"


@router.get("/users")
def list_users(
    request: Request,
    search: str = Query(default="", max_length=100),
    role: Optional[RoleEnum] = None,
    status: Optional[UserStatusEnum] = None,
    sort_by: str = Query(default="created_at", max_length=30),
    sort_order: SortOrderEnum = SortOrderEnum.desc,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(require_permission("users", "read")),
) -> dict:
    store: UserStore = request.app.state.user_store
    try:
        users, total = store.list_users(
            search=search,
            role=role.value if role else "",
            status=status.value if status else "",
            sort_by=sort_by,
            sort_order=sort_order.value,
            page=page,
            limit=limit,
        )
    except ValueError as exc:
        raise _fail(400, "invalid_sort", str(exc)) from exc

    log_audit_event(
        request.app.state.audit_store,
        current_user.id,
        "READ_USERS",
        "Users",
        None,
        {
            "page": page,
            "limit": limit,
            "search": search,
            "role": role.value if role else None,
            "status": status.value if status else None,
        },
        request,
    )
    return success_envelope(
        [UserOut.from_user(u) for u in users],
        pagination=PaginationMeta.build(page, limit, total),
    )


@router.post("/users", status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    current_user: User = Depends(require_permission("users", "write")),
) -> dict:
    """Create an account directly (no verification step). Duplicate email or phone -> 409."""
    store: UserStore = request.app.state.user_store
    if body.role == RoleEnum.SUPER_ADMIN and current_user.role != "SUPER_ADMIN":
        raise _fail(403, "forbidden", "Only a super admin can create super admin accounts.")

    email = body.email.lower()
    if store.find_by_email_or_phone(email, body.phone) is not None:
        raise _fail(409, "user_exists", "User with this email or phone already exists.")

    new_user = User(
        email=email,
        phone=body.phone,
        hashed_password=hash_password(body.password),
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role.value,
        status=body.status.value,
    )
    try:
        user_id = store.create_user(new_user)
    except IntegrityError as exc:
        raise _fail(409, "user_exists", "User with this email or phone already exists.") from exc

    created = store.get_by_id(user_id)
    log_audit_event(
        request.app.state.audit_store,
        current_user.id,
        "CREATE_USER",
        "User",
        user_id,
        {"email": email, "role": new_user.role, "status": new_user.status},
        request,
    )
    return success_envelope(UserOut.from_user(created), message="User created successfully")


@router.get("/users/{user_id}")
def get_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_permission("users", "read")),
) -> dict:
    store: UserStore = request.app.state.user_store
    user = _get_or_404(store, user_id)
    log_audit_event(request.app.state.audit_store, current_user.id, "READ_USER", "User", user_id, None, request)
    return success_envelope(UserOut.from_user(user))


@router.patch("/users/{user_id}")
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: User = Depends(require_permission("users", "write")),
) -> dict:
    """Update any subset of profile, role, status and password.

    [M4] Prevents:
      - Self-deactivation (admin accidentally locking themselves out).
      - Demoting or deactivating the last active admin.
    """
    store: UserStore = request.app.state.user_store
    target = _get_or_404(store, user_id)
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise _fail(400, "no_changes", "No fields to update.")

    new_role = changes.get("role").value if changes.get("role") else None
    new_status = changes.get("status").value if changes.get("status") else None
    _guard_super_admin(current_user, target, new_role)

    if target.id == current_user.id and new_status and new_status != "ACTIVE":
        raise _fail(400, "self_deactivation", "You cannot deactivate your own account.")

    loses_admin = (new_role is not None and new_role not in ADMIN_ROLES) or (
        new_status is not None and new_status != "ACTIVE"
    )
    if _is_active_admin(target) and loses_admin and store.count_active_admins() <= 1:
        raise _fail(400, "last_admin", "Cannot remove the last active admin account.")

    updates: dict = {}
    for key in ("first_name", "last_name", "phone"):
        if key in changes:
            updates[key] = changes[key]
    if changes.get("email"):
        updates["email"] = changes["email"].lower()
    if new_role:
        updates["role"] = new_role
    if new_status:
        updates["status"] = new_status
    if changes.get("password"):
        updates["hashed_password"] = hash_password(changes["password"])

    if "email" in updates or updates.get("phone"):
        clash = store.find_by_email_or_phone(updates.get("email"), updates.get("phone"))
        if clash is not None and clash.id != target.id:
            raise _fail(409, "user_exists", "Another user already has this email or phone.")

    try:
        store.update_user(user_id, **updates)
    except IntegrityError as exc:
        raise _fail(409, "user_exists", "Another user already has this email or phone.") from exc
    if new_status and new_status != "ACTIVE":
        store.delete_user_refresh_tokens(user_id)

    changes = diff_changes(asdict(target), {k: v for k, v in updates.items() if k != "hashed_password"})
    if "hashed_password" in updates:
        changes["password"] = "changed"
    log_audit_event(
        request.app.state.audit_store, current_user.id, "UPDATE_USER", "User", user_id, {"changes": changes}, request
    )
    return success_envelope(UserOut.from_user(store.get_by_id(user_id)), message="User updated successfully")


@router.delete("/users/{user_id}")
def delete_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_permission("users", "delete")),
) -> dict:
    store: UserStore = request.app.state.user_store
    target = _get_or_404(store, user_id)
    _guard_super_admin(current_user, target)
    if target.id == current_user.id:
        raise _fail(400, "self_deletion", "You cannot delete your own account.")
    if _is_active_admin(target) and store.count_active_admins() <= 1:
        raise _fail(400, "last_admin", "Cannot delete the last active admin account.")

    store.delete_user(user_id)
    log_audit_event(
        request.app.state.audit_store,
        current_user.id,
        "DELETE_USER",
        "User",
        user_id,
        {"email": target.email, "role": target.role},
        request,
    )
    return success_envelope(None, message="User deleted successfully")
