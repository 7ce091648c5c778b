"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and RBAC.

Two token sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by the web UI and /api/auth/login.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on a User object loaded fresh from the DB, so a role or status
change takes effect on the next request even if the JWT says otherwise.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it, raises HTTP 401 if unauthenticated and HTTP 503
for non-admins while maintenance mode is on.
require_permission(resource, action) builds a dependency that raises HTTP 403
when can_access_resource() denies the caller.

Layer rule: no imports from api/, web/, audit/, or commerce/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.models import User
from auth.permissions import can_access_resource
from auth.store import ADMIN_ROLES
from auth.tokens import ACCESS_COOKIE, decode_access_token


def _request_token(request: Request) -> str | None:
    token: str | None = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request via cookie or Bearer header.

    Returns the authenticated ACTIVE User on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    token = _request_token(request)
    if not token:
        return None
    payload = decode_access_token(token)
    if not payload:
        return None
    user = request.app.state.user_store.get_by_id(payload["user_id"])
    if user and user.status == "ACTIVE":
        return user
    return None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    if user.role not in ADMIN_ROLES and request.app.state.user_store.get_app_settings().get("maintenance_mode"):
        raise HTTPException(
            status_code=503,
            detail={"code": "maintenance", "message": "The site is under maintenance. Try again later."},
        )
    return user


def require_permission(resource: str, action: str):
    """Build a dependency that requires can_access_resource(role, resource, action).

    Use as a FastAPI dependency:
        @router.delete("/products/{product_id}")
        def route(user: User = Depends(require_permission("products", "delete"))): ...
    """

    def dependency(user: User = Depends(get_current_user)) -> User:
        if not can_access_resource(user.role, resource, action):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"You do not have permission to {action} {resource}."},
            )
        return user

    return dependency
