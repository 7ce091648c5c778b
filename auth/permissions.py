"""
auth/permissions.py -- Static role -> permission table (RBAC).

Pattern: lookup table. Every authorization decision in the application goes
through can_access_resource() (API) or check_route_access() (web UI). Nothing
else inspects role strings.

Roles, highest first:
  SUPER_ADMIN (4) > ADMIN (3) > MANAGER (2) > USER (1) > GUEST (0)

Unknown roles are treated as GUEST: no permissions, level 0.

Layer rule: pure functions, no imports from other project packages.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

ROLE_HIERARCHY: dict[str, int] = {
    "SUPER_ADMIN": 4,
    "ADMIN": 3,
    "MANAGER": 2,
    "USER": 1,
    "GUEST": 0,
}

ROLES = tuple(ROLE_HIERARCHY)
ACTIONS = ("read", "write", "delete")


@dataclass(frozen=True)
class Permissions:
    can_read: bool = False
    can_write: bool = False
    can_delete: bool = False
    can_manage_users: bool = False
    can_access_admin: bool = False
    can_view_analytics: bool = False
    can_manage_settings: bool = False

    def as_dict(self) -> dict[str, bool]:
        return asdict(self)


_FULL = Permissions(
    can_read=True,
    can_write=True,
    can_delete=True,
    can_manage_users=True,
    can_access_admin=True,
    can_view_analytics=True,
    can_manage_settings=True,
)

_ROLE_PERMISSIONS: dict[str, Permissions] = {
    "SUPER_ADMIN": _FULL,
    "ADMIN": _FULL,
    "MANAGER": Permissions(can_read=True, can_write=True, can_view_analytics=True),
    "USER": Permissions(can_read=True),
    "GUEST": Permissions(),
}

# Path prefix -> roles allowed to open it in the web UI. First match wins.
_ROUTE_RULES: tuple[tuple[str, frozenset[str]], ...] = (
    ("/admin", frozenset({"SUPER_ADMIN", "ADMIN"})),
    ("/settings", frozenset({"SUPER_ADMIN", "ADMIN"})),
    ("/audit-logs", frozenset({"SUPER_ADMIN", "ADMIN"})),
    ("/users", frozenset({"SUPER_ADMIN", "ADMIN", "MANAGER"})),
    ("/analytics", frozenset({"SUPER_ADMIN", "ADMIN", "MANAGER"})),
    ("/reports", frozenset({"SUPER_ADMIN", "ADMIN", "MANAGER"})),
)


def has_minimum_role(user_role: str, required_role: str) -> bool:
    """Return True if user_role ranks at or above required_role.

    An unknown required_role is never satisfied.
    """
    if required_role not in ROLE_HIERARCHY:
        return False
    return ROLE_HIERARCHY.get(user_role, 0) >= ROLE_HIERARCHY[required_role]


def get_user_permissions(role: str) -> Permissions:
    return _ROLE_PERMISSIONS.get(role, _ROLE_PERMISSIONS["GUEST"])


def can_access_resource(role: str, resource: str, action: str) -> bool:
    """Decide whether role may perform action ("read", "write", "delete") on resource.

    users and settings are readable by anyone with can_read, but changing them
    needs the dedicated management permission. analytics and admin are gated
    by a single flag regardless of action. Every other resource needs can_write
    for both write and delete.
    """
    perms = get_user_permissions(role)
    if resource == "users":
        return perms.can_read if action == "read" else perms.can_manage_users
    if resource == "settings":
        return perms.can_read if action == "read" else perms.can_manage_settings
    if resource == "analytics":
        return perms.can_view_analytics
    if resource == "admin":
        return perms.can_access_admin
    return perms.can_read if action == "read" else perms.can_write


def check_route_access(role: str, path: str) -> bool:
    """Return True if role may open the web UI page at path.

    Paths not covered by a rule are open to every authenticated user.
    """
    for prefix, allowed in _ROUTE_RULES:
        if path == prefix or path.startswith(prefix + "/"):
            return role in allowed
    return True
