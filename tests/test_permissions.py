"""Unit tests for auth/permissions.py -- the role -> permission table.

Covers:
- Role hierarchy comparisons, including unknown roles
- Permission flags per role
- can_access_resource() for plain resources and the special-cased ones
- check_route_access() prefix rules for the web UI
"""

import pytest

from auth.permissions import (
    ROLES,
    can_access_resource,
    check_route_access,
    get_user_permissions,
    has_minimum_role,
)


class TestRoleHierarchy:
    def test_roles_ordered_highest_first(self) -> None:
        assert ROLES == ("SUPER_ADMIN", "ADMIN", "MANAGER", "USER", "GUEST")

    @pytest.mark.parametrize(
        "role, required, expected",
        [
            ("SUPER_ADMIN", "ADMIN", True),
            ("ADMIN", "ADMIN", True),
            ("MANAGER", "ADMIN", False),
            ("USER", "GUEST", True),
            ("GUEST", "USER", False),
        ],
    )
    def test_has_minimum_role(self, role: str, required: str, expected: bool) -> None:
        assert has_minimum_role(role, required) is expected

    def test_unknown_user_role_ranks_as_guest(self) -> None:
        assert has_minimum_role("HACKER", "GUEST") is True
        assert has_minimum_role("HACKER", "USER") is False

    def test_unknown_required_role_never_satisfied(self) -> None:
        assert has_minimum_role("SUPER_ADMIN", "OWNER") is False


class TestPermissionFlags:
    def test_admins_have_everything(self) -> None:
        for role in ("SUPER_ADMIN", "ADMIN"):
            assert all(get_user_permissions(role).as_dict().values()), role

    def test_manager_reads_writes_and_sees_analytics(self) -> None:
        perms = get_user_permissions("MANAGER")
        assert perms.can_read and perms.can_write and perms.can_view_analytics
        assert not perms.can_delete
        assert not perms.can_manage_users
        assert not perms.can_access_admin

    def test_user_is_read_only(self) -> None:
        flags = get_user_permissions("USER").as_dict()
        assert flags.pop("can_read") is True
        assert not any(flags.values())

    def test_guest_and_unknown_have_nothing(self) -> None:
        assert not any(get_user_permissions("GUEST").as_dict().values())
        assert get_user_permissions("nobody") == get_user_permissions("GUEST")


class TestCanAccessResource:
    def test_products_follow_generic_flags(self) -> None:
        assert can_access_resource("USER", "products", "read")
        assert not can_access_resource("USER", "products", "write")
        assert can_access_resource("MANAGER", "products", "write")
        assert can_access_resource("MANAGER", "products", "delete")
        assert can_access_resource("MANAGER", "orders", "delete")
        assert not can_access_resource("USER", "orders", "delete")
        assert can_access_resource("ADMIN", "products", "delete")

    def test_users_write_needs_manage_users(self) -> None:
        assert can_access_resource("MANAGER", "users", "read")
        assert not can_access_resource("MANAGER", "users", "write")
        assert can_access_resource("ADMIN", "users", "write")

    def test_settings_write_needs_manage_settings(self) -> None:
        assert can_access_resource("USER", "settings", "read")
        assert not can_access_resource("MANAGER", "settings", "write")
        assert can_access_resource("SUPER_ADMIN", "settings", "write")

    def test_analytics_and_admin_ignore_action(self) -> None:
        assert can_access_resource("MANAGER", "analytics", "read")
        assert not can_access_resource("USER", "analytics", "read")
        assert not can_access_resource("MANAGER", "admin", "read")
        assert can_access_resource("ADMIN", "admin", "write")

    def test_unknown_action_denied(self) -> None:
        assert not can_access_resource("SUPER_ADMIN", "products", "publish")

    def test_guest_cannot_read(self) -> None:
        assert not can_access_resource("GUEST", "products", "read")


class TestCheckRouteAccess:
    @pytest.mark.parametrize("path", ["/settings", "/audit-logs", "/admin/tools"])
    def test_admin_only_pages(self, path: str) -> None:
        assert check_route_access("ADMIN", path)
        assert not check_route_access("MANAGER", path)

    def test_users_pages_open_to_managers(self) -> None:
        assert check_route_access("MANAGER", "/users/5")
        assert not check_route_access("USER", "/users")

    def test_prefix_must_end_at_segment_boundary(self) -> None:
        assert check_route_access("USER", "/usersettings")

    def test_unlisted_paths_open_to_everyone(self) -> None:
        for path in ("/", "/products", "/orders/3"):
            assert check_route_access("GUEST", path)
