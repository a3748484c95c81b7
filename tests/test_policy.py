"""Tests for RBAC and requester isolation helpers."""

import pytest

from consenthub.core.exceptions import ForbiddenError
from consenthub.core.policy import Permission, Role, check_permission, has_permission, requester_scope

STAFF_ONLY = [
    Permission.DSAR_READ_ALL,
    Permission.DSAR_UPDATE,
    Permission.DSAR_ANNOTATE,
    Permission.DSAR_ASSIGN,
    Permission.DSAR_VERIFY,
    Permission.DSAR_EXPORT,
    Permission.DSAR_STATS,
]


class TestHasPermission:
    @pytest.mark.parametrize(
        "permission", [Permission.DSAR_CREATE, Permission.DSAR_READ, Permission.DSAR_CANCEL_OWN]
    )
    def test_customer_basics(self, permission):
        assert has_permission(Role.CUSTOMER, permission)

    @pytest.mark.parametrize("permission", STAFF_ONLY)
    def test_staff_only(self, permission):
        assert not has_permission(Role.CUSTOMER, permission)
        assert has_permission(Role.CSR, permission)
        assert has_permission(Role.ADMIN, permission)

    def test_delete_is_admin_only(self):
        assert not has_permission(Role.CSR, Permission.DSAR_DELETE)
        assert has_permission(Role.ADMIN, Permission.DSAR_DELETE)

    def test_role_strings_are_accepted(self):
        assert has_permission("csr", Permission.DSAR_UPDATE)

    def test_unknown_role_has_nothing(self):
        assert not has_permission("auditor", Permission.DSAR_READ)


class TestCheckPermission:
    def test_denied_message_hides_required_role(self):
        with pytest.raises(ForbiddenError) as exc_info:
            check_permission(Role.CSR, Permission.DSAR_DELETE)
        assert "admin" not in exc_info.value.message.lower()
        assert exc_info.value.status_code == 403

    def test_allowed_returns_none(self):
        assert check_permission(Role.ADMIN, Permission.DSAR_DELETE) is None


class TestRequesterScope:
    def test_customer_scoped_to_self(self):
        assert requester_scope(Role.CUSTOMER, "cust-1") == "cust-1"

    @pytest.mark.parametrize("role", [Role.CSR, Role.ADMIN])
    def test_staff_unscoped(self, role):
        assert requester_scope(role, "staff-1") is None
