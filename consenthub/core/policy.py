"""Policy engine - RBAC and requester isolation enforcement.

Two security properties are enforced here:

1. Requester isolation (mandatory):
   A customer only ever sees DSARs whose requesterId equals their token
   ``sub``. requester_scope() returns the value every service read must be
   filtered by (None for staff, who see everything).

2. RBAC (mandatory):
   check_permission() is called by route handlers before the service is
   invoked.

Permission matrix:
  Action              | admin | csr | customer
  --------------------|-------|-----|---------
  dsar.create         |  yes  | yes |  yes
  dsar.read (own)     |  yes  | yes |  yes
  dsar.cancel_own     |  yes  | yes |  yes
  dsar.read_all       |  yes  | yes |  no
  dsar.update         |  yes  | yes |  no
  dsar.annotate       |  yes  | yes |  no
  dsar.assign         |  yes  | yes |  no
  dsar.verify         |  yes  | yes |  no
  dsar.export         |  yes  | yes |  no
  dsar.stats          |  yes  | yes |  no
  dsar.delete         |  yes  | no  |  no
"""

from __future__ import annotations

from enum import StrEnum

import structlog

from consenthub.core.exceptions import ForbiddenError

log = structlog.get_logger(__name__)


class Role(StrEnum):
    CUSTOMER = "customer"
    CSR = "csr"
    ADMIN = "admin"


class Permission(StrEnum):
    DSAR_CREATE = "dsar.create"
    DSAR_READ = "dsar.read"
    DSAR_CANCEL_OWN = "dsar.cancel_own"
    DSAR_READ_ALL = "dsar.read_all"
    DSAR_UPDATE = "dsar.update"
    DSAR_ANNOTATE = "dsar.annotate"
    DSAR_ASSIGN = "dsar.assign"
    DSAR_VERIFY = "dsar.verify"
    DSAR_EXPORT = "dsar.export"
    DSAR_STATS = "dsar.stats"
    DSAR_DELETE = "dsar.delete"


# Permission -> minimum required role (inclusive upward)
_PERMISSION_TO_MIN_ROLE: dict[Permission, Role] = {
    Permission.DSAR_CREATE: Role.CUSTOMER,
    Permission.DSAR_READ: Role.CUSTOMER,
    Permission.DSAR_CANCEL_OWN: Role.CUSTOMER,
    Permission.DSAR_READ_ALL: Role.CSR,
    Permission.DSAR_UPDATE: Role.CSR,
    Permission.DSAR_ANNOTATE: Role.CSR,
    Permission.DSAR_ASSIGN: Role.CSR,
    Permission.DSAR_VERIFY: Role.CSR,
    Permission.DSAR_EXPORT: Role.CSR,
    Permission.DSAR_STATS: Role.CSR,
    Permission.DSAR_DELETE: Role.ADMIN,
}

# Role hierarchy: higher index = more permissions
_ROLE_HIERARCHY = [Role.CUSTOMER, Role.CSR, Role.ADMIN]


def _role_level(role: Role | str) -> int:
    try:
        return _ROLE_HIERARCHY.index(Role(role))
    except ValueError:
        return -1


def has_permission(role: Role | str, permission: Permission) -> bool:
    min_role = _PERMISSION_TO_MIN_ROLE.get(permission, Role.ADMIN)
    return _role_level(role) >= _role_level(min_role)


def check_permission(role: Role | str, permission: Permission) -> None:
    """Raise ForbiddenError unless ``role`` satisfies ``permission``."""
    if has_permission(role, permission):
        return
    min_role = _PERMISSION_TO_MIN_ROLE.get(permission, Role.ADMIN)
    log.warning(
        "policy.permission_denied",
        role=str(role),
        permission=permission.value,
        required_role=min_role.value,
    )
    # Don't reveal the required role to the caller
    raise ForbiddenError("Insufficient permissions for this action")


def requester_scope(role: Role | str, user_id: str) -> str | None:
    """Return the requesterId reads must be restricted to, or None for staff."""
    if has_permission(role, Permission.DSAR_READ_ALL):
        return None
    return user_id
