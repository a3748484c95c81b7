"""FastAPI dependencies for authentication and authorization.

Key dependencies:
- get_current_user: Resolve JWT claims -> AuthenticatedUser
- require_permission: Assert the caller's role grants a permission

There is no local users table; identity and role come entirely from the
token issued by the auth service.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from fastapi import Depends, Request

from consenthub.auth.oidc import TokenValidationError, validate_token
from consenthub.config import Settings, get_settings
from consenthub.core.exceptions import UnauthorizedError
from consenthub.core.policy import Permission, Role, check_permission, requester_scope

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Caller identity passed to route handlers."""

    user_id: str
    role: Role
    email: str | None = None
    name: str | None = None
    claims: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.user_id

    @property
    def requester_scope(self) -> str | None:
        return requester_scope(self.role, self.user_id)

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> AuthenticatedUser:
        """Build a user from validated claims.

        Raises:
            UnauthorizedError: the role claim is not a known role.
        """
        try:
            role = Role(str(claims.get("role", "")).lower())
        except ValueError:
            log.warning("auth.unknown_role", role=claims.get("role"), sub=claims.get("sub"))
            raise UnauthorizedError("Token carries an unknown role") from None
        return cls(
            user_id=str(claims["sub"]),
            role=role,
            email=claims.get("email") or None,
            name=claims.get("name") or None,
            claims=claims,
        )


async def _extract_and_validate_token(request: Request, settings: Settings) -> dict[str, Any]:
    """Return validated claims. Raises UnauthorizedError on any failure."""
    claims = getattr(request.state, "auth_claims", None)
    if claims is not None:
        return claims  # type: ignore[no-any-return]

    # Fallback: validate here (for routes that bypass middleware)
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise UnauthorizedError("Missing or invalid Authorization header")

    token = auth_header.removeprefix("Bearer ").strip()
    try:
        return await validate_token(token, settings)
    except TokenValidationError as exc:
        raise UnauthorizedError("Invalid or expired authentication token") from exc


async def get_current_user(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> AuthenticatedUser:
    claims = await _extract_and_validate_token(request, settings)
    return AuthenticatedUser.from_claims(claims)


def require_permission(permission: Permission) -> Callable:
    """Dependency factory asserting the current user holds ``permission``.

    Usage:
        @router.delete("/dsarRequest/{request_id}")
        async def delete(
            user: AuthenticatedUser = Depends(require_permission(Permission.DSAR_DELETE)),
        ):
            ...
    """

    async def _check(
        current_user: AuthenticatedUser = Depends(get_current_user),
    ) -> AuthenticatedUser:
        check_permission(current_user.role, permission)
        return current_user

    return _check
