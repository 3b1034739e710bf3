"""Authorization policies over (identity, resource, requested action).

Each check returns quietly on success and raises a ``ServiceError`` carrying
the rejection code otherwise, so route dependencies can call them inline.
"""

from __future__ import annotations

import hmac
from typing import Callable, Iterable, Optional, TypeVar

from taskgate.logging import get_logger
from taskgate.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from taskgate.service.gate import AuthContext
from taskgate.storage.models import Role

logger = get_logger(__name__)

T = TypeVar("T")

ADMIN_ONLY = (Role.ADMIN.value,)
MANAGER_OR_ADMIN = (Role.ADMIN.value, Role.MANAGER.value)

READ = "read"
WRITE = "write"

# Admin is checked separately and holds every permission
ROLE_PERMISSIONS = {
    Role.MANAGER.value: frozenset({READ, WRITE}),
    Role.USER.value: frozenset({READ}),
}

MIN_TWO_FACTOR_TOKEN_LENGTH = 6


def _role_value(role) -> str:
    return role.value if isinstance(role, Role) else str(role)


def _require_identity(identity: Optional[AuthContext]) -> AuthContext:
    if identity is None:
        raise AuthenticationError("Authentication required", error_code="AUTHENTICATION_REQUIRED")
    return identity


def require_role(identity: Optional[AuthContext], *roles) -> AuthContext:
    identity = _require_identity(identity)
    allowed = {_role_value(r) for r in roles}
    if identity.role not in allowed:
        logger.info("role_denied", user_id=identity.user_id, role=identity.role, required=sorted(allowed))
        raise ForbiddenError(
            f"Access denied. Required roles: {', '.join(sorted(allowed))}",
            error_code="INSUFFICIENT_PERMISSIONS",
        )
    return identity


def require_owner_or_admin(identity: Optional[AuthContext], owner_id: Optional[str]) -> AuthContext:
    identity = _require_identity(identity)
    if identity.role == Role.ADMIN.value or (owner_id and identity.user_id == owner_id):
        return identity
    raise ForbiddenError(
        "Access denied. You can only access your own resources.",
        error_code="INSUFFICIENT_PERMISSIONS",
    )


def resolve_owner_id(resource) -> Optional[str]:
    """Assignee owns the resource when set, otherwise its creator."""
    return getattr(resource, "assigned_to_id", None) or getattr(resource, "created_by_id", None)


def require_resource_ownership(
    identity: Optional[AuthContext],
    resource_id: Optional[str],
    loader: Callable[[str], Optional[T]],
) -> T:
    identity = _require_identity(identity)
    if not resource_id:
        raise ValidationError("Resource ID is required", error_code="MISSING_RESOURCE_ID")
    resource = loader(resource_id)
    if resource is None:
        raise NotFoundError("Resource not found", error_code="RESOURCE_NOT_FOUND")
    if identity.role == Role.ADMIN.value:
        return resource
    if resolve_owner_id(resource) != identity.user_id:
        logger.info("ownership_denied", user_id=identity.user_id, resource_id=resource_id)
        raise ForbiddenError(
            "Access denied. You can only access your own resources.",
            error_code="INSUFFICIENT_PERMISSIONS",
        )
    return resource


def has_permission(role, permission: str) -> bool:
    role = _role_value(role)
    if role == Role.ADMIN.value:
        return True
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def permissions_for(role) -> Iterable[str]:
    role = _role_value(role)
    if role == Role.ADMIN.value:
        return ("*",)
    return tuple(sorted(ROLE_PERMISSIONS.get(role, frozenset())))


def require_permission(identity: Optional[AuthContext], permission: str) -> AuthContext:
    identity = _require_identity(identity)
    if not has_permission(identity.role, permission):
        raise ForbiddenError(
            f"Access denied. Missing permission: {permission}",
            error_code="INSUFFICIENT_PERMISSIONS",
        )
    return identity


def require_two_factor(identity: Optional[AuthContext], token: Optional[str]) -> AuthContext:
    """Presence and length check only; the token is not verified against a TOTP secret."""
    identity = _require_identity(identity)
    if not identity.user.two_factor_enabled:
        return identity
    if not token:
        raise AuthenticationError("Two-factor authentication required", error_code="2FA_REQUIRED")
    if len(token) < MIN_TWO_FACTOR_TOKEN_LENGTH:
        raise AuthenticationError("Invalid 2FA token", error_code="INVALID_2FA_TOKEN")
    return identity


def require_api_key(expected: Optional[str], provided: Optional[str]) -> None:
    if not expected or not provided or not hmac.compare_digest(
        expected.encode(), provided.encode()
    ):
        raise AuthenticationError("Valid API key required", error_code="INVALID_API_KEY")
