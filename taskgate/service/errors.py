from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """An auth or authorization failure that becomes an error envelope.

    ``status_code`` picks the HTTP status and ``error_code`` is the stable
    string clients branch on (``TOKEN_EXPIRED``, ``ACCOUNT_LOCKED``...).
    Subclasses fix the status; call sites narrow the code.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code if status_code is not None else type(self).status_code
        self.error_code = error_code or type(self).error_code
        self.detail = detail or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error_code}, {self.status_code}, {self.message!r})"


class ValidationError(ServiceError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    """Caller could not be identified: bad credentials or a rejected token."""

    status_code = 401
    error_code = "UNAUTHORIZED"


class InvalidTokenError(AuthenticationError):
    error_code = "INVALID_TOKEN"


class TokenExpiredError(AuthenticationError):
    # signature checked out, only ``exp`` is in the past
    error_code = "TOKEN_EXPIRED"


class ForbiddenError(ServiceError):
    """Caller is known but the policy denies the action."""

    status_code = 403
    error_code = "INSUFFICIENT_PERMISSIONS"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "RESOURCE_NOT_FOUND"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "USER_EXISTS"


class LockedError(ServiceError):
    """Login refused while ``lock_until`` is in the future."""

    status_code = 423
    error_code = "ACCOUNT_LOCKED"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        super().__init__(message, **kwargs)
        # whole seconds until the window resets
        self.retry_after = retry_after


class ServerError(ServiceError):
    status_code = 500
    error_code = "INTERNAL_ERROR"
