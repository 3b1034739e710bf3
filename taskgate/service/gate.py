from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from taskgate.logging import get_logger
from taskgate.service.errors import AuthenticationError
from taskgate.service.tokens import TokenIssuer
from taskgate.storage.models import User

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str
    token: str
    issued_at: int
    user: User


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class AuthGate:
    """Per-request access token validation.

    Runs token presence, signature, user lookup, active flag, and password
    epoch checks in that order; the first failing check decides the
    rejection code and nothing is retried.
    """

    def __init__(self, store, tokens: TokenIssuer) -> None:
        self.store = store
        self.tokens = tokens

    def _reject(self, code: str, message: str, **context) -> AuthenticationError:
        logger.info("auth_rejected", reason=code, **context)
        return AuthenticationError(message, error_code=code)

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        if not token:
            raise self._reject("UNAUTHORIZED", "Access token required")

        # InvalidTokenError / TokenExpiredError already carry their codes
        try:
            claims = self.tokens.decode_access(token)
        except AuthenticationError as exc:
            logger.info("auth_rejected", reason=exc.error_code)
            raise

        user_id = str(claims["sub"])
        user = self.store.get_user(user_id)
        if not user:
            raise self._reject("USER_NOT_FOUND", "User no longer exists", user_id=user_id)
        if not user.is_active:
            raise self._reject("ACCOUNT_DEACTIVATED", "User account is deactivated", user_id=user_id)

        issued_at = int(claims["iat"])
        if user.password_changed_at is not None:
            changed_at = int(user.password_changed_at.timestamp())
            if issued_at < changed_at:
                raise self._reject(
                    "PASSWORD_CHANGED",
                    "Password recently changed, please login again",
                    user_id=user_id,
                )

        logger.debug("user_authenticated", user_id=user.id, role=user.role)
        return AuthContext(
            user_id=user.id,
            email=user.email,
            role=user.role,
            token=token,
            issued_at=issued_at,
            user=user,
        )

    def authenticate_optional(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Same checks as :meth:`authenticate`, but anonymous on any failure."""
        if not authorization:
            return None
        try:
            return self.authenticate(authorization)
        except AuthenticationError as exc:
            logger.debug("optional_auth_ignored", reason=exc.error_code)
            return None
