from __future__ import annotations

import hashlib
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from taskgate.config import Settings
from taskgate.logging import get_logger
from taskgate.service.errors import (
    AuthenticationError,
    ConflictError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from taskgate.service.gate import AuthContext
from taskgate.service.passwords import PasswordHasher
from taskgate.service.sessions import SessionRegistry
from taskgate.service.tokens import TokenIssuer, TokenPair
from taskgate.storage.common import hash_one_time_token, normalize_email
from taskgate.storage.errors import ConstraintViolation
from taskgate.storage.models import Role, User, utcnow

logger = get_logger(__name__)

# Fields a user may change on their own profile
PROFILE_FIELDS = frozenset({"first_name", "last_name", "preferences"})
REGISTRABLE_ROLES = frozenset({Role.USER.value, Role.MANAGER.value, Role.ADMIN.value})


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        role: str = "user",
        is_active: bool = True,
        preferences: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]: ...

    def update_user(self, user_id: str, *, now: Optional[datetime] = None, **fields) -> Optional[User]: ...

    def increment_login_attempts(self, user_id: str) -> int: ...

    def get_user_by_verification_token(self, token: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token: str) -> Optional[User]: ...

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    verification_token: Optional[str] = None


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()[:16]


class AuthService:
    """Registration, login with lockout, token refresh, and password lifecycle."""

    def __init__(
        self,
        store: AuthStore,
        hasher: PasswordHasher,
        tokens: TokenIssuer,
        sessions: SessionRegistry,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.hasher = hasher
        self.tokens = tokens
        self.sessions = sessions
        self.settings = settings
        self._clock = clock or utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def _one_time_token(self, ttl: timedelta) -> Tuple[str, str, datetime]:
        token = secrets.token_hex(32)
        return token, hash_one_time_token(token), self._now() + ttl

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        return user

    async def _set_password(self, user_id: str, password: str) -> None:
        digest, algo = await self.hasher.hash_async(password)
        self.store.save_password(user_id, digest, algo, changed_at=self._now())

    async def _rehash_password(self, user: User, password: str) -> None:
        # Keeps password_changed_at so tokens issued before the upgrade stay valid
        digest, algo = await self.hasher.hash_async(password)
        self.store.save_password(user.id, digest, algo, changed_at=user.password_changed_at)
        self.logger.info("password_rehashed", user_id=user.id)

    async def _issue_session(self, user: User, refresh_ttl: int) -> TokenPair:
        pair = self.tokens.issue(user, refresh_ttl_seconds=refresh_ttl)
        await self.sessions.store(user.id, pair.refresh_token, refresh_ttl)
        return pair

    # registration and login
    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: Optional[str] = None,
    ) -> AuthResult:
        email = normalize_email(email)
        role = role or Role.USER.value
        if role not in REGISTRABLE_ROLES:
            raise ValidationError("Invalid role", detail={"field": "role"})
        if self.store.get_user_by_email(email):
            raise ConflictError("User already exists with this email", error_code="USER_EXISTS")

        digest, algo = await self.hasher.hash_async(password)
        now = self._now()
        try:
            user = self.store.create_user(email, first_name, last_name, role=role, now=now)
        except ConstraintViolation as exc:
            raise ConflictError(
                "User already exists with this email", error_code="USER_EXISTS", detail=exc.detail
            ) from exc
        self.store.save_password(user.id, digest, algo, changed_at=now)

        token, token_hash, expires = self._one_time_token(
            timedelta(hours=self.settings.email_verification_ttl_hours)
        )
        user = self.store.update_user(
            user.id,
            email_verification_token_hash=token_hash,
            email_verification_expires=expires,
            now=now,
        ) or user
        pair = await self._issue_session(user, self.settings.refresh_token_ttl_seconds)
        self.logger.info("user_registered", user_id=user.id, role=user.role)
        return AuthResult(user=user, tokens=pair, verification_token=token)

    def _invalid_credentials(self) -> AuthenticationError:
        return AuthenticationError("Invalid email or password", error_code="INVALID_CREDENTIALS")

    async def login(self, email: str, password: str, remember_me: bool = False) -> AuthResult:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("login_failed", reason="unknown_email", email_hash=_email_hash(email))
            raise self._invalid_credentials()
        if not user.is_active:
            self.logger.info("login_failed", reason="deactivated", user_id=user.id)
            raise AuthenticationError("Account is deactivated", error_code="ACCOUNT_DEACTIVATED")

        now = self._now()
        # Lock is checked before the password so locked attempts burn nothing
        if user.lock_until is not None:
            if user.lock_until > now:
                minutes = max(1, math.ceil((user.lock_until - now).total_seconds() / 60))
                self.logger.info("login_failed", reason="locked", user_id=user.id)
                raise LockedError(
                    f"Account is temporarily locked. Try again in {minutes} minutes.",
                    error_code="ACCOUNT_LOCKED",
                )
            user = self.store.update_user(user.id, login_attempts=0, lock_until=None, now=now) or user

        record = self.store.get_password_record(user.id)
        verified = False
        if record:
            verified = await self.hasher.verify_async(password, record[0], record[1])
        else:
            self.logger.warning("password_record_missing", user_id=user.id)

        if not verified:
            attempts = self.store.increment_login_attempts(user.id)
            if attempts >= self.settings.lockout_max_attempts:
                duration = self.settings.lockout_duration_minutes
                self.store.update_user(
                    user.id, lock_until=now + timedelta(minutes=duration), now=now
                )
                self.logger.warning("account_locked", user_id=user.id, attempts=attempts)
                raise LockedError(
                    f"Account locked due to multiple failed attempts. Try again in {duration} minutes.",
                    error_code="ACCOUNT_LOCKED",
                )
            self.logger.info("login_failed", reason="bad_password", user_id=user.id, attempts=attempts)
            raise self._invalid_credentials()

        if self.hasher.needs_rehash(record[0]):
            await self._rehash_password(user, password)

        user = self.store.update_user(
            user.id, login_attempts=0, lock_until=None, last_login_at=now, now=now
        ) or user
        refresh_ttl = (
            self.settings.refresh_token_ttl_seconds
            if remember_me
            else self.settings.short_refresh_token_ttl_seconds
        )
        pair = await self._issue_session(user, refresh_ttl)
        self.logger.info("user_logged_in", user_id=user.id, role=user.role, remember_me=remember_me)
        return AuthResult(user=user, tokens=pair)

    async def refresh(self, refresh_token: Optional[str]) -> TokenPair:
        if not refresh_token:
            raise ValidationError("Refresh token required", error_code="REFRESH_TOKEN_REQUIRED")
        try:
            claims = self.tokens.decode_refresh(refresh_token)
        except AuthenticationError as exc:
            self.logger.info("refresh_rejected", reason=exc.error_code)
            raise AuthenticationError(
                "Invalid refresh token", error_code="INVALID_REFRESH_TOKEN"
            ) from exc

        user_id = str(claims["sub"])
        if not await self.sessions.matches(user_id, refresh_token):
            self.logger.info("refresh_rejected", reason="not_current", user_id=user_id)
            raise AuthenticationError("Invalid refresh token", error_code="INVALID_REFRESH_TOKEN")

        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            raise AuthenticationError("User not found or inactive", error_code="USER_NOT_FOUND")

        pair = await self._issue_session(user, self.settings.refresh_token_ttl_seconds)
        self.logger.info("tokens_refreshed", user_id=user.id)
        return pair

    async def logout(
        self, identity: Optional[AuthContext], refresh_token: Optional[str] = None
    ) -> None:
        """Best-effort revoke of the caller's refresh token; never raises for bad input."""
        if not refresh_token:
            return
        user_id = identity.user_id if identity else None
        if user_id is None:
            try:
                claims = self.tokens.decode_refresh(refresh_token)
            except AuthenticationError:
                return
            candidate = str(claims["sub"])
            if not await self.sessions.matches(candidate, refresh_token):
                return
            user_id = candidate
        await self.sessions.delete(user_id)
        self.logger.info("user_logged_out", user_id=user_id)

    # password lifecycle
    async def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = self._require_user(user_id)
        record = self.store.get_password_record(user.id)
        if not record or not await self.hasher.verify_async(current_password, record[0], record[1]):
            raise ValidationError(
                "Current password is incorrect", error_code="INCORRECT_CURRENT_PASSWORD"
            )
        await self._set_password(user.id, new_password)
        await self.sessions.delete(user.id)
        self.logger.info("password_changed", user_id=user.id)

    async def forgot_password(self, email: str) -> Optional[str]:
        """Returns the plaintext reset token for a known email, else ``None``.

        Callers must respond identically in both cases.
        """
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email", email_hash=_email_hash(email))
            return None
        token, token_hash, expires = self._one_time_token(
            timedelta(minutes=self.settings.password_reset_ttl_minutes)
        )
        self.store.update_user(
            user.id,
            password_reset_token_hash=token_hash,
            password_reset_expires=expires,
            now=self._now(),
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    async def reset_password(self, token: Optional[str], new_password: str) -> None:
        invalid = ValidationError("Invalid or expired reset token", error_code="INVALID_RESET_TOKEN")
        if not token:
            raise invalid
        user = self.store.get_user_by_reset_token(token)
        if (
            not user
            or user.password_reset_expires is None
            or user.password_reset_expires <= self._now()
        ):
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            raise invalid
        await self._set_password(user.id, new_password)
        self.store.update_user(
            user.id,
            password_reset_token_hash=None,
            password_reset_expires=None,
            login_attempts=0,
            lock_until=None,
            now=self._now(),
        )
        await self.sessions.delete(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)

    # email verification
    async def verify_email(self, token: str) -> User:
        user = self.store.get_user_by_verification_token(token) if token else None
        if (
            not user
            or user.email_verification_expires is None
            or user.email_verification_expires <= self._now()
        ):
            raise ValidationError(
                "Invalid or expired verification token", error_code="INVALID_VERIFICATION_TOKEN"
            )
        user = self.store.update_user(
            user.id,
            is_email_verified=True,
            email_verification_token_hash=None,
            email_verification_expires=None,
            now=self._now(),
        ) or user
        self.logger.info("email_verified", user_id=user.id)
        return user

    async def resend_verification(self, email: str) -> Tuple[User, str]:
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        if user.is_email_verified:
            raise ValidationError("Email is already verified", error_code="EMAIL_ALREADY_VERIFIED")
        token, token_hash, expires = self._one_time_token(
            timedelta(hours=self.settings.email_verification_ttl_hours)
        )
        user = self.store.update_user(
            user.id,
            email_verification_token_hash=token_hash,
            email_verification_expires=expires,
            now=self._now(),
        ) or user
        self.logger.info("email_verification_requested", user_id=user.id)
        return user, token

    # profile
    async def get_profile(self, user_id: str) -> User:
        return self._require_user(user_id)

    async def update_profile(self, user_id: str, updates: Dict[str, Any]) -> User:
        user = self._require_user(user_id)
        changes = {k: v for k, v in updates.items() if k in PROFILE_FIELDS and v is not None}
        dropped = sorted(set(updates) - PROFILE_FIELDS)
        if dropped:
            self.logger.info("profile_fields_ignored", user_id=user.id, fields=dropped)
        if "preferences" in changes:
            changes["preferences"] = {**(user.preferences or {}), **changes["preferences"]}
        if not changes:
            return user
        updated = self.store.update_user(user.id, now=self._now(), **changes)
        self.logger.info("profile_updated", user_id=user.id, fields=sorted(changes))
        return updated or user

    async def set_two_factor(self, user_id: str, enabled: bool) -> User:
        self._require_user(user_id)
        user = self.store.update_user(user_id, two_factor_enabled=enabled, now=self._now())
        self.logger.info("two_factor_updated", user_id=user_id, enabled=enabled)
        return user

    # administration
    async def list_users(self, limit: int = 50, offset: int = 0) -> List[User]:
        return self.store.list_users(limit=limit, offset=offset)

    async def get_user(self, user_id: str) -> User:
        return self._require_user(user_id)

    async def set_role(self, user_id: str, role: str) -> User:
        try:
            role = Role(role).value
        except ValueError:
            raise ValidationError("Invalid role", detail={"field": "role"})
        self._require_user(user_id)
        user = self.store.update_user(user_id, role=role, now=self._now())
        self.logger.info("user_role_updated", user_id=user_id, role=role)
        return user

    async def set_active(self, user_id: str, is_active: bool) -> User:
        self._require_user(user_id)
        user = self.store.update_user(user_id, is_active=is_active, now=self._now())
        if not is_active:
            await self.sessions.delete(user_id)
        self.logger.info("user_active_updated", user_id=user_id, is_active=is_active)
        return user
