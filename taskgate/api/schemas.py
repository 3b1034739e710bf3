from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from taskgate.storage.models import Task, User

_VALID_ERROR_CODES = frozenset({
    "UNAUTHORIZED",
    "AUTHENTICATION_REQUIRED",
    "INVALID_TOKEN",
    "TOKEN_EXPIRED",
    "INVALID_REFRESH_TOKEN",
    "REFRESH_TOKEN_REQUIRED",
    "USER_NOT_FOUND",
    "ACCOUNT_DEACTIVATED",
    "ACCOUNT_LOCKED",
    "PASSWORD_CHANGED",
    "INVALID_CREDENTIALS",
    "INCORRECT_CURRENT_PASSWORD",
    "INSUFFICIENT_PERMISSIONS",
    "RESOURCE_NOT_FOUND",
    "MISSING_RESOURCE_ID",
    "2FA_REQUIRED",
    "INVALID_2FA_TOKEN",
    "RATE_LIMIT_EXCEEDED",
    "USER_EXISTS",
    "CONFLICT",
    "INVALID_RESET_TOKEN",
    "INVALID_VERIFICATION_TOKEN",
    "EMAIL_ALREADY_VERIFIED",
    "INVALID_API_KEY",
    "VALIDATION_ERROR",
    "NOT_FOUND",
    "METHOD_NOT_ALLOWED",
    "HTTP_ERROR",
    "INTERNAL_ERROR",
})


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ErrorEnvelope(BaseModel):
    """Body of every failed response: ``{success: false, message, code}``."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    success: Literal[False] = False
    message: str
    code: str
    details: Optional[Any] = None
    errors: Optional[List[dict]] = None
    retry_after: Optional[int] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    success: bool = True
    message: str
    data: Optional[Any] = None
    timestamp: str = Field(default_factory=_utc_timestamp)


def ok(message: str, data: Any = None) -> dict:
    return Envelope(message=message, data=data).model_dump()


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_NAME_PATTERN = re.compile(r"^[a-zA-Z\s]+$")
_HEX_TOKEN = re.compile(r"^[a-fA-F0-9]{32,64}$")
_PASSWORD_SPECIALS = "@$!%*?&"


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("Please provide a valid email address")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254 or len(normalized) < 3:
        raise ValueError("Please provide a valid email address")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Please provide a valid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please provide a valid email address")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Please provide a valid email address")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Please provide a valid email address")
    return normalized


def validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters long")
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
        and any(c in _PASSWORD_SPECIALS for c in value)
    ):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, "
            "one number, and one special character"
        )
    return value


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not 2 <= len(value) <= 50:
        raise ValueError("Name must be between 2 and 50 characters")
    if not _NAME_PATTERN.match(value):
        raise ValueError("Name can only contain letters and spaces")
    return value


def validate_hex_token(value: str) -> str:
    if not isinstance(value, str) or not _HEX_TOKEN.match(value):
        raise ValueError("Invalid token format")
    return value.lower()


class _Request(BaseModel):
    """camelCase on the wire; snake_case is accepted too."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")


class RegisterRequest(_Request):
    email: str
    password: str
    first_name: str
    last_name: str
    role: Optional[Literal["user", "manager", "admin"]] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)


class LoginRequest(_Request):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(_Request):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(_Request):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class EmailRequest(_Request):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(_Request):
    token: str
    password: str

    @field_validator("token")
    @classmethod
    def _validate_reset_token(cls, value: str) -> str:
        return validate_hex_token(value)

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class ChangePasswordRequest(_Request):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class PreferencesUpdate(_Request):
    theme: Optional[Literal["light", "dark", "auto"]] = None
    language: Optional[str] = Field(default=None, min_length=2, max_length=10)
    timezone: Optional[str] = Field(default=None, min_length=3, max_length=50)
    email_notifications: Optional[bool] = None
    push_notifications: Optional[bool] = None
    weekly_digest: Optional[bool] = None


class ProfileUpdateRequest(_Request):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    preferences: Optional[PreferencesUpdate] = None

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)

    def to_updates(self) -> dict:
        updates = self.model_dump(exclude_none=True, exclude={"preferences"})
        if self.preferences is not None:
            updates["preferences"] = self.preferences.model_dump(exclude_none=True)
        return updates


class TwoFactorRequest(_Request):
    two_factor_token: str = Field(..., min_length=6, max_length=6, pattern=r"^[0-9]+$")


class UserAdminUpdateRequest(_Request):
    role: Optional[Literal["admin", "manager", "user", "guest"]] = None
    is_active: Optional[bool] = None


class TaskCreateRequest(_Request):
    title: str = Field(..., min_length=1, max_length=200)
    assigned_to_id: Optional[str] = Field(default=None, max_length=64)


class UserResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    id: str
    email: str
    first_name: str
    last_name: str
    full_name: str
    role: str
    is_active: bool
    is_email_verified: bool
    two_factor_enabled: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    preferences: dict = Field(default_factory=dict)

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            full_name=user.full_name,
            role=user.role,
            is_active=user.is_active,
            is_email_verified=user.is_email_verified,
            two_factor_enabled=user.two_factor_enabled,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
            updated_at=user.updated_at,
            preferences={to_camel(k): v for k, v in (user.preferences or {}).items()},
        )

    def dump(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class TokenResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class TaskResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    id: str
    title: str
    created_by_id: str
    assigned_to_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            title=task.title,
            created_by_id=task.created_by_id,
            assigned_to_id=task.assigned_to_id,
            created_at=task.created_at,
        )

    def dump(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
