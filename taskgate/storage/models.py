from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Account roles; each user holds exactly one."""

    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"
    GUEST = "guest"


DEFAULT_PREFERENCES: Dict[str, object] = {
    "theme": "auto",
    "language": "en",
    "timezone": "UTC",
    "email_notifications": True,
    "push_notifications": True,
    "weekly_digest": False,
}


@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str
    role: str = Role.USER.value
    is_active: bool = True
    is_email_verified: bool = False
    two_factor_enabled: bool = False
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    preferences: Dict | None = None
    # Only SHA-256 digests of one-time tokens are kept
    email_verification_token_hash: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    password_reset_token_hash: Optional[str] = None
    password_reset_expires: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Task:
    """Minimal ownable resource used by the ownership policy."""

    id: str
    title: str
    created_by_id: str
    assigned_to_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
