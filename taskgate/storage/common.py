"""Storage utilities shared between the memory and postgres implementations."""

from __future__ import annotations

import hashlib
import json
import uuid
from typing import Any, Dict, Optional

from taskgate.storage.models import DEFAULT_PREFERENCES

# Columns a caller may change through ``update_user``. The password hash and
# ``password_changed_at`` only move together through ``save_password``.
USER_MUTABLE_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "role",
        "is_active",
        "is_email_verified",
        "two_factor_enabled",
        "login_attempts",
        "lock_until",
        "last_login_at",
        "preferences",
        "email_verification_token_hash",
        "email_verification_expires",
        "password_reset_token_hash",
        "password_reset_expires",
    }
)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def hash_one_time_token(token: str) -> str:
    """Digest used to store verification and reset tokens at rest."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def check_mutable_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - USER_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported user fields: {sorted(unknown)}")


def normalize_preferences(preferences: Optional[Dict]) -> Dict:
    """Fill missing preference keys with their defaults."""
    merged = dict(DEFAULT_PREFERENCES)
    if preferences:
        merged.update(preferences)
    return merged


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a JSON column that may come back as text or as a dict."""
    if raw_meta is None:
        return None
    if isinstance(raw_meta, dict):
        return raw_meta
    if isinstance(raw_meta, (str, bytes)):
        try:
            parsed = json.loads(raw_meta)
        except (TypeError, ValueError):
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Extract a value from a dict-like row or an object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    return str(uuid.uuid4())
