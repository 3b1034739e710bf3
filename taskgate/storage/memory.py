from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from taskgate.logging import get_logger
from taskgate.storage.common import (
    check_mutable_fields,
    generate_uuid,
    hash_one_time_token,
    normalize_email,
    normalize_preferences,
)
from taskgate.storage.errors import ConstraintViolation
from taskgate.storage.models import Role, Task, User, utcnow


class MemoryStore:
    """In-process store with JSON persistence under ``fs_root/state``."""

    def __init__(self, fs_root: str = "/tmp/taskgate") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.tasks: Dict[str, Task] = {}
        # RLock so helpers can re-enter while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> dict:
        with self._data_lock:
            return {"status": "ok", "users": len(self.users)}

    # users
    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        role: str = Role.USER.value,
        is_active: bool = True,
        preferences: Optional[Dict] = None,
        now: Optional[datetime] = None,
    ) -> User:
        email = normalize_email(email)
        created_at = now or utcnow()
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=generate_uuid(),
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=role,
                is_active=is_active,
                preferences=normalize_preferences(preferences),
                created_at=created_at,
                updated_at=created_at,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[offset : offset + limit]]

    def update_user(self, user_id: str, *, now: Optional[datetime] = None, **fields) -> Optional[User]:
        check_mutable_fields(fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = now or utcnow()
            self._persist_state()
            return replace(user)

    def increment_login_attempts(self, user_id: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0
            user.login_attempts += 1
            self._persist_state()
            return user.login_attempts

    def get_user_by_verification_token(self, token: str) -> Optional[User]:
        digest = hash_one_time_token(token)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email_verification_token_hash == digest),
                None,
            )
            return replace(user) if user else None

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        digest = hash_one_time_token(token)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.password_reset_token_hash == digest),
                None,
            )
            return replace(user) if user else None

    # credentials
    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            user.password_changed_at = changed_at or utcnow()
            user.updated_at = user.password_changed_at
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # tasks
    def create_task(
        self,
        title: str,
        created_by_id: str,
        *,
        assigned_to_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Task:
        with self._data_lock:
            for ref in (created_by_id, assigned_to_id):
                if ref and ref not in self.users:
                    raise ConstraintViolation("user not found for task", {"user_id": ref})
            task = Task(
                id=generate_uuid(),
                title=title,
                created_by_id=created_by_id,
                assigned_to_id=assigned_to_id,
                created_at=now or utcnow(),
            )
            self.tasks[task.id] = task
            self._persist_state()
            return replace(task)

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._data_lock:
            task = self.tasks.get(task_id)
            return replace(task) if task else None

    def delete_task(self, task_id: str) -> bool:
        with self._data_lock:
            if self.tasks.pop(task_id, None) is None:
                return False
            self._persist_state()
            return True

    def close(self) -> None:
        return None

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "tasks": [self._serialize_task(t) for t in self.tasks.values()],
        }
        path = self._state_path()
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=f"{path.stem}_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except ValueError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.tasks = {t["id"]: self._deserialize_task(t) for t in data.get("tasks", [])}
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "role": user.role,
            "is_active": user.is_active,
            "is_email_verified": user.is_email_verified,
            "two_factor_enabled": user.two_factor_enabled,
            "login_attempts": user.login_attempts,
            "lock_until": self._serialize_datetime(user.lock_until),
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "preferences": user.preferences,
            "email_verification_token_hash": user.email_verification_token_hash,
            "email_verification_expires": self._serialize_datetime(
                user.email_verification_expires
            ),
            "password_reset_token_hash": user.password_reset_token_hash,
            "password_reset_expires": self._serialize_datetime(user.password_reset_expires),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            role=data.get("role", Role.USER.value),
            is_active=data.get("is_active", True),
            is_email_verified=data.get("is_email_verified", False),
            two_factor_enabled=data.get("two_factor_enabled", False),
            login_attempts=data.get("login_attempts", 0),
            lock_until=self._deserialize_datetime(data.get("lock_until")),
            password_changed_at=self._deserialize_datetime(data.get("password_changed_at")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            preferences=normalize_preferences(data.get("preferences")),
            email_verification_token_hash=data.get("email_verification_token_hash"),
            email_verification_expires=self._deserialize_datetime(
                data.get("email_verification_expires")
            ),
            password_reset_token_hash=data.get("password_reset_token_hash"),
            password_reset_expires=self._deserialize_datetime(data.get("password_reset_expires")),
        )

    def _serialize_task(self, task: Task) -> dict:
        return {
            "id": task.id,
            "title": task.title,
            "created_by_id": task.created_by_id,
            "assigned_to_id": task.assigned_to_id,
            "created_at": self._serialize_datetime(task.created_at),
        }

    def _deserialize_task(self, data: dict) -> Task:
        return Task(
            id=str(data["id"]),
            title=data["title"],
            created_by_id=data["created_by_id"],
            assigned_to_id=data.get("assigned_to_id"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
