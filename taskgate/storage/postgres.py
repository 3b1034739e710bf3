from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from taskgate.logging import get_logger
from taskgate.storage.common import (
    check_mutable_fields,
    generate_uuid,
    hash_one_time_token,
    normalize_email,
    normalize_preferences,
    parse_json_meta,
    safe_row_value,
)
from taskgate.storage.errors import ConstraintViolation
from taskgate.storage.models import Role, Task, User, utcnow

logger = get_logger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        login_attempts INTEGER NOT NULL DEFAULT 0,
        lock_until TIMESTAMPTZ,
        password_changed_at TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        preferences JSONB,
        email_verification_token_hash TEXT,
        email_verification_expires TIMESTAMPTZ,
        password_reset_token_hash TEXT,
        password_reset_expires TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        created_by_id TEXT NOT NULL REFERENCES app_user(id),
        assigned_to_id TEXT REFERENCES app_user(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS app_user_reset_token_idx ON app_user (password_reset_token_hash)",
    "CREATE INDEX IF NOT EXISTS app_user_verify_token_idx ON app_user (email_verification_token_hash)",
)


class PostgresStore:
    """Postgres-backed store for users, credentials and tasks."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        logger.info("postgres_schema_ready", tables=["app_user", "user_auth_credential", "task"])

    def verify_connection(self) -> dict:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS users FROM app_user").fetchone()
        return {"status": "ok", "users": int(safe_row_value(row, "users", 0) or 0)}

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name", ""),
            last_name=row.get("last_name", ""),
            role=row.get("role", Role.USER.value),
            is_active=row.get("is_active", True),
            is_email_verified=row.get("is_email_verified", False),
            two_factor_enabled=row.get("two_factor_enabled", False),
            login_attempts=row.get("login_attempts") or 0,
            lock_until=row.get("lock_until"),
            password_changed_at=row.get("password_changed_at"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            preferences=normalize_preferences(parse_json_meta(row.get("preferences"))),
            email_verification_token_hash=row.get("email_verification_token_hash"),
            email_verification_expires=row.get("email_verification_expires"),
            password_reset_token_hash=row.get("password_reset_token_hash"),
            password_reset_expires=row.get("password_reset_expires"),
        )

    @staticmethod
    def _task_from_row(row: Dict[str, Any]) -> Task:
        return Task(
            id=str(row["id"]),
            title=row["title"],
            created_by_id=str(row["created_by_id"]),
            assigned_to_id=str(row["assigned_to_id"]) if row.get("assigned_to_id") else None,
            created_at=row.get("created_at") or utcnow(),
        )

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM app_user WHERE {where} = %s", (value,)).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

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
        user = User(
            id=generate_uuid(),
            email=normalize_email(email),
            first_name=first_name,
            last_name=last_name,
            role=role,
            is_active=is_active,
            preferences=normalize_preferences(preferences),
        )
        user.created_at = user.updated_at = now or utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, role, is_active, preferences, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.first_name,
                        user.last_name,
                        user.role,
                        user.is_active,
                        json.dumps(user.preferences),
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", normalize_email(email))

    def get_user_by_verification_token(self, token: str) -> Optional[User]:
        return self._fetch_user("email_verification_token_hash", hash_one_time_token(token))

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        return self._fetch_user("password_reset_token_hash", hash_one_time_token(token))

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user(self, user_id: str, *, now: Optional[datetime] = None, **fields) -> Optional[User]:
        check_mutable_fields(fields)
        assignments = []
        params: List[Any] = []
        # Column names come from USER_MUTABLE_FIELDS, never from callers
        for key, value in fields.items():
            assignments.append(f"{key} = %s")
            params.append(json.dumps(value) if key == "preferences" else value)
        assignments.append("updated_at = %s")
        params.append(now or utcnow())
        params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                tuple(params),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def increment_login_attempts(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET login_attempts = login_attempts + 1 WHERE id = %s RETURNING login_attempts",
                (user_id,),
            ).fetchone()
        return int(safe_row_value(row, "login_attempts", 0) or 0) if row else 0

    # credentials
    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None:
        changed_at = changed_at or utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = EXCLUDED.last_updated_at
                    """,
                    (user_id, password_hash, password_algo, changed_at),
                )
                conn.execute(
                    "UPDATE app_user SET password_changed_at = %s, updated_at = %s WHERE id = %s",
                    (changed_at, changed_at, user_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # tasks
    def create_task(
        self,
        title: str,
        created_by_id: str,
        *,
        assigned_to_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Task:
        task = Task(
            id=generate_uuid(),
            title=title,
            created_by_id=created_by_id,
            assigned_to_id=assigned_to_id,
            created_at=now or utcnow(),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO task (id, title, created_by_id, assigned_to_id, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (task.id, task.title, task.created_by_id, task.assigned_to_id, task.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for task", {"field": "assigned_to_id"})
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM task WHERE id = %s", (task_id,)).fetchone()
        if not row:
            return None
        return self._task_from_row(row)

    def delete_task(self, task_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("DELETE FROM task WHERE id = %s RETURNING id", (task_id,)).fetchone()
        return bool(row)
