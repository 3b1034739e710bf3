import json
from datetime import timedelta
from unittest.mock import patch

import pytest

from taskgate.storage.common import hash_one_time_token
from taskgate.storage.errors import ConstraintViolation
from taskgate.storage.memory import MemoryStore
from taskgate.storage.models import utcnow


def test_create_user_normalizes_email_and_defaults(memory_store):
    user = memory_store.create_user("  Jane@Example.COM ", "Jane", "Doe")

    assert user.email == "jane@example.com"
    assert user.role == "user"
    assert user.is_active is True
    assert user.preferences["theme"] == "auto"
    assert memory_store.get_user_by_email("JANE@example.com").id == user.id


def test_duplicate_email_is_constraint_violation(memory_store):
    memory_store.create_user("jane@example.com", "Jane", "Doe")
    with pytest.raises(ConstraintViolation) as exc_info:
        memory_store.create_user("Jane@example.com", "Jane", "Doe")
    assert exc_info.value.detail == {"field": "email"}


def test_returned_users_are_copies(memory_store):
    user = memory_store.create_user("jane@example.com", "Jane", "Doe")
    user.role = "admin"

    assert memory_store.get_user(user.id).role == "user"


def test_update_user_rejects_unknown_fields(memory_store):
    user = memory_store.create_user("jane@example.com", "Jane", "Doe")
    with pytest.raises(ValueError):
        memory_store.update_user(user.id, password_changed_at=utcnow())
    assert memory_store.update_user("missing", first_name="X") is None


def test_increment_login_attempts(memory_store):
    user = memory_store.create_user("jane@example.com", "Jane", "Doe")

    assert memory_store.increment_login_attempts(user.id) == 1
    assert memory_store.increment_login_attempts(user.id) == 2
    assert memory_store.increment_login_attempts("missing") == 0


def test_save_password_bumps_password_changed_at(memory_store):
    user = memory_store.create_user("jane@example.com", "Jane", "Doe")
    changed = utcnow() + timedelta(minutes=5)
    memory_store.save_password(user.id, "digest", "argon2id", changed_at=changed)

    assert memory_store.get_password_record(user.id) == ("digest", "argon2id")
    assert memory_store.get_user(user.id).password_changed_at == changed
    with pytest.raises(ConstraintViolation):
        memory_store.save_password("missing", "digest", "argon2id")


def test_one_time_token_lookup_by_digest(memory_store):
    user = memory_store.create_user("jane@example.com", "Jane", "Doe")
    memory_store.update_user(
        user.id,
        password_reset_token_hash=hash_one_time_token("reset-token"),
        email_verification_token_hash=hash_one_time_token("verify-token"),
    )

    assert memory_store.get_user_by_reset_token("reset-token").id == user.id
    assert memory_store.get_user_by_verification_token("verify-token").id == user.id
    assert memory_store.get_user_by_reset_token("verify-token") is None


def test_tasks_require_known_users(memory_store):
    creator = memory_store.create_user("jane@example.com", "Jane", "Doe")
    task = memory_store.create_task("Write report", creator.id)

    assert memory_store.get_task(task.id).created_by_id == creator.id
    with pytest.raises(ConstraintViolation):
        memory_store.create_task("Orphan", creator.id, assigned_to_id="missing")
    assert memory_store.delete_task(task.id) is True
    assert memory_store.delete_task(task.id) is False


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com", "Per", "Sist", role="manager")
    lock_until = utcnow() + timedelta(minutes=15)
    store.update_user(user.id, lock_until=lock_until, login_attempts=5)
    store.save_password(user.id, "digest", "argon2id")
    task = store.create_task("Keep me", user.id)

    reloaded = MemoryStore(fs_root=str(tmp_path))
    reloaded_user = reloaded.get_user(user.id)

    assert reloaded_user.role == "manager"
    assert reloaded_user.login_attempts == 5
    assert reloaded_user.lock_until == lock_until
    assert reloaded.get_password_record(user.id) == ("digest", "argon2id")
    assert reloaded.get_task(task.id).title == "Keep me"


def test_state_write_leaves_no_temp_files(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("jane@example.com", "Jane", "Doe")
    store.create_user("john@example.com", "John", "Doe")

    state_dir = tmp_path / "state"
    assert [p.name for p in state_dir.iterdir()] == ["memory_store.json"]
    assert len(json.loads((state_dir / "memory_store.json").read_text())["users"]) == 2


def test_failed_state_write_keeps_previous_file(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("jane@example.com", "Jane", "Doe")
    state_file = tmp_path / "state" / "memory_store.json"
    before = state_file.read_text()

    with patch("taskgate.storage.memory.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(RuntimeError, match="failed to persist"):
            store.create_user("john@example.com", "John", "Doe")

    assert state_file.read_text() == before
    assert [p.name for p in state_file.parent.iterdir()] == ["memory_store.json"]


def test_corrupt_state_file_starts_empty(tmp_path):
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "memory_store.json").write_text("{not json")

    store = MemoryStore(fs_root=str(tmp_path))
    assert store.list_users() == []


def test_list_users_paginates_newest_first(memory_store):
    base = utcnow()
    for idx in range(3):
        memory_store.create_user(
            f"user{idx}@example.com", "User", "Test", now=base + timedelta(seconds=idx)
        )

    page = memory_store.list_users(limit=2, offset=0)
    assert [u.email for u in page] == ["user2@example.com", "user1@example.com"]
    assert [u.email for u in memory_store.list_users(limit=2, offset=2)] == ["user0@example.com"]
