"""Tests for the admin bootstrap script."""

import pytest

from conftest import STRONG_PASSWORD
from scripts.bootstrap_admin import bootstrap_admin, main


async def test_creates_verified_admin(runtime):
    result = await bootstrap_admin("Root@Example.com", STRONG_PASSWORD, runtime=runtime)

    assert result["status"] == "created"
    user = runtime.store.get_user(result["user_id"])
    assert user.email == "root@example.com"
    assert user.role == "admin"
    assert user.is_email_verified is True


async def test_promotes_existing_user(runtime):
    registered = await runtime.auth.register("jane@example.com", STRONG_PASSWORD, "Jane", "Doe")

    result = await bootstrap_admin("jane@example.com", STRONG_PASSWORD, runtime=runtime)

    assert result == {"user_id": registered.user.id, "email": "jane@example.com", "status": "promoted"}
    assert runtime.store.get_user(registered.user.id).role == "admin"


async def test_existing_admin_is_left_alone(runtime):
    await bootstrap_admin("root@example.com", STRONG_PASSWORD, runtime=runtime)

    result = await bootstrap_admin("root@example.com", STRONG_PASSWORD, runtime=runtime)

    assert result["status"] == "already_admin"


async def test_dry_run_makes_no_changes(runtime):
    registered = await runtime.auth.register("jane@example.com", STRONG_PASSWORD, "Jane", "Doe")

    promote = await bootstrap_admin(
        "jane@example.com", STRONG_PASSWORD, dry_run=True, runtime=runtime
    )
    create = await bootstrap_admin(
        "new@example.com", STRONG_PASSWORD, dry_run=True, runtime=runtime
    )

    assert promote["status"] == "dry_run"
    assert create == {"user_id": None, "email": "new@example.com", "status": "dry_run"}
    assert runtime.store.get_user(registered.user.id).role == "user"
    assert runtime.store.get_user_by_email("new@example.com") is None


def test_main_rejects_weak_password(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--email", "root@example.com", "--password", "weak"])

    assert excinfo.value.code == 1
    assert "at least 8 characters" in capsys.readouterr().out


def test_main_requires_email(monkeypatch):
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    with pytest.raises(SystemExit):
        main(["--password", STRONG_PASSWORD])
