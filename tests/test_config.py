"""Tests for environment-driven settings."""

import stat

import pytest
from pydantic import ValidationError

from taskgate.config import Settings, get_settings, reset_settings_cache


def test_defaults(tmp_path):
    settings = Settings(
        shared_fs_root=str(tmp_path), jwt_secret="a" * 40, jwt_refresh_secret="b" * 40
    )

    assert settings.access_token_ttl_seconds == 7 * 24 * 3600
    assert settings.refresh_token_ttl_seconds == 30 * 24 * 3600
    assert settings.lockout_max_attempts == 5
    assert settings.lockout_duration_minutes == 15
    assert settings.auth_rate_limit_max_requests == 5
    assert settings.rate_limit_max_requests == 100
    assert settings.rate_limit_window_seconds == 900


def test_secrets_generated_and_persisted(tmp_path):
    first = Settings(shared_fs_root=str(tmp_path))
    second = Settings(shared_fs_root=str(tmp_path))

    assert first.jwt_secret and first.jwt_refresh_secret
    assert first.jwt_secret != first.jwt_refresh_secret
    assert second.jwt_secret == first.jwt_secret
    secret_file = tmp_path / ".jwt_secret"
    assert stat.S_IMODE(secret_file.stat().st_mode) == 0o600


def test_secrets_must_differ(tmp_path):
    with pytest.raises(ValidationError):
        Settings(shared_fs_root=str(tmp_path), jwt_secret="same" * 10, jwt_refresh_secret="same" * 10)


def test_ttls_must_be_positive(tmp_path):
    with pytest.raises(ValidationError):
        Settings(
            shared_fs_root=str(tmp_path),
            jwt_secret="a" * 40,
            jwt_refresh_secret="b" * 40,
            lockout_max_attempts=0,
        )


def test_from_env_reads_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.setenv("LOCKOUT_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("RATE_LIMIT_WINDOW_SECONDS", "60")
    monkeypatch.setenv("USE_MEMORY_STORE", "true")

    settings = Settings.from_env()

    assert settings.lockout_max_attempts == 3
    assert settings.rate_limit_window_seconds == 60
    assert settings.use_memory_store is True


def test_from_env_reads_dotenv_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("LOCKOUT_DURATION_MINUTES", raising=False)
    (tmp_path / ".env").write_text("LOCKOUT_DURATION_MINUTES=30\n")

    assert Settings.from_env().lockout_duration_minutes == 30


def test_environment_wins_over_dotenv(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("LOCKOUT_DURATION_MINUTES=30\n")
    monkeypatch.setenv("LOCKOUT_DURATION_MINUTES", "45")

    assert Settings.from_env().lockout_duration_minutes == 45


def test_get_settings_is_cached(monkeypatch):
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("LOCKOUT_MAX_ATTEMPTS", "7")
    reset_settings_cache()
    assert get_settings().lockout_max_attempts == 7
