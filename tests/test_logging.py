from taskgate.logging import (
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


def test_redacts_credential_keys():
    event = _redact_pii(None, "info", {"password": "Str0ng@Pass", "email": "jane@example.com", "user_id": "u-123456"})

    assert event["password"] == "St***ss"
    assert event["email"] == "ja***om"
    assert event["user_id"] == "u-123456"


def test_correlation_id_generated_when_missing():
    cid = set_correlation_id()
    assert cid and get_correlation_id() == cid
    assert set_correlation_id("req-42") == "req-42"


def test_sanitize_error_message():
    raw = "database error: connection to db failed at /var/lib/pg password=hunter2"
    cleaned = sanitize_error_message(raw)

    assert "/var/lib/pg" not in cleaned
    assert "hunter2" not in cleaned
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 900)) == 500


def test_bearer_tokens_scrubbed_from_free_text():
    event = _redact_pii(None, "warning", {"event": "bad_header", "header": "Bearer eyJhbGc.eyJzdWIi.c2ln"})

    assert event["header"] == "Bearer [token]"
