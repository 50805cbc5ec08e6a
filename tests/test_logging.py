from authcore.logging import _redact_pii, get_correlation_id, redact_email, set_correlation_id


def test_secrets_are_masked():
    event = _redact_pii(None, "info", {
        "event": "login_failed",
        "password": "hunter2hunter2",
        "recovery_token": "abcdefghij",
        "code": "123456",
    })
    assert event["event"] == "login_failed"
    assert event["password"] == "hu***r2"
    assert event["recovery_token"] == "ab***ij"
    assert event["code"] == "12***56"


def test_error_code_fields_are_kept():
    event = _redact_pii(None, "info", {"event": "x", "error_code": "locked", "status_code": 429})
    assert event["error_code"] == "locked"
    assert event["status_code"] == 429


def test_short_values_fully_masked():
    event = _redact_pii(None, "info", {"event": "x", "otp": "123"})
    assert event["otp"] == "***"


def test_redact_email():
    assert redact_email("alice@example.com") == "al***@example.com"
    assert redact_email(None) == "redacted"
    assert redact_email("not-an-email") == "redacted"


def test_correlation_id_roundtrip():
    cid = set_correlation_id("req-123")
    assert cid == "req-123"
    assert get_correlation_id() == "req-123"
    assert set_correlation_id() != "req-123"
