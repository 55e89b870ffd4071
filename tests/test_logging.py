"""Log processors: PII redaction and correlation ids."""

from gatehouse.logging import (
    _add_correlation_id,
    _redact_pii,
    correlation_id_var,
    redact_value,
)


def test_redact_value_keeps_edges():
    assert redact_value("ada@example.com") == "ad***om"
    assert redact_value("1234") == "***"


def test_sensitive_keys_redacted():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "password_reset_requested",
            "email": "ada@example.com",
            "token_prefix": "gAAAAABm",
            "new_password": "hunter22",
            "user_id": 1,
            "code_present": True,
        },
    )
    assert event["event"] == "password_reset_requested"
    assert event["email"] == "ad***om"
    assert event["token_prefix"] == "gA***Bm"
    assert event["new_password"] == "hu***22"
    assert event["user_id"] == 1
    assert event["code_present"] is True


def test_reset_codes_redacted_but_error_codes_kept():
    event = _redact_pii(
        None,
        "warning",
        {
            "event": "service_error",
            "code": "012345",
            "reset_code": "987654",
            "error_code": "rate_limited",
            "status_code": 429,
        },
    )
    assert event["code"] == "01***45"
    assert event["reset_code"] == "98***54"
    assert event["error_code"] == "rate_limited"
    assert event["status_code"] == 429


def test_correlation_id_attached_when_set():
    token = correlation_id_var.set("req-1")
    try:
        event = _add_correlation_id(None, "info", {"event": "x"})
    finally:
        correlation_id_var.reset(token)
    assert event["correlation_id"] == "req-1"
    assert "correlation_id" not in _add_correlation_id(None, "info", {"event": "x"})
