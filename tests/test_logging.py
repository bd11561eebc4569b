from tinyauth.logging import (
    _redact_tokens,
    get_correlation_id,
    mask_token,
    set_correlation_id,
)


def test_mask_token_keeps_ends_only():
    assert mask_token("0123456789abcdef") == "0123***cdef"
    assert mask_token("short") == "***"
    assert mask_token(None) is None


def test_redaction_processor_masks_sensitive_keys():
    event = {
        "event": "session_issued",
        "token": "0123456789abcdef",
        "authorization": "Bearer 0123456789abcdef",
        "token_style": "uuid",
        "login_id": "alice",
    }
    redacted = _redact_tokens(None, "info", dict(event))
    assert redacted["token"] == "0123***cdef"
    assert redacted["authorization"] == "Bear***cdef"
    assert redacted["token_style"] == "uuid"
    assert redacted["login_id"] == "alice"


def test_correlation_id_generated_when_absent():
    generated = set_correlation_id()
    assert get_correlation_id() == generated
    assert set_correlation_id("req-1") == "req-1"
