from tenantgate.logging import _redact_pii, get_request_id, set_request_id


def test_set_request_id_accepts_short_printable_ids():
    assert set_request_id("trace-123") == "trace-123"
    assert get_request_id() == "trace-123"


def test_set_request_id_replaces_unusable_ids():
    for candidate in (None, "", "   ", "x" * 129, "bad\nid"):
        generated = set_request_id(candidate)
        assert generated != candidate
        assert len(generated) == 36
        assert get_request_id() == generated


def test_redact_pii_masks_sensitive_keys():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_rejected",
            "email": "someone@example.com",
            "session_token": "abcdefghijkl",
            "user_id": "user-1",
        },
    )
    assert event["email"] == "so***om"
    assert event["session_token"] == "ab***kl"
    assert event["user_id"] == "user-1"
