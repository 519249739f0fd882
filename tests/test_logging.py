import hashlib

from assetauth.logging import (
    _add_correlation_id,
    _redact_secrets,
    get_correlation_id,
    set_correlation_id,
)


def test_token_values_become_fingerprint_hints():
    token = "eyJhbGciOi.abc.def"
    event = _redact_secrets(
        None, "info", {"event": "x", "refresh_token": token, "user_id": "alice"}
    )

    assert event["refresh_token"] == "sha256:" + hashlib.sha256(token.encode()).hexdigest()[:12]
    assert token not in event["refresh_token"]
    assert event["user_id"] == "alice"


def test_authorization_header_is_hinted():
    event = _redact_secrets(None, "info", {"Authorization": "Bearer abcdef"})

    assert event["Authorization"].startswith("sha256:")


def test_passwords_are_replaced():
    event = _redact_secrets(None, "info", {"password": "pw", "jwt_secret": "s" * 40})

    assert event["password"] == "***"
    assert event["jwt_secret"] == "***"


def test_non_string_values_untouched():
    assert _redact_secrets(None, "info", {"token_count": 3})["token_count"] == 3


def test_correlation_id_round_trip():
    cid = set_correlation_id("req-42")

    assert cid == "req-42"
    assert get_correlation_id() == "req-42"
    assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"


def test_correlation_id_generated_when_missing():
    assert len(set_correlation_id(None)) == 36
    assert len(set_correlation_id("   ")) == 36
