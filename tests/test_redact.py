"""Tests for log-safe text helpers."""
from venue_relay.utils.redact import describe_error, redact_tokens, sanitize_for_log

TOKEN = "123456789:AAHdqTcvCH1vGWJxfSeofSAs0K5PALDsaw"


def test_token_in_url_is_redacted():
    text = f"POST https://api.telegram.org/bot{TOKEN}/sendMessage failed"
    redacted = redact_tokens(text)
    assert TOKEN not in redacted
    assert "bot<redacted>" in redacted


def test_bare_token_is_redacted():
    assert redact_tokens(f"token={TOKEN}") == "token=<bot_token_redacted>"


def test_sanitize_strips_control_chars_and_truncates():
    assert sanitize_for_log("line1\nline2\tend") == "line1 line2 end"
    assert len(sanitize_for_log("x" * 1000, max_len=50)) == 50
    assert sanitize_for_log(None) == ""


def test_describe_error():
    assert describe_error(ValueError("bad value")) == "ValueError: bad value"
    assert describe_error(RuntimeError()) == "RuntimeError: RuntimeError"
