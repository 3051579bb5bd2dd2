"""
Log-safe text helpers.

Provider error descriptions and exception messages can echo request URLs,
which carry the bot token. Everything that ends up in a log line or in a
last_error column goes through sanitize_for_log first.
"""
import logging
import re
import traceback

_CONTROL_CHARS = re.compile(r"[\r\n\t]")
_TOKEN = re.compile(r"(?<![A-Za-z0-9_-])\d{5,}:[A-Za-z0-9_-]{10,}(?![A-Za-z0-9_-])")
_BOT_TOKEN = re.compile(r"(?i)bot\d{5,}:[A-Za-z0-9_-]{10,}")


def redact_tokens(text: str) -> str:
    text = _BOT_TOKEN.sub("bot<redacted>", text)
    return _TOKEN.sub("<bot_token_redacted>", text)


def sanitize_for_log(text: str | None, max_len: int = 200) -> str:
    normalized = _CONTROL_CHARS.sub(" ", text or "")
    return redact_tokens(normalized).strip()[:max_len]


def describe_error(exc: BaseException, max_len: int = 500) -> str:
    """Short, redacted "<Type>: <message>" for storing as last_error."""
    message = str(exc) or exc.__class__.__name__
    return sanitize_for_log(f"{exc.__class__.__name__}: {message}", max_len=max_len)


def debug_exception(logger: logging.Logger, exc: BaseException, message: str) -> None:
    """Log a redacted traceback, only when debug logging is on."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    logger.debug("%s: %s", sanitize_for_log(message, 500), redact_tokens(trace)[:8000])
