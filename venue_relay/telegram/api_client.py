"""
Bot API calls for the outbox worker.

call() never raises for provider-side failures: every TelegramError is turned
into a CallFailure with the numeric error code the Bot API would have sent,
so the worker decides on retry / fail from one value. Unexpected exceptions
(programming errors) still propagate.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from telegram import Bot, InlineKeyboardMarkup, TelegramObject
from telegram.error import (
    BadRequest,
    ChatMigrated,
    Conflict,
    Forbidden,
    InvalidToken,
    RetryAfter,
    TelegramError,
)

from venue_relay.exceptions import InvalidPayloadError
from venue_relay.utils.redact import sanitize_for_log

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallSuccess:
    body: Any = None


@dataclass(frozen=True)
class CallFailure:
    error_code: int | None
    description: str | None = None
    retry_after_seconds: int | None = None


CallResult = CallSuccess | CallFailure


def _seconds(value: int | float | timedelta) -> int:
    if isinstance(value, timedelta):
        return int(value.total_seconds())
    return int(value)


def failure_from_error(error: TelegramError) -> CallFailure:
    """Map a python-telegram-bot exception to the Bot API error code."""
    description = sanitize_for_log(error.message, max_len=500)
    if isinstance(error, RetryAfter):
        return CallFailure(429, description, _seconds(error.retry_after))
    if isinstance(error, ChatMigrated):
        return CallFailure(400, description)
    if isinstance(error, InvalidToken):
        return CallFailure(401, description)
    if isinstance(error, Forbidden):
        return CallFailure(403, description)
    if isinstance(error, Conflict):
        return CallFailure(409, description)
    # BadRequest subclasses NetworkError; check it first
    if isinstance(error, BadRequest):
        return CallFailure(400, description)
    # NetworkError, TimedOut and anything unknown: no code, retryable
    return CallFailure(None, description)


def _body(result: Any) -> Any:
    if isinstance(result, TelegramObject):
        return result.to_dict()
    return result


class TelegramApiClient:

    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    async def call(self, method: str, payload: dict) -> CallResult:
        try:
            result = await self._dispatch(method, dict(payload))
        except TelegramError as e:
            failure = failure_from_error(e)
            logger.debug(
                "Bot API %s failed: code=%s %s", method, failure.error_code, failure.description
            )
            return failure
        except KeyError as e:
            raise InvalidPayloadError(f"{method} payload missing {e.args[0]!r}") from e
        return CallSuccess(_body(result))

    async def _dispatch(self, method: str, payload: dict) -> Any:
        if "reply_markup" in payload and isinstance(payload["reply_markup"], dict):
            payload["reply_markup"] = InlineKeyboardMarkup.de_json(
                payload["reply_markup"], self.bot
            )

        if method == "sendMessage":
            return await self.bot.send_message(
                chat_id=payload.pop("chat_id"),
                text=payload.pop("text"),
                parse_mode=payload.pop("parse_mode", None),
                reply_markup=payload.pop("reply_markup", None),
                api_kwargs=payload or None,
            )
        if method == "answerCallbackQuery":
            return await self.bot.answer_callback_query(
                callback_query_id=payload.pop("callback_query_id"),
                text=payload.pop("text", None),
                show_alert=payload.pop("show_alert", None),
                api_kwargs=payload or None,
            )
        if method == "editMessageText":
            return await self.bot.edit_message_text(
                text=payload.pop("text"),
                chat_id=payload.pop("chat_id", None),
                message_id=payload.pop("message_id", None),
                parse_mode=payload.pop("parse_mode", None),
                reply_markup=payload.pop("reply_markup", None),
                api_kwargs=payload or None,
            )
        if isinstance(payload.get("reply_markup"), InlineKeyboardMarkup):
            payload["reply_markup"] = payload["reply_markup"].to_dict()
        return await self.bot.do_api_request(method, api_kwargs=payload)
