"""
Webhook common layer — helpers shared by the webhook route and the router.

Responsibilities:
1. Verify Telegram secret token (403 if invalid)
2. Validate the update envelope (400 if there is no integer update_id)
3. Extract chat / user ids from any kind of update
"""
import hmac
import logging

from fastapi import HTTPException, Request
from telegram import Update

logger = logging.getLogger(__name__)

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


def verify_secret(request: Request, expected_secret: str) -> None:
    """
    Check X-Telegram-Bot-Api-Secret-Token header.
    Raises 403 if missing or mismatched.
    """
    token = request.headers.get(SECRET_HEADER, "")
    if not hmac.compare_digest(token.encode(), expected_secret.encode()):
        raise HTTPException(status_code=403, detail="Invalid webhook secret")


def require_update_id(data) -> int:
    """Return the update_id of a decoded body. Raises 400 if there is none."""
    update_id = data.get("update_id") if isinstance(data, dict) else None
    # bool is an int subclass; a JSON true is not an update id
    if not isinstance(update_id, int) or isinstance(update_id, bool):
        raise HTTPException(status_code=400, detail="update_id is required")
    return update_id


def extract_chat_id(update: Update) -> int | None:
    """Extract chat_id from any type of Telegram update."""
    if update.message:
        return update.message.chat_id
    if update.callback_query and update.callback_query.message:
        return update.callback_query.message.chat.id
    if update.edited_message:
        return update.edited_message.chat_id
    return None


def extract_user_id(update: Update) -> int | None:
    """Extract user telegram_id from any type of Telegram update."""
    if update.message:
        return update.message.from_user.id if update.message.from_user else None
    if update.callback_query:
        return update.callback_query.from_user.id if update.callback_query.from_user else None
    if update.edited_message:
        return update.edited_message.from_user.id if update.edited_message.from_user else None
    return None
