"""
Bot router — turns one stored update into state changes and outbox rows.

Flows:
- /start → reset dialog, main menu
- /help → command list
- /cancel → reset dialog
- /order or "✍️ Быстрый заказ" → QUICK_ORDER_WAIT_TEXT
- text in QUICK_ORDER_WAIT_TEXT → QUICK_ORDER_WAIT_CONFIRM + confirm keyboard
- quick_order_confirm / quick_order_edit / quick_order_cancel callbacks
- every callback query is answered (answerCallbackQuery via the outbox)

The router never calls the Bot API itself. Everything it does goes through the
session it is given, so the inbound worker commits the idempotency claim, the
dialog state and the replies in one transaction, or none of them.
"""
import enum
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession
from telegram import (
    Bot,
    CallbackQuery,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    Message,
    Update,
)

from venue_relay.exceptions import NonRetryableError
from venue_relay.services.dialog_state import DialogStateStore, DialogStateType
from venue_relay.services.idempotency import IdempotencyStore
from venue_relay.services.outbox import OutboxEnqueuer
from venue_relay.utils.idempotency import update_key
from venue_relay.utils.redact import describe_error, sanitize_for_log
from venue_relay.webhooks.common import extract_chat_id, extract_user_id

logger = logging.getLogger(__name__)


class RouteOutcome(str, enum.Enum):
    OK = "OK"          # handled, or already handled before
    RETRY = "RETRY"    # transient, try again later
    REJECT = "REJECT"  # can never succeed


@dataclass(frozen=True)
class RouteResult:
    outcome: RouteOutcome
    reason: str | None = None

    @classmethod
    def ok(cls) -> "RouteResult":
        return cls(RouteOutcome.OK)

    @classmethod
    def retry(cls, reason: str) -> "RouteResult":
        return cls(RouteOutcome.RETRY, reason)

    @classmethod
    def reject(cls, reason: str) -> "RouteResult":
        return cls(RouteOutcome.REJECT, reason)


# Business collaborator for confirmed quick orders:
# (session, chat_id, user_id, text) → reply text for the guest.
# Raises NonRetryableError when the order can never be accepted.
QuickOrderHandler = Callable[[AsyncSession, int, int | None, str], Awaitable[str]]


# ──────────────────── Texts ────────────────────

QUICK_ORDER_BUTTON = "✍️ Быстрый заказ"

WELCOME_TEXT = "Добро пожаловать! Выберите действие."
HELP_TEXT = (
    "Команды:\n"
    "/order — быстрый заказ текстом\n"
    "/cancel — отменить текущее действие\n"
    "/help — эта справка"
)
FALLBACK_TEXT = "Используйте меню ниже."
CANCELLED_TEXT = "Действие отменено."
ASK_ORDER_TEXT = "Опишите, что хотите заказать."
ASK_DETAILS_TEXT = "Напишите детали заказа."
CONFIRM_TEXT = "Отправить запрос в заведение?\n\n{text}"
NO_ORDER_TEXT = "Нет текста заказа, отправьте заново."
ORDER_SENT_TEXT = "Запрос отправлен, ожидайте подтверждения."
ORDER_CANCELLED_TEXT = "Быстрый заказ отменён."
ORDER_UNAVAILABLE_TEXT = "Быстрый заказ сейчас недоступен."


# ──────────────────── Keyboards ────────────────────

def main_menu_kb() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(QUICK_ORDER_BUTTON, callback_data="start_quick_order")],
    ])


def confirm_quick_order_kb() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("✅ Отправить", callback_data="quick_order_confirm")],
        [InlineKeyboardButton("✏️ Изменить", callback_data="quick_order_edit")],
        [InlineKeyboardButton("❌ Отмена", callback_data="quick_order_cancel")],
    ])


def parse_command(text: str | None) -> str | None:
    """'/start@venue_bot payload' → '/start'."""
    if not text or not text.startswith("/"):
        return None
    return text.split(maxsplit=1)[0].split("@", 1)[0].lower()


class BotRouter:

    def __init__(
        self,
        idempotency: IdempotencyStore,
        enqueuer: OutboxEnqueuer,
        dialog_state: DialogStateStore,
        service_id: str = "venue",
        quick_order_handler: QuickOrderHandler | None = None,
        bot: Bot | None = None,
    ) -> None:
        self.idempotency = idempotency
        self.enqueuer = enqueuer
        self.dialog_state = dialog_state
        self.service_id = service_id
        self.quick_order_handler = quick_order_handler
        self.bot = bot

    async def process(
        self, session: AsyncSession, update_id: int, payload_json: str
    ) -> RouteResult:
        update = self._decode(payload_json)
        if update is None:
            return RouteResult.reject("malformed update payload")
        if update.update_id != update_id:
            logger.warning(
                "Stored update %s carries update_id %s", update_id, update.update_id
            )

        chat_id = extract_chat_id(update)
        key = update_key(self.service_id, update_id, chat_id)
        # before any side effect: a replayed update must be a no-op
        if not await self.idempotency.try_acquire(session, key):
            logger.info("Update %s already handled, skipping", update_id)
            return RouteResult.ok()

        try:
            if update.message:
                await self._handle_message(session, update.message, extract_user_id(update))
            elif update.callback_query:
                await self._handle_callback(session, update.callback_query)
            else:
                logger.debug("Ignored update %s without message or callback", update_id)
        except NonRetryableError as e:
            return RouteResult.reject(describe_error(e))
        return RouteResult.ok()

    def _decode(self, payload_json: str) -> Update | None:
        try:
            data = json.loads(payload_json)
        except ValueError:
            return None
        if not isinstance(data, dict) or not isinstance(data.get("update_id"), int):
            return None
        try:
            return Update.de_json(data, self.bot)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Undecodable update: %s", sanitize_for_log(str(e)))
            return None

    # ──────────────────── Messages ────────────────────

    async def _handle_message(
        self, session: AsyncSession, message: Message, user_id: int | None
    ) -> None:
        chat_id = message.chat_id
        text = (message.text or "").strip()
        command = parse_command(text)

        if command == "/start":
            await self.dialog_state.clear(session, chat_id)
            await self._reply(session, chat_id, WELCOME_TEXT, main_menu_kb())
            return

        if command == "/help":
            await self._reply(session, chat_id, HELP_TEXT)
            return

        if command == "/cancel":
            await self.dialog_state.clear(session, chat_id)
            await self._reply(session, chat_id, CANCELLED_TEXT, main_menu_kb())
            return

        if command == "/order" or text == QUICK_ORDER_BUTTON:
            await self._start_quick_order(session, chat_id)
            return

        state = await self.dialog_state.load(session, chat_id)
        if state.state == DialogStateType.QUICK_ORDER_WAIT_TEXT and text and not command:
            await self.dialog_state.save(
                session, chat_id, DialogStateType.QUICK_ORDER_WAIT_CONFIRM, {"text": text}
            )
            await self._reply(
                session, chat_id, CONFIRM_TEXT.format(text=text), confirm_quick_order_kb()
            )
            return

        await self._reply(session, chat_id, FALLBACK_TEXT, main_menu_kb())

    # ──────────────────── Callback queries ────────────────────

    async def _handle_callback(self, session: AsyncSession, query: CallbackQuery) -> None:
        chat_id = query.message.chat.id if query.message else None
        data = query.data

        if chat_id is not None:
            if data == "start_quick_order":
                await self._start_quick_order(session, chat_id)
            elif data == "quick_order_confirm":
                await self._confirm_quick_order(session, chat_id, query.from_user.id)
            elif data == "quick_order_edit":
                await self.dialog_state.save(
                    session, chat_id, DialogStateType.QUICK_ORDER_WAIT_TEXT
                )
                await self._reply(session, chat_id, ASK_DETAILS_TEXT)
            elif data == "quick_order_cancel":
                await self.dialog_state.clear(session, chat_id)
                await self._reply(session, chat_id, ORDER_CANCELLED_TEXT)
            else:
                logger.debug("Unknown callback data: %s", sanitize_for_log(data))

        # the spinner on the button stays until the query is answered
        await self.enqueuer.enqueue_answer_callback_query(
            session,
            chat_id if chat_id is not None else query.from_user.id,
            query.id,
        )

    # ──────────────────── Quick order ────────────────────

    async def _start_quick_order(self, session: AsyncSession, chat_id: int) -> None:
        await self.dialog_state.save(session, chat_id, DialogStateType.QUICK_ORDER_WAIT_TEXT)
        await self._reply(session, chat_id, ASK_ORDER_TEXT)

    async def _confirm_quick_order(
        self, session: AsyncSession, chat_id: int, user_id: int | None
    ) -> None:
        state = await self.dialog_state.load(session, chat_id)
        text = str(state.payload.get("text") or "").strip()
        if state.state != DialogStateType.QUICK_ORDER_WAIT_CONFIRM or not text:
            await self.dialog_state.save(
                session, chat_id, DialogStateType.QUICK_ORDER_WAIT_TEXT
            )
            await self._reply(session, chat_id, NO_ORDER_TEXT)
            return

        if self.quick_order_handler is None:
            await self.dialog_state.clear(session, chat_id)
            await self._reply(session, chat_id, ORDER_UNAVAILABLE_TEXT, main_menu_kb())
            return

        reply = await self.quick_order_handler(session, chat_id, user_id, text)
        await self.dialog_state.clear(session, chat_id)
        await self._reply(session, chat_id, reply or ORDER_SENT_TEXT)

    async def _reply(
        self,
        session: AsyncSession,
        chat_id: int,
        text: str,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> None:
        await self.enqueuer.enqueue_send_message(session, chat_id, text, reply_markup)
