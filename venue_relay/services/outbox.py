"""
Outbox — persisted intent to call the Bot API.

Producers call OutboxEnqueuer inside the same session as the business change
that justifies the notification; either both commit or neither does.
The outbox worker is the only component that moves rows afterwards.

Status stays NEW while a row is in flight: a claim bumps `attempts` and pushes
`next_attempt_at` forward by the visibility timeout, which keeps the row out
of every other worker's batch until it is reconciled or the lease expires.
The claimed `attempts` value identifies the claim: a worker passes it back on
renew and reconcile, and loses the row once somebody else has reclaimed it.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from telegram import InlineKeyboardMarkup

from venue_relay.database import store_errors, utcnow
from venue_relay.models.outbox_message import OutboxStatus, TelegramOutboxMessage

logger = logging.getLogger(__name__)

_UPDATE_OPTS = {"synchronize_session": False}

SEND_MESSAGE = "sendMessage"
ANSWER_CALLBACK_QUERY = "answerCallbackQuery"


@dataclass(frozen=True)
class ClaimedMessage:
    id: int
    chat_id: int
    method: str
    payload_json: str
    attempts: int  # including the current claim


class OutboxStore:

    async def enqueue(
        self,
        session: AsyncSession,
        chat_id: int,
        method: str,
        payload: dict | str,
        now: datetime | None = None,
    ) -> int:
        """
        Insert a NEW row due immediately and return its id.
        db.commit() is the caller's responsibility.
        """
        now = now or utcnow()
        if not isinstance(payload, str):
            payload = json.dumps(payload, ensure_ascii=False)
        message = TelegramOutboxMessage(
            chat_id=chat_id,
            method=method,
            payload_json=payload,
            status=OutboxStatus.NEW.value,
            attempts=0,
            next_attempt_at=now,
            created_at=now,
        )
        with store_errors("outbox enqueue"):
            session.add(message)
            await session.flush()  # populate id
        logger.debug("Outbox enqueued id=%s chat=%s method=%s", message.id, chat_id, method)
        return message.id

    async def claim_batch(
        self,
        session: AsyncSession,
        limit: int,
        now: datetime,
        visibility_timeout: timedelta,
    ) -> list[ClaimedMessage]:
        row = TelegramOutboxMessage
        due = (row.status == OutboxStatus.NEW.value, row.next_attempt_at <= now)
        lease_until = now + visibility_timeout
        with store_errors("outbox claim"):
            candidates = await session.execute(
                select(row.id)
                .where(*due)
                .order_by(row.created_at, row.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            claimed_ids = []
            for message_id in candidates.scalars().all():
                result = await session.execute(
                    update(row)
                    .where(row.id == message_id, *due)
                    .values(attempts=row.attempts + 1, next_attempt_at=lease_until)
                    .execution_options(**_UPDATE_OPTS)
                )
                if result.rowcount == 1:
                    claimed_ids.append(message_id)

            if not claimed_ids:
                return []

            rows = await session.execute(
                select(row)
                .where(row.id.in_(claimed_ids))
                .order_by(row.created_at, row.id)
                .execution_options(populate_existing=True)
            )
            return [
                ClaimedMessage(
                    id=r.id,
                    chat_id=r.chat_id,
                    method=r.method,
                    payload_json=r.payload_json,
                    attempts=r.attempts,
                )
                for r in rows.scalars().all()
            ]

    async def mark_sent(
        self,
        session: AsyncSession,
        message_id: int,
        now: datetime,
        attempts: int | None = None,
    ) -> bool:
        return await self._transition(
            session,
            message_id,
            attempts,
            status=OutboxStatus.SENT.value,
            sent_at=now,
            last_error=None,
        )

    async def mark_retry(
        self,
        session: AsyncSession,
        message_id: int,
        error: str,
        next_attempt_at: datetime,
        attempts: int | None = None,
    ) -> bool:
        return await self._transition(
            session,
            message_id,
            attempts,
            next_attempt_at=next_attempt_at,
            last_error=error,
        )

    async def mark_failed(
        self,
        session: AsyncSession,
        message_id: int,
        error: str,
        attempts: int | None = None,
    ) -> bool:
        return await self._transition(
            session,
            message_id,
            attempts,
            status=OutboxStatus.FAILED.value,
            last_error=error,
        )

    async def renew(
        self,
        session: AsyncSession,
        message_id: int,
        attempts: int,
        lease_until: datetime,
    ) -> bool:
        """
        Extend the lease of a claim right before the API call.
        False when the claim was lost: the lease expired and another worker
        claimed the row again, or the row is no longer NEW.
        """
        return await self._transition(session, message_id, attempts, next_attempt_at=lease_until)

    async def release(
        self,
        session: AsyncSession,
        message_id: int,
        attempts: int,
        next_attempt_at: datetime,
    ) -> bool:
        """Give a claim back without calling the API; the claim's attempt is refunded."""
        return await self._transition(
            session,
            message_id,
            attempts,
            attempts=TelegramOutboxMessage.attempts - 1,
            next_attempt_at=next_attempt_at,
        )

    async def _transition(
        self,
        session: AsyncSession,
        message_id: int,
        claimed_attempts: int | None = None,
        **values,
    ) -> bool:
        """
        Update a NEW row; SENT and FAILED rows never change again.
        With claimed_attempts, only the worker holding that claim may update it.
        """
        row = TelegramOutboxMessage
        stmt = update(row).where(row.id == message_id, row.status == OutboxStatus.NEW.value)
        if claimed_attempts is not None:
            stmt = stmt.where(row.attempts == claimed_attempts)
        with store_errors("outbox transition"):
            result = await session.execute(
                stmt.values(**values).execution_options(**_UPDATE_OPTS)
            )
        return result.rowcount == 1

    async def requeue_failed(
        self,
        session: AsyncSession,
        message_ids: list[int] | None = None,
        now: datetime | None = None,
    ) -> int:
        """Operational replay: FAILED → NEW with a fresh attempt budget."""
        row = TelegramOutboxMessage
        stmt = update(row).where(row.status == OutboxStatus.FAILED.value)
        if message_ids:
            stmt = stmt.where(row.id.in_(message_ids))
        with store_errors("outbox requeue"):
            result = await session.execute(
                stmt.values(
                    status=OutboxStatus.NEW.value,
                    attempts=0,
                    next_attempt_at=now or utcnow(),
                ).execution_options(**_UPDATE_OPTS)
            )
        logger.info("Requeued %d failed outbox messages", result.rowcount)
        return result.rowcount

    async def get(self, session: AsyncSession, message_id: int) -> TelegramOutboxMessage | None:
        return await session.get(TelegramOutboxMessage, message_id, populate_existing=True)

    async def queue_depth(self, session: AsyncSession) -> int:
        row = TelegramOutboxMessage
        with store_errors("outbox queue depth"):
            result = await session.execute(
                select(func.count()).select_from(row).where(row.status == OutboxStatus.NEW.value)
            )
        return result.scalar_one()

    async def count_by_status(self, session: AsyncSession) -> dict[str, int]:
        row = TelegramOutboxMessage
        result = await session.execute(select(row.status, func.count()).group_by(row.status))
        return {status: count for status, count in result.all()}


class OutboxEnqueuer:
    """Builds Bot API payloads and stores them in the outbox."""

    def __init__(self, store: OutboxStore) -> None:
        self.store = store

    async def enqueue_send_message(
        self,
        session: AsyncSession,
        chat_id: int,
        text: str,
        reply_markup: InlineKeyboardMarkup | None = None,
        parse_mode: str | None = None,
    ) -> int:
        payload = {"chat_id": chat_id, "text": text}
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup.to_dict()
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return await self.store.enqueue(session, chat_id, SEND_MESSAGE, payload)

    async def enqueue_answer_callback_query(
        self,
        session: AsyncSession,
        chat_id: int,
        callback_query_id: str,
        text: str | None = None,
    ) -> int:
        payload = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
        return await self.store.enqueue(session, chat_id, ANSWER_CALLBACK_QUERY, payload)
