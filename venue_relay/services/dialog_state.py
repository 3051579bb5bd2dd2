"""
Per-chat dialog state, stored in telegram_dialog_state.

A chat without a row is in NONE. save() is a single INSERT ... ON CONFLICT
DO UPDATE, so two updates for one chat never create two rows.
"""
import enum
import logging
from dataclasses import dataclass, field

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from venue_relay.database import insert_for, store_errors, utcnow
from venue_relay.models.dialog_state import TelegramDialogState

logger = logging.getLogger(__name__)


class DialogStateType(str, enum.Enum):
    NONE = "NONE"
    QUICK_ORDER_WAIT_TEXT = "QUICK_ORDER_WAIT_TEXT"
    QUICK_ORDER_WAIT_CONFIRM = "QUICK_ORDER_WAIT_CONFIRM"


@dataclass
class DialogState:
    state: DialogStateType = DialogStateType.NONE
    payload: dict = field(default_factory=dict)


class DialogStateStore:

    async def load(self, session: AsyncSession, chat_id: int) -> DialogState:
        """Current state for the chat; unknown stored values read as NONE."""
        with store_errors("dialog state load"):
            # save() writes through Core, so never trust an already loaded row
            result = await session.execute(
                select(TelegramDialogState)
                .where(TelegramDialogState.chat_id == chat_id)
                .execution_options(populate_existing=True)
            )
        record = result.scalar_one_or_none()
        if record is None:
            return DialogState()
        try:
            state = DialogStateType(record.state)
        except ValueError:
            logger.warning("Unknown dialog state %r for chat %s, resetting", record.state, chat_id)
            return DialogState()
        return DialogState(state=state, payload=dict(record.payload or {}))

    async def save(
        self,
        session: AsyncSession,
        chat_id: int,
        state: DialogStateType,
        payload: dict | None = None,
    ) -> None:
        payload = payload or {}
        now = utcnow()
        stmt = insert_for(session, TelegramDialogState).values(
            chat_id=chat_id,
            state=state.value,
            payload=payload,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["chat_id"],
            set_={
                "state": state.value,
                "payload": payload,
                "updated_at": now,
            },
        )
        with store_errors("dialog state save"):
            await session.execute(stmt)

    async def clear(self, session: AsyncSession, chat_id: int) -> None:
        with store_errors("dialog state clear"):
            await session.execute(
                delete(TelegramDialogState).where(TelegramDialogState.chat_id == chat_id)
            )
