"""
TelegramDialogState — dialog step for every chat.
This replaces in-memory state and survives restarts / replica switches.
"""
from datetime import datetime

from sqlalchemy import BigInteger, String, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from venue_relay.database import Base, UTCDateTime, utcnow


class TelegramDialogState(Base):
    __tablename__ = "telegram_dialog_state"

    chat_id: Mapped[int] = mapped_column(
        BigInteger, primary_key=True, autoincrement=False
    )
    state: Mapped[str] = mapped_column(
        String(64), nullable=False, default="NONE"
    )  # DialogStateType name
    payload: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict
    )  # local step data
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
