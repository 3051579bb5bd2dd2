"""
TelegramOutboxMessage — a Bot API call we have decided to make.
Inserted in the same transaction as the business change that justifies it,
delivered later by the outbox worker. SENT and FAILED are terminal.
"""
import enum
from datetime import datetime

from sqlalchemy import BigInteger, Integer, String, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from venue_relay.database import Base, UTCDateTime, utcnow


class OutboxStatus(str, enum.Enum):
    NEW = "NEW"
    SENT = "SENT"
    FAILED = "FAILED"


class TelegramOutboxMessage(Base):
    __tablename__ = "telegram_outbox"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    chat_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    method: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. sendMessage
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=OutboxStatus.NEW.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_outbox_status_next", "status", "next_attempt_at"),
        Index("idx_outbox_chat_created", "chat_id", "created_at"),
    )
