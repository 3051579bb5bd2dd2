"""
TelegramInboundUpdate — durable inbound queue row.
Every update is stored before any processing; duplicate delivery of the same
update_id is ignored at insert time. Rows are never deleted.
"""
import enum
from datetime import datetime

from sqlalchemy import BigInteger, Integer, String, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from venue_relay.database import Base, UTCDateTime, utcnow


class InboundStatus(str, enum.Enum):
    NEW = "NEW"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    DEAD = "DEAD"


class TelegramInboundUpdate(Base):
    __tablename__ = "telegram_inbound_updates"

    update_id: Mapped[int] = mapped_column(
        BigInteger, primary_key=True, autoincrement=False
    )  # provider-assigned
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=InboundStatus.NEW.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )  # retry delay for NEW, lease expiry for PROCESSING
    received_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_inbound_updates_status_next", "status", "next_attempt_at"),
    )
