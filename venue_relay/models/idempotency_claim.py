"""
IdempotencyClaim — first writer wins.
On duplicate delivery or a racing producer, INSERT conflict = skip the side effect.
"""
from datetime import datetime

from sqlalchemy import String, Index
from sqlalchemy.orm import Mapped, mapped_column

from venue_relay.database import Base, UTCDateTime, utcnow


class IdempotencyClaim(Base):
    __tablename__ = "idempotency_claims"

    key: Mapped[str] = mapped_column(String(300), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("idx_idempotency_claims_created", "created_at"),
    )
