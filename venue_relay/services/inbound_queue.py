"""
Inbound update queue — every update is persisted before it is processed.

Both transports (webhook and long polling) call enqueue(); the inbound worker
is the only writer after that. Claiming is a conditional UPDATE per row, so
two workers sharing the table never process the same update at once.
All methods use the caller's session; the caller commits.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from venue_relay.database import insert_for, store_errors, utcnow
from venue_relay.models.inbound_update import InboundStatus, TelegramInboundUpdate

logger = logging.getLogger(__name__)

_UPDATE_OPTS = {"synchronize_session": False}


@dataclass(frozen=True)
class ClaimedUpdate:
    update_id: int
    payload_json: str
    attempts: int  # including the current claim
    received_at: datetime


def _claimable(now: datetime):
    row = TelegramInboundUpdate
    return or_(
        and_(
            row.status == InboundStatus.NEW.value,
            or_(row.next_attempt_at.is_(None), row.next_attempt_at <= now),
        ),
        # lease of a crashed worker expired
        and_(
            row.status == InboundStatus.PROCESSING.value,
            row.next_attempt_at <= now,
        ),
    )


class InboundUpdateQueue:

    async def enqueue(
        self,
        session: AsyncSession,
        update_id: int,
        payload_json: str,
        now: datetime | None = None,
    ) -> bool:
        """
        Store an update. Duplicate update_id is ignored, not upserted.
        Returns True if a new row was stored.
        """
        stmt = (
            insert_for(session, TelegramInboundUpdate)
            .values(
                update_id=update_id,
                payload_json=payload_json,
                status=InboundStatus.NEW.value,
                attempts=0,
                received_at=now or utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["update_id"])
        )
        with store_errors("inbound enqueue"):
            result = await session.execute(stmt)
        inserted = result.rowcount == 1
        if not inserted:
            logger.info("Duplicate update %s, skipping", update_id)
        return inserted

    async def claim_batch(
        self,
        session: AsyncSession,
        limit: int,
        now: datetime,
        visibility_timeout: timedelta,
    ) -> list[ClaimedUpdate]:
        """
        Claim up to `limit` due updates in arrival order.
        Claimed rows move to PROCESSING with a lease until now + visibility_timeout.
        """
        row = TelegramInboundUpdate
        lease_until = now + visibility_timeout
        with store_errors("inbound claim"):
            candidates = await session.execute(
                select(row.update_id)
                .where(_claimable(now))
                .order_by(row.received_at, row.update_id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            claimed_ids = []
            for update_id in candidates.scalars().all():
                result = await session.execute(
                    update(row)
                    .where(row.update_id == update_id, _claimable(now))
                    .values(
                        status=InboundStatus.PROCESSING.value,
                        attempts=row.attempts + 1,
                        next_attempt_at=lease_until,
                    )
                    .execution_options(**_UPDATE_OPTS)
                )
                if result.rowcount == 1:
                    claimed_ids.append(update_id)

            if not claimed_ids:
                return []

            rows = await session.execute(
                select(row)
                .where(row.update_id.in_(claimed_ids))
                .order_by(row.received_at, row.update_id)
            )
            return [
                ClaimedUpdate(
                    update_id=r.update_id,
                    payload_json=r.payload_json,
                    attempts=r.attempts,
                    received_at=r.received_at,
                )
                for r in rows.scalars().all()
            ]

    async def mark_processed(
        self, session: AsyncSession, update_id: int, now: datetime
    ) -> bool:
        return await self._transition(
            session,
            update_id,
            status=InboundStatus.PROCESSED.value,
            processed_at=now,
            next_attempt_at=None,
            last_error=None,
        )

    async def mark_retry(
        self,
        session: AsyncSession,
        update_id: int,
        error: str,
        next_attempt_at: datetime,
    ) -> bool:
        return await self._transition(
            session,
            update_id,
            status=InboundStatus.NEW.value,
            next_attempt_at=next_attempt_at,
            last_error=error,
        )

    async def mark_dead(
        self, session: AsyncSession, update_id: int, error: str, now: datetime
    ) -> bool:
        return await self._transition(
            session,
            update_id,
            status=InboundStatus.DEAD.value,
            processed_at=now,
            next_attempt_at=None,
            last_error=error,
        )

    async def _transition(self, session: AsyncSession, update_id: int, **values) -> bool:
        """Move a claimed (PROCESSING) row; terminal rows are left untouched."""
        row = TelegramInboundUpdate
        with store_errors("inbound transition"):
            result = await session.execute(
                update(row)
                .where(
                    row.update_id == update_id,
                    row.status == InboundStatus.PROCESSING.value,
                )
                .values(**values)
                .execution_options(**_UPDATE_OPTS)
            )
        return result.rowcount == 1

    async def requeue_dead(
        self,
        session: AsyncSession,
        update_ids: list[int] | None = None,
        now: datetime | None = None,
    ) -> int:
        """Operational replay: DEAD → NEW with a fresh attempt budget."""
        row = TelegramInboundUpdate
        stmt = update(row).where(row.status == InboundStatus.DEAD.value)
        if update_ids:
            stmt = stmt.where(row.update_id.in_(update_ids))
        with store_errors("inbound requeue"):
            result = await session.execute(
                stmt.values(
                    status=InboundStatus.NEW.value,
                    attempts=0,
                    next_attempt_at=now or utcnow(),
                    processed_at=None,
                ).execution_options(**_UPDATE_OPTS)
            )
        logger.info("Requeued %d dead updates", result.rowcount)
        return result.rowcount

    async def get(self, session: AsyncSession, update_id: int) -> TelegramInboundUpdate | None:
        return await session.get(TelegramInboundUpdate, update_id, populate_existing=True)

    async def queue_depth(self, session: AsyncSession) -> int:
        """Updates still waiting for a final outcome."""
        row = TelegramInboundUpdate
        with store_errors("inbound queue depth"):
            result = await session.execute(
                select(func.count()).select_from(row).where(
                    row.status.in_(
                        [InboundStatus.NEW.value, InboundStatus.PROCESSING.value]
                    )
                )
            )
        return result.scalar_one()

    async def count_by_status(self, session: AsyncSession) -> dict[str, int]:
        row = TelegramInboundUpdate
        result = await session.execute(
            select(row.status, func.count()).group_by(row.status)
        )
        return {status: count for status, count in result.all()}
