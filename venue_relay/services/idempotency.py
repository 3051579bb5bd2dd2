"""
Idempotency store — the atomic "first writer wins" gate.

try_acquire() runs inside the caller's session: the claim row commits or
rolls back together with the side effect it guards, so a failed unit of work
leaves the key free for the retry.
"""
import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from venue_relay.database import insert_for, store_errors, utcnow
from venue_relay.models.idempotency_claim import IdempotencyClaim

logger = logging.getLogger(__name__)


class IdempotencyStore:

    async def try_acquire(self, session: AsyncSession, key: str) -> bool:
        """
        Try to insert the claim.
        Returns True if this caller inserted it (and must perform the side
        effect), False if the key was already claimed.
        Raises StoreUnavailableError if the store cannot answer.
        """
        stmt = (
            insert_for(session, IdempotencyClaim)
            .values(key=key, created_at=utcnow())
            .on_conflict_do_nothing(index_elements=["key"])
        )
        with store_errors("idempotency claim"):
            result = await session.execute(stmt)

        # rowcount == 0 means conflict → already claimed
        return result.rowcount == 1

    async def exists(self, session: AsyncSession, key: str) -> bool:
        result = await session.execute(
            select(IdempotencyClaim.key).where(IdempotencyClaim.key == key)
        )
        return result.scalar_one_or_none() is not None

    async def prune(self, session: AsyncSession, older_than: datetime) -> int:
        """Delete claims created before the cutoff. Caller commits."""
        result = await session.execute(
            delete(IdempotencyClaim).where(IdempotencyClaim.created_at < older_than)
        )
        logger.info("Pruned %d idempotency claims older than %s", result.rowcount, older_than)
        return result.rowcount
