"""
Notification claim guard — one message per (business event, chat).

Producers call try_claim() before enqueueing a notification and skip the
enqueue on ALREADY. Two requests racing on the same event end up with
exactly one outbox row per chat.
"""
import enum

from sqlalchemy.ext.asyncio import AsyncSession

from venue_relay.services.idempotency import IdempotencyStore
from venue_relay.utils.idempotency import notification_key


class ClaimResult(str, enum.Enum):
    CLAIMED = "CLAIMED"
    ALREADY = "ALREADY"


class NotificationClaimGuard:

    def __init__(self, store: IdempotencyStore, service_id: str = "venue") -> None:
        self.store = store
        self.service_id = service_id

    async def try_claim(
        self,
        session: AsyncSession,
        event_id: int,
        chat_id: int,
        kind: str = "new_batch",
    ) -> ClaimResult:
        key = notification_key(self.service_id, kind, event_id, chat_id)
        if await self.store.try_acquire(session, key):
            return ClaimResult.CLAIMED
        return ClaimResult.ALREADY
