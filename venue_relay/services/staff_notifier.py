"""
Staff chat notifications about new order batches.

Called by order-taking code inside its own transaction, through
venue_relay.main.build_staff_notifier() or app.state.staff_notifier. The
claim and the outbox row commit together with the order batch, so a rolled
back order releases the claim and a retried request never notifies twice.
"""
import logging
import re
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from venue_relay.services.notification_guard import ClaimResult, NotificationClaimGuard
from venue_relay.services.outbox import OutboxEnqueuer

logger = logging.getLogger(__name__)

NEW_BATCH = "new_batch"
MAX_LINKS = 5

_LINK = re.compile(r"(https?://\S+)")


@dataclass(frozen=True)
class NewBatchNotification:
    staff_chat_id: int | None
    venue_name: str
    table_label: str
    order_id: int
    batch_id: int
    items_summary: str | None = None
    comment: str | None = None


def extract_links(text: str, limit: int = MAX_LINKS) -> list[str]:
    links = []
    for match in _LINK.finditer(text):
        link = match.group(1).rstrip(",.;")
        if link:
            links.append(link)
        if len(links) >= limit:
            break
    return links


def format_new_batch(event: NewBatchNotification) -> str:
    summary = (event.items_summary or "").strip() or "без деталей"
    comment = (event.comment or "").strip()
    lines = [
        "🆕 Новый заказ",
        f"Заведение: {event.venue_name}",
        f"Стол: {event.table_label}",
        f"Заказ: #{event.order_id} / партия #{event.batch_id}",
        f"Состав: {summary}",
    ]
    if comment:
        lines.append(f"Комментарий: {comment}")
        links = extract_links(comment)
        if links:
            lines.append("Ссылки: " + " ".join(links))
    return "\n".join(lines)


class StaffChatNotifier:

    def __init__(self, guard: NotificationClaimGuard, enqueuer: OutboxEnqueuer) -> None:
        self.guard = guard
        self.enqueuer = enqueuer

    async def notify_new_batch(
        self, session: AsyncSession, event: NewBatchNotification
    ) -> int | None:
        """
        Enqueue the staff chat message for a new batch.
        Returns the outbox id, or None when skipped (no staff chat, or already notified).
        """
        if event.staff_chat_id is None:
            logger.debug("Batch %s: venue has no staff chat, skipping", event.batch_id)
            return None

        claim = await self.guard.try_claim(
            session, event.batch_id, event.staff_chat_id, kind=NEW_BATCH
        )
        if claim == ClaimResult.ALREADY:
            logger.info(
                "Batch %s already notified to chat %s", event.batch_id, event.staff_chat_id
            )
            return None

        return await self.enqueuer.enqueue_send_message(
            session, event.staff_chat_id, format_new_batch(event)
        )
