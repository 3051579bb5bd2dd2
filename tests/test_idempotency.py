"""Tests for idempotency keys, the idempotency store and the notification guard."""
import asyncio
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from venue_relay.database import utcnow
from venue_relay.exceptions import StoreUnavailableError
from venue_relay.main import build_staff_notifier
from venue_relay.models import IdempotencyClaim, TelegramOutboxMessage
from venue_relay.services.idempotency import IdempotencyStore
from venue_relay.services.notification_guard import ClaimResult, NotificationClaimGuard
from venue_relay.services.outbox import OutboxEnqueuer, OutboxStore
from venue_relay.services.staff_notifier import (
    NewBatchNotification,
    StaffChatNotifier,
    extract_links,
    format_new_batch,
)
from venue_relay.utils.idempotency import (
    make_fingerprint,
    make_idempotency_key,
    notification_key,
    update_key,
)


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

class TestKeys:
    def test_update_key_format(self):
        assert update_key("venue", 42, 123) == "tg_update|venue|none|none|tg:123|upd:42|-"

    def test_update_key_without_chat(self):
        assert update_key("venue", 42, None) == "tg_update|venue|none|none|none|upd:42|-"

    def test_notification_key_format(self):
        assert (
            notification_key("venue", "new_batch", 10, 777)
            == "notify|venue|none|event:10|chat:777|new_batch|-"
        )

    def test_lowercase_and_no_spaces(self):
        key = make_idempotency_key("Notify", "Venue Bot", step="New Batch")
        assert key == "notify|venue_bot|none|none|none|new_batch|-"

    def test_too_long_rejected(self):
        with pytest.raises(ValueError):
            make_idempotency_key("notify", "venue", context_id="x" * 400)

    def test_fingerprint_is_stable_and_field_filtered(self):
        a = make_fingerprint({"text": "hi", "ts": 1}, fields=["text"])
        b = make_fingerprint({"ts": 2, "text": "hi"}, fields=["text"])
        assert a == b
        assert len(a) == 16


# ---------------------------------------------------------------------------
# IdempotencyStore
# ---------------------------------------------------------------------------

class TestIdempotencyStore:
    @pytest.mark.asyncio
    async def test_first_acquire_wins(self, session):
        store = IdempotencyStore()
        assert await store.try_acquire(session, "k1") is True
        assert await store.try_acquire(session, "k1") is False
        assert await store.exists(session, "k1") is True
        assert await store.exists(session, "k2") is False

    @pytest.mark.asyncio
    async def test_rolled_back_claim_is_free_again(self, session_factory):
        store = IdempotencyStore()
        async with session_factory() as session:
            assert await store.try_acquire(session, "k1") is True
            await session.rollback()
        async with session_factory() as session:
            assert await store.try_acquire(session, "k1") is True
            await session.commit()

    @pytest.mark.asyncio
    async def test_store_failure_is_not_already_claimed(self):
        store = IdempotencyStore()
        session = AsyncMock()
        session.get_bind = MagicMock(
            return_value=SimpleNamespace(dialect=SimpleNamespace(name="sqlite"))
        )
        session.execute.side_effect = OperationalError("INSERT", {}, Exception("db down"))
        with pytest.raises(StoreUnavailableError):
            await store.try_acquire(session, "k1")

    @pytest.mark.asyncio
    async def test_prune_deletes_only_old_claims(self, session):
        store = IdempotencyStore()
        now = utcnow()
        session.add(IdempotencyClaim(key="old", created_at=now - timedelta(days=40)))
        session.add(IdempotencyClaim(key="new", created_at=now))
        await session.flush()

        deleted = await store.prune(session, now - timedelta(days=30))

        assert deleted == 1
        assert await store.exists(session, "old") is False
        assert await store.exists(session, "new") is True


# ---------------------------------------------------------------------------
# NotificationClaimGuard / StaffChatNotifier
# ---------------------------------------------------------------------------

class TestNotificationClaimGuard:
    @pytest.mark.asyncio
    async def test_claim_then_already(self, session):
        guard = NotificationClaimGuard(IdempotencyStore())
        assert await guard.try_claim(session, 10, 777) == ClaimResult.CLAIMED
        assert await guard.try_claim(session, 10, 777) == ClaimResult.ALREADY
        # other chat, same event
        assert await guard.try_claim(session, 10, 778) == ClaimResult.CLAIMED

    @pytest.mark.asyncio
    async def test_concurrent_claims_enqueue_one_notification(self, session_factory):
        guard = NotificationClaimGuard(IdempotencyStore())
        enqueuer = OutboxEnqueuer(OutboxStore())

        async def producer() -> ClaimResult:
            async with session_factory() as session:
                result = await guard.try_claim(session, 10, 777)
                if result == ClaimResult.CLAIMED:
                    await enqueuer.enqueue_send_message(session, 777, "🆕 Новый заказ")
                await session.commit()
                return result

        results = await asyncio.gather(producer(), producer())

        assert sorted(r.value for r in results) == ["ALREADY", "CLAIMED"]
        async with session_factory() as session:
            count = await session.scalar(
                select(func.count()).select_from(TelegramOutboxMessage).where(
                    TelegramOutboxMessage.chat_id == 777
                )
            )
        assert count == 1


class TestStaffChatNotifier:
    def _event(self, **overrides) -> NewBatchNotification:
        values = dict(
            staff_chat_id=777,
            venue_name="Дымок",
            table_label="5",
            order_id=3,
            batch_id=10,
            items_summary="Кальян x1",
            comment=None,
        )
        values.update(overrides)
        return NewBatchNotification(**values)

    def test_format_contains_order_details(self):
        text = format_new_batch(self._event(comment="побыстрее https://example.com/a."))
        assert text.startswith("🆕 Новый заказ\n")
        assert "Заведение: Дымок" in text
        assert "Заказ: #3 / партия #10" in text
        assert "Комментарий: побыстрее https://example.com/a." in text
        assert text.endswith("Ссылки: https://example.com/a")

    def test_format_without_items(self):
        assert "Состав: без деталей" in format_new_batch(self._event(items_summary="  "))

    def test_extract_links_limit(self):
        text = " ".join(f"http://x{i}.io" for i in range(8))
        assert len(extract_links(text)) == 5

    @pytest.mark.asyncio
    async def test_notify_once_per_batch(self, session):
        notifier = StaffChatNotifier(
            NotificationClaimGuard(IdempotencyStore()), OutboxEnqueuer(OutboxStore())
        )
        first = await notifier.notify_new_batch(session, self._event())
        second = await notifier.notify_new_batch(session, self._event())
        assert first is not None
        assert second is None

    @pytest.mark.asyncio
    async def test_no_staff_chat_is_skipped(self, session):
        notifier = StaffChatNotifier(
            NotificationClaimGuard(IdempotencyStore()), OutboxEnqueuer(OutboxStore())
        )
        assert await notifier.notify_new_batch(session, self._event(staff_chat_id=None)) is None

    @pytest.mark.asyncio
    async def test_app_notifier_enqueues_once(self, session):
        notifier = build_staff_notifier()

        outbox_id = await notifier.notify_new_batch(session, self._event())
        assert await notifier.notify_new_batch(session, self._event()) is None

        row = await session.get(TelegramOutboxMessage, outbox_id)
        assert row.chat_id == 777
        assert "партия #10" in row.payload_json
        key = notification_key("venue", "new_batch", 10, 777)
        assert await IdempotencyStore().exists(session, key)
