"""Tests for the inbound worker (claim → route → reconcile)."""
import json
import random

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import func, select

from venue_relay.exceptions import NonRetryableError
from venue_relay.models import IdempotencyClaim, InboundStatus, TelegramOutboxMessage
from venue_relay.services.outbox import OutboxEnqueuer
from venue_relay.telegram.router import RouteResult
from venue_relay.utils.idempotency import update_key
from venue_relay.workers.inbound import InboundWorker, InboundWorkerConfig
from conftest import T0, message_update


def metric(name: str) -> float:
    return REGISTRY.get_sample_value(name) or 0.0


async def count(session_factory, model, *where) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model).where(*where))


class ScriptedRouter:
    """Router stand-in returning (or raising) one scripted outcome per call."""

    def __init__(self, *outcomes, enqueuer: OutboxEnqueuer | None = None):
        self.outcomes = list(outcomes)
        self.enqueuer = enqueuer
        self.calls = []

    async def process(self, session, update_id, payload_json):
        self.calls.append(update_id)
        if self.enqueuer is not None:
            # a side effect that must disappear when the unit of work rolls back
            await self.enqueuer.enqueue_send_message(session, 123, "partial")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_worker(session_factory, inbound_queue, router, clock, **config) -> InboundWorker:
    return InboundWorker(
        session_factory,
        inbound_queue,
        router,
        InboundWorkerConfig(**config),
        clock=clock,
        rng=random.Random(7),
    )


async def enqueue(session_factory, inbound_queue, update_id: int, text: str = "/start") -> None:
    async with session_factory() as session:
        payload = json.dumps(message_update(update_id, 123, text))
        await inbound_queue.enqueue(session, update_id, payload, now=T0)
        await session.commit()


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_update_42_processed_once(
        self, session_factory, inbound_queue, bot_router, clock
    ):
        await enqueue(session_factory, inbound_queue, 42)
        processed_before = metric("inbound_processed_total")
        worker = make_worker(session_factory, inbound_queue, bot_router, clock)

        assert await worker.process_once() == 1
        assert await worker.process_once() == 0

        async with session_factory() as session:
            row = await inbound_queue.get(session, 42)
        assert row.status == InboundStatus.PROCESSED.value
        assert row.attempts == 1
        assert row.processed_at == clock.now
        assert await count(
            session_factory, IdempotencyClaim, IdempotencyClaim.key == update_key("venue", 42, 123)
        ) == 1
        assert await count(session_factory, TelegramOutboxMessage) == 1
        assert metric("inbound_processed_total") == processed_before + 1

    @pytest.mark.asyncio
    async def test_replayed_update_has_no_second_side_effect(
        self, session_factory, inbound_queue, bot_router, clock
    ):
        await enqueue(session_factory, inbound_queue, 42)
        worker = make_worker(session_factory, inbound_queue, bot_router, clock)
        await worker.process_once()

        # operator replay of an already handled update
        async with session_factory() as session:
            row = await inbound_queue.get(session, 42)
            row.status = InboundStatus.DEAD.value
            await session.commit()
            await inbound_queue.requeue_dead(session, [42], now=clock.now)
            await session.commit()

        assert await worker.process_once() == 1
        assert await count(session_factory, TelegramOutboxMessage) == 1
        assert await count(session_factory, IdempotencyClaim) == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_exception_schedules_retry_and_rolls_back(
        self, session_factory, inbound_queue, outbox_store, clock
    ):
        await enqueue(session_factory, inbound_queue, 1)
        router = ScriptedRouter(RuntimeError("boom"), enqueuer=OutboxEnqueuer(outbox_store))
        worker = make_worker(
            session_factory, inbound_queue, router, clock, base_backoff=0.5, jitter=0.2
        )

        await worker.process_once()

        async with session_factory() as session:
            row = await inbound_queue.get(session, 1)
        assert row.status == InboundStatus.NEW.value
        assert row.attempts == 1
        assert "RuntimeError: boom" in row.last_error
        delay = (row.next_attempt_at - clock.now).total_seconds()
        assert 0.4 <= delay <= 0.6
        assert await count(session_factory, TelegramOutboxMessage) == 0

    @pytest.mark.asyncio
    async def test_dead_after_max_attempts(self, session_factory, inbound_queue, clock):
        await enqueue(session_factory, inbound_queue, 1)
        router = ScriptedRouter(RuntimeError("one"), RouteResult.retry("two"))
        worker = make_worker(session_factory, inbound_queue, router, clock, max_attempts=2)
        dead_before = metric("inbound_dead_total")

        await worker.process_once()
        clock.advance(seconds=5)
        await worker.process_once()

        async with session_factory() as session:
            row = await inbound_queue.get(session, 1)
        assert row.status == InboundStatus.DEAD.value
        assert row.attempts == 2
        assert row.last_error == "two"
        assert metric("inbound_dead_total") == dead_before + 1

        clock.advance(hours=1)
        assert await worker.process_once() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "outcome",
        [RouteResult.reject("unsupported"), NonRetryableError("order closed")],
    )
    async def test_reject_is_dead_immediately(
        self, session_factory, inbound_queue, clock, outcome
    ):
        await enqueue(session_factory, inbound_queue, 1)
        worker = make_worker(session_factory, inbound_queue, ScriptedRouter(outcome), clock)

        await worker.process_once()

        async with session_factory() as session:
            row = await inbound_queue.get(session, 1)
        assert row.status == InboundStatus.DEAD.value
        assert row.attempts == 1

    @pytest.mark.asyncio
    async def test_malformed_payload_is_dead(
        self, session_factory, inbound_queue, bot_router, clock
    ):
        async with session_factory() as session:
            await inbound_queue.enqueue(session, 7, "{not json", now=T0)
            await session.commit()
        worker = make_worker(session_factory, inbound_queue, bot_router, clock)

        await worker.process_once()

        async with session_factory() as session:
            row = await inbound_queue.get(session, 7)
        assert row.status == InboundStatus.DEAD.value

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(
        self, session_factory, inbound_queue, clock
    ):
        await enqueue(session_factory, inbound_queue, 1)
        await enqueue(session_factory, inbound_queue, 2)
        router = ScriptedRouter(RuntimeError("first fails"), RouteResult.ok())
        worker = make_worker(session_factory, inbound_queue, router, clock)

        assert await worker.process_once() == 2

        assert router.calls == [1, 2]
        async with session_factory() as session:
            assert (await inbound_queue.get(session, 1)).status == InboundStatus.NEW.value
            assert (await inbound_queue.get(session, 2)).status == InboundStatus.PROCESSED.value


class TestConfig:
    def test_normalized_clamps(self):
        config = InboundWorkerConfig(
            poll_interval=0, batch_size=1000, max_attempts=0, visibility_timeout=1,
            base_backoff=5, max_backoff=1,
        ).normalized()
        assert config.poll_interval == 0.1
        assert config.batch_size == 200
        assert config.max_attempts == 1
        assert config.visibility_timeout == 5.0
        assert config.max_backoff == 5
