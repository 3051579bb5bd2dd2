"""Tests for the long-polling transport."""
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram import Update
from telegram.error import Forbidden, NetworkError

from venue_relay.services.backoff import BackoffPolicy
from venue_relay.telegram.long_poller import LongPoller
from conftest import message_update


def updates(*update_ids: int) -> list[Update]:
    return [Update.de_json(message_update(uid, 123, f"msg {uid}"), None) for uid in update_ids]


def make_poller(session_factory, inbound_queue, get_updates) -> LongPoller:
    bot = MagicMock()
    bot.get_updates = get_updates
    return LongPoller(
        bot,
        session_factory,
        inbound_queue,
        timeout=0,
        backoff=BackoffPolicy(base=0.01, cap=0.01, jitter=0),
    )


class TestLongPoller:
    @pytest.mark.asyncio
    async def test_stores_batch_and_advances_offset(self, session_factory, inbound_queue):
        get_updates = AsyncMock(side_effect=[updates(11, 10), []])
        poller = make_poller(session_factory, inbound_queue, get_updates)

        assert await poller.process_once() == 2
        assert poller.offset == 12
        assert await poller.process_once() == 0
        assert get_updates.await_args_list[1].kwargs["offset"] == 12

        async with session_factory() as session:
            assert await inbound_queue.count_by_status(session) == {"NEW": 2}
            row = await inbound_queue.get(session, 10)
        assert "msg 10" in row.payload_json

    @pytest.mark.asyncio
    async def test_redelivered_updates_are_ignored(self, session_factory, inbound_queue):
        get_updates = AsyncMock(side_effect=[updates(10), updates(10, 11)])
        poller = make_poller(session_factory, inbound_queue, get_updates)

        await poller.process_once()
        await poller.process_once()

        assert poller.offset == 12
        async with session_factory() as session:
            assert await inbound_queue.count_by_status(session) == {"NEW": 2}

    @pytest.mark.asyncio
    async def test_network_error_is_retried(self, session_factory, inbound_queue):
        get_updates = AsyncMock(side_effect=[NetworkError("reset"), updates(1)])
        poller = make_poller(session_factory, inbound_queue, get_updates)

        assert await poller.process_once() == 1
        assert get_updates.await_count == 2

    @pytest.mark.asyncio
    async def test_permanent_error_propagates(self, session_factory, inbound_queue):
        get_updates = AsyncMock(side_effect=Forbidden("Forbidden"))
        poller = make_poller(session_factory, inbound_queue, get_updates)

        with pytest.raises(Forbidden):
            await poller.process_once()
        assert poller.offset is None
        assert get_updates.await_count == 1
