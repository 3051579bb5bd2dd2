"""
Pytest configuration and fixtures.

Settings are read from the environment at import time, so the variables are
set before anything from venue_relay is imported.
"""
import os

os.environ.setdefault("DATABASE_URL_POOLER", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TG_TOKEN", "123456789:TEST-token-for-unit-tests")
os.environ.setdefault("TG_WEBHOOK_SECRET", "test-secret")

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

import venue_relay.models  # noqa: F401
from venue_relay.database import Base, build_engine, build_session_factory
from venue_relay.services.dialog_state import DialogStateStore
from venue_relay.services.idempotency import IdempotencyStore
from venue_relay.services.inbound_queue import InboundUpdateQueue
from venue_relay.services.outbox import OutboxEnqueuer, OutboxStore
from venue_relay.telegram.router import BotRouter

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock for workers; tests move it explicitly."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest_asyncio.fixture
async def engine(tmp_path):
    # a file, not :memory:, so concurrent sessions get separate connections
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def inbound_queue() -> InboundUpdateQueue:
    return InboundUpdateQueue()


@pytest.fixture
def outbox_store() -> OutboxStore:
    return OutboxStore()


@pytest.fixture
def idempotency_store() -> IdempotencyStore:
    return IdempotencyStore()


@pytest.fixture
def bot_router(idempotency_store, outbox_store) -> BotRouter:
    return BotRouter(
        idempotency=idempotency_store,
        enqueuer=OutboxEnqueuer(outbox_store),
        dialog_state=DialogStateStore(),
        service_id="venue",
    )


def message_update(update_id: int, chat_id: int, text: str, user_id: int | None = None) -> dict:
    """Minimal Bot API update with a text message."""
    user_id = user_id or chat_id
    return {
        "update_id": update_id,
        "message": {
            "message_id": update_id * 10,
            "date": 1767225600,
            "chat": {"id": chat_id, "type": "private"},
            "from": {"id": user_id, "is_bot": False, "first_name": "Guest"},
            "text": text,
        },
    }


def callback_update(update_id: int, chat_id: int, data: str, query_id: str = "cbq-1") -> dict:
    """Minimal Bot API update with a callback query on a bot message."""
    return {
        "update_id": update_id,
        "callback_query": {
            "id": query_id,
            "from": {"id": chat_id, "is_bot": False, "first_name": "Guest"},
            "chat_instance": "ci-1",
            "data": data,
            "message": {
                "message_id": 5,
                "date": 1767225600,
                "chat": {"id": chat_id, "type": "private"},
                "from": {"id": 42, "is_bot": True, "first_name": "VenueBot"},
                "text": "menu",
            },
        },
    }
