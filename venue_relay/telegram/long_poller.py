"""
Long-polling transport of the inbound queue (TG_MODE=long_polling).

A batch from getUpdates is stored in one transaction; the offset moves past
it only after the commit, so a crash between the two only causes a
redelivery, which enqueue() ignores.
"""
import asyncio
import contextlib
import json
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from telegram import Bot
from telegram.error import BadRequest, NetworkError, RetryAfter

from venue_relay.database import store_errors
from venue_relay.services.backoff import BackoffPolicy, retry_async
from venue_relay.services.inbound_queue import InboundUpdateQueue
from venue_relay.workers.base import PollingWorker

logger = logging.getLogger(__name__)

GET_UPDATES_ATTEMPTS = 3


def _transient(error: Exception) -> bool:
    # TimedOut is a NetworkError; BadRequest too, but it will not heal on retry
    if isinstance(error, RetryAfter):
        return True
    return isinstance(error, NetworkError) and not isinstance(error, BadRequest)


class LongPoller(PollingWorker):
    name = "long-poller"

    def __init__(
        self,
        bot: Bot,
        session_factory: async_sessionmaker[AsyncSession],
        queue: InboundUpdateQueue,
        timeout: int = 25,
        backoff: BackoffPolicy | None = None,
        error_interval: float = 1.0,
    ) -> None:
        super().__init__(error_interval)
        self.bot = bot
        self.session_factory = session_factory
        self.queue = queue
        self.timeout = timeout
        self.backoff = backoff or BackoffPolicy(base=1.0, cap=10.0, jitter=0.2)
        self.offset: int | None = None

    async def process_once(self) -> int:
        """One getUpdates round trip. Returns the number of updates received."""
        updates = await retry_async(
            lambda: self.bot.get_updates(offset=self.offset, timeout=self.timeout),
            GET_UPDATES_ATTEMPTS,
            self.backoff,
            should_retry=_transient,
        )
        if not updates:
            return 0

        ordered = sorted(updates, key=lambda u: u.update_id)
        async with self.session_factory() as session:
            stored = 0
            for update in ordered:
                payload = json.dumps(update.to_dict(), ensure_ascii=False)
                if await self.queue.enqueue(session, update.update_id, payload):
                    stored += 1
            with store_errors("long poll commit"):
                await session.commit()

        self.offset = ordered[-1].update_id + 1
        logger.debug("Long poll stored %d/%d updates, offset=%s", stored, len(ordered), self.offset)
        return len(ordered)

    async def stop(self) -> None:
        # do not wait out a pending getUpdates; uncommitted updates are redelivered
        self._stopping.set()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
