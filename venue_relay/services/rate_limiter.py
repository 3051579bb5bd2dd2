"""
Local admission gate for outbound Bot API calls.

Two limits, both checked before every call:
- a global ceiling of `max_per_second` calls in any sliding one-second window;
- a minimum spacing of `per_chat_interval` seconds between calls to one chat.

This is independent from retry scheduling and from the provider's own 429
answers: it keeps the outbox worker from bursting past known limits when a
backlog builds up (e.g. after downtime).
"""
from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable

from venue_relay.exceptions import RateLimitTimeoutError

_CHAT_TABLE_PRUNE_SIZE = 10_000


class RateLimiter:

    def __init__(
        self,
        max_per_second: int = 25,
        per_chat_interval: float = 1.0,
        max_wait: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._max_per_second = max_per_second
        self._per_chat_interval = per_chat_interval
        self._max_wait = max_wait
        self._clock = clock
        self._sleep = sleep
        self._window: deque[float] = deque()
        self._last_by_chat: dict[int, float] = {}
        self._lock = asyncio.Lock()

    def _wait_time(self, chat_id: int | None, now: float) -> float:
        """Seconds until a permit for chat_id would be free; 0 if free now."""
        cutoff = now - 1.0
        while self._window and self._window[0] <= cutoff:
            self._window.popleft()

        wait = 0.0
        if self._max_per_second > 0 and len(self._window) >= self._max_per_second:
            wait = self._window[0] + 1.0 - now
        if chat_id is not None and self._per_chat_interval > 0:
            last = self._last_by_chat.get(chat_id)
            if last is not None:
                wait = max(wait, last + self._per_chat_interval - now)
        return max(wait, 0.0)

    def _record(self, chat_id: int | None, now: float) -> None:
        self._window.append(now)
        if chat_id is None or self._per_chat_interval <= 0:
            return
        self._last_by_chat[chat_id] = now
        if len(self._last_by_chat) > _CHAT_TABLE_PRUNE_SIZE:
            stale = now - self._per_chat_interval
            self._last_by_chat = {
                chat: last for chat, last in self._last_by_chat.items() if last > stale
            }

    def try_acquire(self, chat_id: int | None = None) -> bool:
        """Take a permit if one is free right now; never waits."""
        # no await between check and record, so the event loop cannot interleave
        now = self._clock()
        if self._wait_time(chat_id, now) > 0:
            return False
        self._record(chat_id, now)
        return True

    async def acquire(self, chat_id: int | None = None) -> None:
        """
        Wait for a permit.
        Raises RateLimitTimeoutError instead of waiting past max_wait.
        """
        deadline = self._clock() + self._max_wait
        while True:
            async with self._lock:
                now = self._clock()
                wait = self._wait_time(chat_id, now)
                if wait <= 0:
                    self._record(chat_id, now)
                    return
            if now + wait > deadline:
                raise RateLimitTimeoutError(wait, self._max_wait)
            await self._sleep(wait)
