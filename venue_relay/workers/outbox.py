"""
Outbox worker — delivers telegram_outbox rows to the Bot API.

Per claimed row:
- payload JSON invalid → FAILED
- local rate limiter permit (timeout → claim released, attempt refunded)
- lease renewed for visibility_timeout; a claim lost meanwhile is skipped
- Bot API call:
    success            → SENT
    429 + retry_after  → retry exactly retry_after seconds from now
    no code / 5xx      → retry with exponential backoff
    other 4xx          → FAILED
  answerCallbackQuery failures are always FAILED: a late answer is useless.
- a retry with no attempts left → FAILED

Rows in one batch are dispatched concurrently, at most max_concurrency at once.
Every reconcile carries the claimed attempts value, so a worker whose claim
was taken over cannot overwrite the row.
"""
import asyncio
import json
import logging
import random
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from venue_relay import metrics
from venue_relay.database import store_errors, utcnow
from venue_relay.exceptions import InvalidPayloadError, RateLimitTimeoutError
from venue_relay.services.backoff import BackoffPolicy
from venue_relay.services.outbox import ANSWER_CALLBACK_QUERY, ClaimedMessage, OutboxStore
from venue_relay.services.rate_limiter import RateLimiter
from venue_relay.telegram.api_client import CallFailure, CallSuccess, TelegramApiClient
from venue_relay.utils.redact import debug_exception, describe_error, sanitize_for_log
from venue_relay.workers.base import PollingWorker

logger = logging.getLogger(__name__)

RATE_LIMITED = 429


@dataclass(frozen=True)
class OutboxWorkerConfig:
    poll_interval: float = 0.5       # seconds
    batch_size: int = 25
    visibility_timeout: float = 30.0  # seconds
    max_attempts: int = 10
    max_concurrency: int = 4
    base_backoff: float = 1.0        # seconds
    max_backoff: float = 60.0        # seconds
    jitter: float = 0.2

    def normalized(self) -> "OutboxWorkerConfig":
        base_backoff = max(self.base_backoff, 1.0)
        return replace(
            self,
            poll_interval=max(self.poll_interval, 0.1),
            batch_size=min(max(self.batch_size, 1), 200),
            visibility_timeout=min(max(self.visibility_timeout, 5.0), 300.0),
            max_attempts=min(max(self.max_attempts, 1), 100),
            max_concurrency=min(max(self.max_concurrency, 1), 20),
            base_backoff=base_backoff,
            max_backoff=max(self.max_backoff, base_backoff),
            jitter=min(max(self.jitter, 0.0), 0.5),
        )


def describe_failure(failure: CallFailure) -> str:
    code = failure.error_code if failure.error_code is not None else "network"
    return sanitize_for_log(f"{code}: {failure.description or 'no description'}", max_len=500)


class OutboxWorker(PollingWorker):
    name = "outbox-worker"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: OutboxStore,
        api_client: TelegramApiClient,
        rate_limiter: RateLimiter,
        config: OutboxWorkerConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self.config = (config or OutboxWorkerConfig()).normalized()
        super().__init__(self.config.poll_interval)
        self.session_factory = session_factory
        self.store = store
        self.api_client = api_client
        self.rate_limiter = rate_limiter
        self.clock = clock
        # a call must end inside the lease renewed right before it
        self.call_timeout = self.config.visibility_timeout / 2
        self.backoff = BackoffPolicy(
            base=self.config.base_backoff,
            cap=self.config.max_backoff,
            jitter=self.config.jitter,
            rng=rng or random.Random(),
        )

    async def process_once(self) -> int:
        """Claim and dispatch one batch. Returns the number of claimed rows."""
        now = self.clock()
        async with self.session_factory() as session:
            claimed = await self.store.claim_batch(
                session,
                self.config.batch_size,
                now,
                timedelta(seconds=self.config.visibility_timeout),
            )
            with store_errors("outbox claim commit"):
                await session.commit()
        if not claimed:
            return 0

        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def guarded(message: ClaimedMessage) -> None:
            async with semaphore:
                try:
                    await self._dispatch(message)
                except Exception as e:
                    # lease expiry brings the row back
                    logger.error(
                        "Outbox %s left unreconciled: %s", message.id, describe_error(e)
                    )
                    debug_exception(logger, e, f"outbox {message.id}")

        await asyncio.gather(*(guarded(m) for m in claimed))
        return len(claimed)

    async def _dispatch(self, message: ClaimedMessage) -> None:
        try:
            payload = json.loads(message.payload_json)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            await self._fail(message, "invalid payload json")
            return

        try:
            await self.rate_limiter.acquire(message.chat_id)
        except RateLimitTimeoutError as e:
            # local throttling is not a delivery attempt
            await self._release(message, e.wait_seconds)
            return

        # rows queued behind the semaphore or the limiter may have outlived
        # the claim's lease; only the current claim holder may call the API
        if not await self._renew(message):
            logger.info("Outbox %s claim lost before the call, skipping", message.id)
            return

        try:
            result = await asyncio.wait_for(
                self.api_client.call(message.method, payload), timeout=self.call_timeout
            )
        except InvalidPayloadError as e:
            await self._fail(message, describe_error(e))
            return
        except asyncio.TimeoutError:
            logger.warning("Outbox %s call timed out after %.1fs", message.id, self.call_timeout)
            await self._retry(message, f"network: call timed out after {self.call_timeout:.1f}s")
            return
        except Exception as e:
            logger.warning("Outbox %s call raised: %s", message.id, describe_error(e))
            debug_exception(logger, e, f"outbox {message.id} call")
            await self._retry(message, describe_error(e))
            return

        if isinstance(result, CallSuccess):
            await self._mark_sent(message)
            return
        await self._handle_failure(message, result)

    async def _handle_failure(self, message: ClaimedMessage, failure: CallFailure) -> None:
        error = describe_failure(failure)
        if failure.error_code == RATE_LIMITED:
            metrics.OUTBOUND_429.inc()

        if message.method == ANSWER_CALLBACK_QUERY:
            await self._fail(message, error)
            return

        # provider's retry_after wins over our own backoff
        if failure.error_code == RATE_LIMITED and failure.retry_after_seconds is not None:
            await self._retry(message, error, delay=float(failure.retry_after_seconds))
            return

        if (
            failure.error_code is None
            or failure.error_code >= 500
            or failure.error_code == RATE_LIMITED
        ):
            await self._retry(message, error)
            return

        await self._fail(message, error)

    async def _renew(self, message: ClaimedMessage) -> bool:
        lease_until = self.clock() + timedelta(seconds=self.config.visibility_timeout)
        async with self.session_factory() as session:
            renewed = await self.store.renew(session, message.id, message.attempts, lease_until)
            with store_errors("outbox commit"):
                await session.commit()
        return renewed

    async def _release(self, message: ClaimedMessage, wait: float) -> None:
        next_attempt_at = self.clock() + timedelta(seconds=wait)
        async with self.session_factory() as session:
            changed = await self.store.release(
                session, message.id, message.attempts, next_attempt_at
            )
            with store_errors("outbox commit"):
                await session.commit()
        if changed:
            logger.debug(
                "Outbox %s throttled locally (chat %s), back in %.2fs",
                message.id, message.chat_id, wait,
            )

    async def _mark_sent(self, message: ClaimedMessage) -> None:
        async with self.session_factory() as session:
            changed = await self.store.mark_sent(
                session, message.id, self.clock(), attempts=message.attempts
            )
            with store_errors("outbox commit"):
                await session.commit()
        if changed:
            metrics.OUTBOUND_SEND_SUCCESS.inc()
            logger.debug("Outbox %s sent (chat %s)", message.id, message.chat_id)
        else:
            logger.warning("Outbox %s sent, but its claim was taken over meanwhile", message.id)

    async def _retry(
        self, message: ClaimedMessage, error: str, delay: float | None = None
    ) -> None:
        if message.attempts >= self.config.max_attempts:
            await self._fail(message, f"{error} (attempts exhausted)")
            return

        if delay is None:
            delay = self.backoff.delay(message.attempts)
        next_attempt_at = self.clock() + timedelta(seconds=delay)
        async with self.session_factory() as session:
            changed = await self.store.mark_retry(
                session, message.id, error, next_attempt_at, attempts=message.attempts
            )
            with store_errors("outbox commit"):
                await session.commit()
        if changed:
            metrics.OUTBOUND_SEND_RETRY.inc()
            logger.info(
                "Outbox %s retry in %.2fs (attempt %d/%d): %s",
                message.id, delay, message.attempts, self.config.max_attempts, error,
            )

    async def _fail(self, message: ClaimedMessage, error: str) -> None:
        async with self.session_factory() as session:
            changed = await self.store.mark_failed(
                session, message.id, error, attempts=message.attempts
            )
            with store_errors("outbox commit"):
                await session.commit()
        if changed:
            metrics.OUTBOUND_SEND_FAILED.inc()
            logger.warning(
                "Outbox %s FAILED (chat %s, %s): %s",
                message.id, message.chat_id, message.method, error,
            )
