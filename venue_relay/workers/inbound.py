"""
Inbound worker — drains telegram_inbound_updates through the router.

Per tick:
1. claim a batch (own short transaction)
2. for each update, in arrival order, one unit of work:
   router.process() + mark_processed commit together
3. RETRY / exception → rollback, then mark_retry with backoff
   (or mark_dead once attempts are used up)
4. REJECT / NonRetryableError → rollback, mark_dead right away

One bad update never stops the rest of the batch.
"""
import logging
import random
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from venue_relay import metrics
from venue_relay.database import store_errors, utcnow
from venue_relay.exceptions import NonRetryableError
from venue_relay.services.backoff import BackoffPolicy
from venue_relay.services.inbound_queue import ClaimedUpdate, InboundUpdateQueue
from venue_relay.telegram.router import BotRouter, RouteOutcome, RouteResult
from venue_relay.utils.redact import debug_exception, describe_error
from venue_relay.workers.base import PollingWorker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboundWorkerConfig:
    poll_interval: float = 0.5        # seconds
    batch_size: int = 10
    max_attempts: int = 5
    visibility_timeout: float = 120.0  # seconds
    base_backoff: float = 0.5          # seconds
    max_backoff: float = 60.0          # seconds
    jitter: float = 0.2

    def normalized(self) -> "InboundWorkerConfig":
        base_backoff = max(self.base_backoff, 0.1)
        return replace(
            self,
            poll_interval=max(self.poll_interval, 0.1),
            batch_size=min(max(self.batch_size, 1), 200),
            max_attempts=min(max(self.max_attempts, 1), 100),
            visibility_timeout=min(max(self.visibility_timeout, 5.0), 300.0),
            base_backoff=base_backoff,
            max_backoff=max(self.max_backoff, base_backoff),
            jitter=min(max(self.jitter, 0.0), 0.5),
        )


class InboundWorker(PollingWorker):
    name = "inbound-worker"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: InboundUpdateQueue,
        router: BotRouter,
        config: InboundWorkerConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self.config = (config or InboundWorkerConfig()).normalized()
        super().__init__(self.config.poll_interval)
        self.session_factory = session_factory
        self.queue = queue
        self.router = router
        self.clock = clock
        self.backoff = BackoffPolicy(
            base=self.config.base_backoff,
            cap=self.config.max_backoff,
            jitter=self.config.jitter,
            rng=rng or random.Random(),
        )

    async def process_once(self) -> int:
        """Claim and handle one batch. Returns the number of claimed updates."""
        now = self.clock()
        async with self.session_factory() as session:
            claimed = await self.queue.claim_batch(
                session,
                self.config.batch_size,
                now,
                timedelta(seconds=self.config.visibility_timeout),
            )
            with store_errors("inbound claim commit"):
                await session.commit()

        for item in claimed:
            try:
                await self._handle(item)
            except Exception as e:
                # lease expiry brings the update back
                logger.error(
                    "Update %s left unreconciled: %s", item.update_id, describe_error(e)
                )
                debug_exception(logger, e, f"update {item.update_id}")
        return len(claimed)

    async def _handle(self, item: ClaimedUpdate) -> None:
        async with self.session_factory() as session:
            try:
                result = await self.router.process(session, item.update_id, item.payload_json)
                if result.outcome == RouteOutcome.OK:
                    now = self.clock()
                    await self.queue.mark_processed(session, item.update_id, now)
                    with store_errors("inbound commit"):
                        await session.commit()
                    metrics.INBOUND_PROCESSED.inc()
                    self._observe_lag(item, now)
                    logger.debug("Update %s processed", item.update_id)
                    return
                await session.rollback()
            except NonRetryableError as e:
                await session.rollback()
                result = RouteResult.reject(describe_error(e))
            except Exception as e:
                await session.rollback()
                logger.warning(
                    "Update %s failed (attempt %d): %s",
                    item.update_id, item.attempts, describe_error(e),
                )
                debug_exception(logger, e, f"update {item.update_id}")
                result = RouteResult.retry(describe_error(e))

        await self._reconcile_failure(item, result)

    async def _reconcile_failure(self, item: ClaimedUpdate, result: RouteResult) -> None:
        reason = result.reason or result.outcome.value
        now = self.clock()
        async with self.session_factory() as session:
            if result.outcome == RouteOutcome.REJECT or item.attempts >= self.config.max_attempts:
                await self.queue.mark_dead(session, item.update_id, reason, now)
                with store_errors("inbound commit"):
                    await session.commit()
                metrics.INBOUND_DEAD.inc()
                self._observe_lag(item, now)
                logger.warning(
                    "Update %s is DEAD after %d attempt(s): %s",
                    item.update_id, item.attempts, reason,
                )
                return

            delay = self.backoff.delay(item.attempts)
            await self.queue.mark_retry(
                session, item.update_id, reason, now + timedelta(seconds=delay)
            )
            with store_errors("inbound commit"):
                await session.commit()
            metrics.INBOUND_RETRY.inc()
            logger.info(
                "Update %s retry in %.2fs (attempt %d/%d)",
                item.update_id, delay, item.attempts, self.config.max_attempts,
            )

    @staticmethod
    def _observe_lag(item: ClaimedUpdate, now: datetime) -> None:
        lag = (now - item.received_at).total_seconds()
        metrics.INBOUND_PROCESSING_LAG.observe(max(lag, 0.0))
