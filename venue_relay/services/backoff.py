"""
Retry delays: exponential growth, hard cap, symmetric jitter.

The jitter spreads retries of many rows (and many workers) that failed at the
same moment, so they do not hit the provider again in lockstep.
"""
import asyncio
import logging
import math
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from venue_relay.utils.redact import sanitize_for_log

logger = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_backoff(attempts: int, base: float, cap: float, factor: float = 2.0) -> float:
    """base * factor^(attempts-1), capped. attempts is 1-based."""
    exponent = max(attempts - 1, 0)
    # stop growing long before float overflow
    if exponent > 64:
        return cap
    return min(cap, base * factor ** exponent)


def jittered(delay: float, jitter: float = 0.2, rng: random.Random | None = None) -> float:
    """Uniform in [delay * (1 - jitter), delay * (1 + jitter)]."""
    if jitter <= 0 or delay <= 0:
        return delay
    rng = rng or random
    return delay * rng.uniform(1.0 - jitter, 1.0 + jitter)


@dataclass
class BackoffPolicy:
    base: float
    cap: float
    jitter: float = 0.2
    factor: float = 2.0
    rng: random.Random = field(default_factory=random.Random)

    def nominal(self, attempts: int) -> float:
        return exponential_backoff(attempts, self.base, self.cap, self.factor)

    def delay(self, attempts: int) -> float:
        """
        Jittered delay in seconds, never above the cap.
        Jitter is applied before the cap, so with jitter below 1/3 the delay
        never decreases from one attempt to the next.
        """
        uncapped = exponential_backoff(attempts, self.base, math.inf, self.factor)
        return min(self.cap, jittered(uncapped, self.jitter, self.rng))


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    attempts: int,
    policy: BackoffPolicy,
    should_retry: Callable[[Exception], bool] = lambda e: True,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call fn up to `attempts` times, sleeping policy.delay(n) between tries."""
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as e:
            if attempt >= attempts or not should_retry(e):
                raise
            delay = policy.delay(attempt)
            logger.debug(
                "Attempt %d/%d failed (%s), retrying in %.2fs",
                attempt, attempts, sanitize_for_log(str(e)), delay,
            )
            await sleep(delay)
    raise RuntimeError("retry_async called with attempts < 1")
