"""Bounded retry with full-jitter exponential backoff."""

import asyncio
import logging
import random
from dataclasses import dataclass, field

from pharmatrace.errors import TransientLedgerError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 0.25
    max_delay: float = 8.0
    multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings, max_attempts=None):
        return cls(
            max_attempts=max_attempts or settings.FEE_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        )

    def backoff(self, rng=None) -> "Backoff":
        return Backoff(self, rng=rng or random.Random())


@dataclass
class Backoff:
    """Attempt counter plus jittered delay. One instance per logical operation.

    Usage:
        backoff = policy.backoff()
        while True:
            backoff.begin()          # raises nothing, counts the attempt
            try:
                ...
            except TransientLedgerError:
                if backoff.exhausted:
                    raise
                await backoff.sleep()
    """

    policy: RetryPolicy
    rng: random.Random = field(default_factory=random.Random)
    attempt: int = 0

    def begin(self) -> int:
        self.attempt += 1
        return self.attempt

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.policy.max_attempts

    @property
    def remaining(self) -> int:
        return max(0, self.policy.max_attempts - self.attempt)

    def next_delay(self) -> float:
        ceiling = min(
            self.policy.max_delay,
            self.policy.base_delay * (self.policy.multiplier ** max(0, self.attempt - 1)),
        )
        return self.rng.uniform(0, ceiling)

    async def sleep(self) -> float:
        delay = self.next_delay()
        if delay > 0:
            await asyncio.sleep(delay)
        return delay


async def call_with_retry(func, policy: RetryPolicy, *, retry_on=(TransientLedgerError,), label="ledger call"):
    """Await ``func()`` until it succeeds or the policy's attempts run out.

    The last exception is re-raised once the budget is spent.
    """
    backoff = policy.backoff()
    while True:
        backoff.begin()
        try:
            return await func()
        except retry_on as e:
            if backoff.exhausted:
                logger.warning(
                    f"{label} failed after {backoff.attempt} attempts: {e}",
                    extra={'attempts': backoff.attempt, 'error': str(e)}
                )
                raise
            delay = await backoff.sleep()
            logger.debug(
                f"{label} attempt {backoff.attempt} failed, retried after {delay:.3f}s",
                extra={'attempt': backoff.attempt, 'error': str(e)}
            )
