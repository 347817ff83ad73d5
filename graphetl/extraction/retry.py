"""Retry policy for source requests and target batches.

Exponential backoff with jitter, capped per delay, bounded per request:

    delay(attempt) = min(base * multiplier ** attempt, max_delay) +/- jitter

Failures are classified before deciding anything:

- **transient** (network error, timeout, 5xx): retried until
  ``max_attempts`` attempts have been made, then re-raised.
- **rate_limited** (429): the calling thread sleeps for the server's
  ``Retry-After`` delay (or the backoff delay when none is given). These
  pauses do not consume attempts; they have their own budget,
  ``rate_limit_max_waits``, so a source that never stops throttling still
  ends the request.
- **permanent** (anything else): re-raised immediately.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, Field

from graphetl.config import EtlConfig
from graphetl.errors import RateLimitedError, TransientSourceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FailureType(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    PERMANENT = "permanent"


def classify_failure(
    exc: BaseException,
    retryable: tuple[type[BaseException], ...] = (TransientSourceError,),
) -> FailureType:
    if isinstance(exc, RateLimitedError):
        return FailureType.RATE_LIMITED
    if isinstance(exc, retryable):
        return FailureType.TRANSIENT
    return FailureType.PERMANENT


@dataclass
class RetryStats:
    """Counters for one unit of work (one type's extraction, one artifact's load)."""

    attempts: int = 0
    retries: int = 0
    rate_limit_waits: int = 0
    waited_seconds: float = 0.0


class RetryPolicy(BaseModel):
    """Bounded retry with exponential backoff.

    Attributes:
        max_attempts: Attempts per request, the first one included.
        base_delay_seconds: Delay before the first retry.
        max_delay_seconds: Cap on any single delay.
        backoff_multiplier: Growth factor between retries.
        jitter_factor: Random +/- fraction applied to each delay.
        rate_limit_max_waits: 429 pauses tolerated per request.
    """

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, ge=1, le=20)
    base_delay_seconds: float = Field(default=1.0, ge=0.0)
    max_delay_seconds: float = Field(default=30.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    jitter_factor: float = Field(default=0.2, ge=0.0, le=1.0)
    rate_limit_max_waits: int = Field(default=10, ge=0)

    @classmethod
    def from_config(cls, config: EtlConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_seconds=config.backoff_base_seconds,
            max_delay_seconds=config.backoff_max_seconds,
            backoff_multiplier=config.backoff_multiplier,
            jitter_factor=config.jitter_factor,
            rate_limit_max_waits=config.rate_limit_max_waits,
        )

    def calculate_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay in seconds before retry number ``attempt`` (0-indexed)."""
        delay = min(self.base_delay_seconds * (self.backoff_multiplier**attempt), self.max_delay_seconds)
        if self.jitter_factor > 0 and delay > 0:
            jitter_amount = delay * self.jitter_factor
            delay = max(0.0, delay + (rng or random).uniform(-jitter_amount, jitter_amount))
        return delay

    def _next_delay(self, exc: BaseException, failure: FailureType, attempt: int, waits: int) -> Optional[float]:
        """Delay before the next try, or None when ``exc`` must propagate.

        ``attempt`` counts the failed attempts of this request (429s excluded) and
        ``waits`` the 429 pauses already taken, this one excluded.
        """
        if failure == FailureType.PERMANENT:
            return None
        if failure == FailureType.RATE_LIMITED:
            if waits >= self.rate_limit_max_waits:
                return None
            retry_after = getattr(exc, "retry_after", None)
            if retry_after is not None:
                return float(retry_after)
            return self.calculate_delay(waits)
        if attempt >= self.max_attempts:
            return None
        return self.calculate_delay(attempt - 1)

    def _record(self, stats: RetryStats, failure: FailureType, delay: float) -> None:
        if failure == FailureType.RATE_LIMITED:
            stats.rate_limit_waits += 1
        else:
            stats.retries += 1
        stats.waited_seconds += delay

    def call(
        self,
        fn: Callable[[], T],
        stats: Optional[RetryStats] = None,
        sleep: Callable[[float], None] = time.sleep,
        retryable: tuple[type[BaseException], ...] = (TransientSourceError,),
        description: str = "request",
    ) -> T:
        """Call ``fn`` until it succeeds or the policy gives up.

        The budget is per call; ``stats`` only accumulates counters across
        calls. Only the calling thread sleeps.

        Raises:
            The last exception raised by ``fn`` once retries are exhausted,
            or any permanent failure right away.
        """
        stats = stats if stats is not None else RetryStats()
        attempt = 0
        waits = 0
        while True:
            stats.attempts += 1
            try:
                return fn()
            except Exception as e:
                failure = classify_failure(e, retryable)
                if failure != FailureType.RATE_LIMITED:
                    attempt += 1
                delay = self._next_delay(e, failure, attempt, waits)
                if delay is None:
                    raise
                if failure == FailureType.RATE_LIMITED:
                    waits += 1
                self._record(stats, failure, delay)
                logger.warning("%s failed (%s: %s); retrying in %.2fs", description, failure.value, e, delay)
                sleep(delay)

    async def call_async(
        self,
        fn: Callable[[], Awaitable[T]],
        stats: Optional[RetryStats] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        retryable: tuple[type[BaseException], ...] = (TransientSourceError,),
        description: str = "request",
    ) -> T:
        """Async counterpart of `call`, used by the load step."""
        stats = stats if stats is not None else RetryStats()
        attempt = 0
        waits = 0
        while True:
            stats.attempts += 1
            try:
                return await fn()
            except Exception as e:
                failure = classify_failure(e, retryable)
                if failure != FailureType.RATE_LIMITED:
                    attempt += 1
                delay = self._next_delay(e, failure, attempt, waits)
                if delay is None:
                    raise
                if failure == FailureType.RATE_LIMITED:
                    waits += 1
                self._record(stats, failure, delay)
                logger.warning("%s failed (%s: %s); retrying in %.2fs", description, failure.value, e, delay)
                await sleep(delay)
