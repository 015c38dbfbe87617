"""Pacing for external API calls.

The controller only waits; retrying is the orchestrator's job.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenBucket:
    """Thread-safe token bucket shared by every running job."""

    def __init__(
        self,
        capacity: float,
        refill_per_second: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if capacity <= 0 or refill_per_second <= 0:
            raise ValueError("capacity and refill_per_second must be positive")
        self.capacity = float(capacity)
        self.refill_per_second = float(refill_per_second)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)
        self._updated = now

    def try_acquire(self, tokens: float = 1.0) -> float:
        """Take tokens if available; otherwise return the seconds to wait."""
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return 0.0
            return (tokens - self._tokens) / self.refill_per_second

    def acquire(self, tokens: float = 1.0) -> float:
        """Block until ``tokens`` are available; returns total seconds waited."""
        waited = 0.0
        while True:
            wait_for = self.try_acquire(tokens)
            if wait_for <= 0:
                return waited
            self._sleep(wait_for)
            waited += wait_for


class RateController:
    def __init__(
        self,
        *,
        step_delay: float = 1.0,
        job_delay: float = 5.0,
        batch_size: int = 2,
        batch_delay: float = 180.0,
        bucket: Optional[TokenBucket] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.step_delay = step_delay
        self.job_delay = job_delay
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.bucket = bucket
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, sleep: Callable[[float], None] = time.sleep) -> "RateController":
        per_minute = max(1, settings.rate_limit_per_minute)
        bucket = TokenBucket(capacity=per_minute, refill_per_second=per_minute / 60.0, sleep=sleep)
        return cls(
            step_delay=settings.step_delay_seconds,
            job_delay=settings.job_delay_seconds,
            batch_size=settings.batch_size,
            batch_delay=settings.batch_delay_seconds,
            bucket=bucket,
            sleep=sleep,
        )

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)

    def before_step(self, index: int) -> None:
        """Pace an adapter call; ``index`` counts calls already made in this job."""
        if index > 0:
            self.sleep(self.step_delay)
        if self.bucket is not None:
            waited = self.bucket.acquire()
            if waited:
                logger.debug("Rate limiter held step for %.2fs", waited)

    def between_jobs(self) -> None:
        self.sleep(self.job_delay)

    def between_batches(self) -> None:
        logger.info("Pausing %.0fs before next batch", self.batch_delay)
        self.sleep(self.batch_delay)

    def chunk(self, items: Sequence[T]) -> List[List[T]]:
        return [list(items[i:i + self.batch_size]) for i in range(0, len(items), self.batch_size)]

