"""
Outbound request pacing shared by every call the run makes.

The limiter enforces a minimum spacing measured from the moment the previous
request returned, and stretches that spacing with capped, jittered exponential
backoff whenever the server signals throttling. Clock, sleep and random source
are injectable so pacing can be asserted against a fake clock.
"""
from __future__ import annotations

import logging
import random
import time
from typing import Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(
        self,
        min_interval: float = 1.0,
        *,
        backoff_base: float = 2.0,
        backoff_ceiling: float = 300.0,
        jitter: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.min_interval = max(0.0, float(min_interval))
        self.backoff_base = max(0.0, float(backoff_base))
        self.backoff_ceiling = max(0.0, float(backoff_ceiling))
        self.jitter = min(max(0.0, float(jitter)), 1.0)
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._last_returned_at: float | None = None
        self._extra_wait = 0.0
        self._consecutive_throttles = 0
        self.requests = 0

    @property
    def consecutive_throttles(self) -> int:
        return self._consecutive_throttles

    def pending_wait(self) -> float:
        """Seconds ``acquire`` would block if called now."""
        required = max(self.min_interval, self._extra_wait)
        if self._last_returned_at is None:
            return self._extra_wait
        elapsed = self._clock() - self._last_returned_at
        return max(0.0, required - elapsed)

    def acquire(self) -> float:
        """Block until the next request may be issued; returns the time waited."""
        wait = self.pending_wait()
        if wait > 0:
            logger.debug("Rate limiter sleeping %.2fs", wait)
            self._sleep(wait)
        self._extra_wait = 0.0
        self.requests += 1
        return wait

    def hold_off(self, seconds: float) -> None:
        """Extend the next wait, e.g. for a retry backoff."""
        self._extra_wait = max(self._extra_wait, float(seconds))

    def record_success(self) -> None:
        self._mark_returned()
        if self._consecutive_throttles:
            logger.info("Server accepted request; resuming normal cadence")
        self._consecutive_throttles = 0

    def record_failure(self) -> None:
        self._mark_returned()

    def record_throttle(self, retry_after: float | None = None) -> float:
        self._mark_returned()
        self._consecutive_throttles += 1

        backoff = self.backoff_base * (2 ** (self._consecutive_throttles - 1))
        backoff = min(self.backoff_ceiling, backoff)
        backoff *= self._rng.uniform(1.0 - self.jitter, 1.0)
        if retry_after is not None:
            # The server's own Retry-After is honoured in full.
            backoff = max(backoff, float(retry_after))

        self.hold_off(backoff)
        logger.warning(
            "Throttled by server (%d in a row); backing off %.1fs",
            self._consecutive_throttles,
            max(self.min_interval, backoff),
        )
        return backoff

    def _mark_returned(self) -> None:
        self._last_returned_at = self._clock()
