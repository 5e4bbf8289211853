from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

from favorites_mirror.errors import IntegrityError, NetworkError, RateLimitError
from favorites_mirror.ratelimit import RateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (NetworkError, IntegrityError)


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 60.0
    max_throttles: int | None = 10

    def start(self) -> RetryState:
        return RetryState(policy=self)

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


@dataclass(slots=True)
class RetryState:
    """Attempt bookkeeping for one operation.

    ``attempt`` counts regular tries (network and integrity failures); throttle
    responses are tracked separately in ``throttles`` because the server asked
    us to slow down rather than reporting a fault.
    """

    policy: RetryPolicy
    attempt: int = 1
    throttles: int = 0
    next_delay: float = 0.0
    last_error: Exception | None = None

    def record_failure(self, error: Exception) -> bool:
        self.last_error = error
        if self.attempt >= self.policy.max_attempts:
            self.next_delay = 0.0
            return False
        self.next_delay = self.policy.delay_for(self.attempt)
        self.attempt += 1
        return True

    def record_throttle(self, error: Exception) -> bool:
        self.last_error = error
        limit = self.policy.max_throttles
        if limit is not None and self.throttles >= limit:
            self.next_delay = 0.0
            return False
        self.throttles += 1
        # The rate limiter already extended its wait for the throttle.
        self.next_delay = 0.0
        return True


def run_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    limiter: RateLimiter,
    label: str,
    stop_requested: Callable[[], bool] | None = None,
) -> T:
    """Run ``operation`` until it succeeds or its retry budget is spent.

    Backoff is handed to the limiter so the only blocking point stays
    ``RateLimiter.acquire``. Errors outside ``RETRYABLE_ERRORS`` propagate
    on first occurrence. With ``policy.max_throttles`` set to ``None``
    throttling is retried indefinitely; ``stop_requested`` is then the only
    way out, and is checked before every throttled retry.
    """
    state = policy.start()
    while True:
        try:
            return operation()
        except RateLimitError as exc:
            if stop_requested is not None and stop_requested():
                logger.info("%s: stop requested while throttled", label)
                raise
            if not state.record_throttle(exc):
                logger.error("%s: giving up after %d throttled attempts", label, state.throttles)
                raise
            logger.info(
                "%s: throttled, retrying (%d/%s)",
                label,
                state.throttles,
                policy.max_throttles if policy.max_throttles is not None else "unbounded",
            )
        except RETRYABLE_ERRORS as exc:
            if not state.record_failure(exc):
                logger.error("%s: giving up after %d attempts: %s", label, state.attempt, exc)
                raise
            logger.warning(
                "%s failed (%s); retrying in %.1fs (attempt %d/%d)",
                label,
                exc,
                state.next_delay,
                state.attempt,
                policy.max_attempts,
            )
            limiter.hold_off(state.next_delay)
