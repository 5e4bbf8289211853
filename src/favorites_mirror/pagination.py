from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable

from favorites_mirror.errors import ProtocolError
from favorites_mirror.models import Page, PostSummary, SyncCursor
from favorites_mirror.ratelimit import RateLimiter
from favorites_mirror.retry import RetryPolicy, run_with_retry
from favorites_mirror.sources import FavoritesSource

logger = logging.getLogger(__name__)


class CursorWalker:
    """Forward-only iterator over favorites pages, newest first.

    The walker holds nothing but the cursor for the next request. Each
    ``next()`` is one listing round trip (plus retries) and yields a ``Page``
    whose ``next_cursor`` lies strictly below every id it contains.

    Throttled listing requests are retried without a budget, backing off at
    the limiter ceiling; only ``stop_requested`` ends that wait early.
    """

    def __init__(
        self,
        source: FavoritesSource,
        *,
        user_id: int,
        page_size: int,
        limiter: RateLimiter,
        retry_policy: RetryPolicy,
        cursor: SyncCursor = None,
        stop_requested: Callable[[], bool] | None = None,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.source = source
        self.user_id = user_id
        self.page_size = page_size
        self.limiter = limiter
        self.retry_policy = replace(retry_policy, max_throttles=None)
        self.stop_requested = stop_requested
        self.cursor = cursor
        self._exhausted = False

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    def __iter__(self) -> CursorWalker:
        return self

    def __next__(self) -> Page:
        if self._exhausted:
            raise StopIteration

        cursor = self.cursor
        try:
            posts = run_with_retry(
                lambda: self.source.fetch_page(self.user_id, self.page_size, cursor),
                policy=self.retry_policy,
                limiter=self.limiter,
                label=f"favorites page (cursor={cursor})",
                stop_requested=self.stop_requested,
            )
        except Exception:
            self._exhausted = True
            raise

        if not posts:
            logger.debug("Empty page at cursor %s; pagination finished", cursor)
            self._exhausted = True
            raise StopIteration

        try:
            next_cursor = _next_cursor(posts, cursor)
        except ProtocolError:
            self._exhausted = True
            raise

        is_last = len(posts) < self.page_size
        self.cursor = next_cursor
        self._exhausted = is_last
        return Page(posts=posts, cursor=cursor, next_cursor=next_cursor, is_last=is_last)


def _next_cursor(posts: list[PostSummary], cursor: SyncCursor) -> int:
    ids = [post.id for post in posts]
    for previous, current in zip(ids, ids[1:]):
        if current >= previous:
            raise ProtocolError(
                f"page at cursor {cursor} is not in strictly decreasing id order "
                f"({previous} followed by {current})"
            )

    if cursor is not None and ids[0] > cursor:
        raise ProtocolError(
            f"page at cursor {cursor} returned id {ids[0]} above the cursor"
        )

    # Every id on the next page must be strictly below this page's minimum.
    return ids[-1] - 1
