from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from favorites_mirror.errors import (
    FATAL_ERRORS,
    ITEM_ERRORS,
    FavoritesMirrorError,
    NetworkError,
    RateLimitError,
    SyncAbortedError,
    UnavailableError,
)
from favorites_mirror.fetcher import ContentFetcher
from favorites_mirror.models import Page, PostSummary, SyncCursor
from favorites_mirror.pagination import CursorWalker
from favorites_mirror.ratelimit import RateLimiter
from favorites_mirror.retry import RetryPolicy
from favorites_mirror.sources import FavoritesSource
from favorites_mirror.store import ArchiveStore
from favorites_mirror.utils.datetime_utils import format_datetime

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ItemFailure:
    post_id: int
    reason: str


@dataclass(slots=True)
class RunStats:
    pages: int = 0
    archived: int = 0
    skipped_existing: int = 0
    unavailable: int = 0
    requests: int = 0
    item_requests: int = 0
    failures: list[ItemFailure] = field(default_factory=list)
    interrupted: bool = False
    aborted: str | None = None
    resume_cursor: SyncCursor = None

    @property
    def ok(self) -> bool:
        return not self.failures and self.aborted is None and not self.interrupted


class FavoritesSyncService:
    def __init__(
        self,
        *,
        source: FavoritesSource,
        store: ArchiveStore,
        limiter: RateLimiter,
        retry_policy: RetryPolicy,
        user_id: int,
        page_size: int,
        verbose: bool = False,
        stop_requested: Callable[[], bool] | None = None,
    ) -> None:
        self.source = source
        self.store = store
        self.limiter = limiter
        self.retry_policy = retry_policy
        self.user_id = user_id
        self.page_size = page_size
        self.verbose = verbose
        self.stop_requested = stop_requested or (lambda: False)
        self.fetcher = ContentFetcher(source, limiter=limiter, retry_policy=retry_policy)

    def run(self, cursor: SyncCursor = None) -> RunStats:
        """Walk favorites newest first and archive anything not yet on disk.

        Per-item failures are collected in the returned stats. Fatal errors
        raise ``SyncAbortedError`` carrying the stats gathered so far and the
        post id or cursor to resume from.
        """
        stats = RunStats(resume_cursor=cursor)
        requests_before = self.limiter.requests
        walker = CursorWalker(
            self.source,
            user_id=self.user_id,
            page_size=self.page_size,
            limiter=self.limiter,
            retry_policy=self.retry_policy,
            cursor=cursor,
            stop_requested=self.stop_requested,
        )

        try:
            while True:
                page_cursor = walker.cursor
                if not walker.exhausted and self._stop(stats, f"before listing cursor {page_cursor}"):
                    return stats
                try:
                    page = next(walker)
                except StopIteration:
                    break
                except RateLimitError as exc:
                    if self._stop(stats, f"while listing cursor {page_cursor} was throttled"):
                        return stats
                    raise self._aborted(stats, exc, cursor=page_cursor) from exc
                except (NetworkError, *FATAL_ERRORS) as exc:
                    raise self._aborted(stats, exc, cursor=page_cursor) from exc

                stats.pages += 1
                self._report_page(page)

                for summary in page.posts:
                    if self._stop(stats, f"before post {summary.id}"):
                        return stats
                    self._process(summary, stats, page_cursor)
                    stats.resume_cursor = summary.id - 1
        finally:
            stats.requests = self.limiter.requests - requests_before

        logger.info("All favorites pages processed")
        return stats

    def _process(self, summary: PostSummary, stats: RunStats, page_cursor: SyncCursor) -> None:
        requests_before = self.limiter.requests
        try:
            self._archive(summary, stats, page_cursor)
        finally:
            stats.item_requests += self.limiter.requests - requests_before

    def _archive(self, summary: PostSummary, stats: RunStats, page_cursor: SyncCursor) -> None:
        try:
            if self.store.is_archived(summary):
                stats.skipped_existing += 1
                return

            if not summary.is_available:
                stats.unavailable += 1
                logger.info("Post %s has no downloadable file; skipping", summary.id)
                return

            fetched = self.fetcher.fetch(summary)
            self.store.persist(
                summary.id,
                fetched.metadata,
                fetched.content,
                summary.file.extension,
            )
        except FATAL_ERRORS as exc:
            raise self._aborted(stats, exc, post_id=summary.id, cursor=page_cursor) from exc
        except ITEM_ERRORS as exc:
            level = logging.INFO if isinstance(exc, UnavailableError) else logging.ERROR
            logger.log(level, "Post %s failed: %s", summary.id, exc)
            stats.failures.append(ItemFailure(post_id=summary.id, reason=str(exc)))
            return

        stats.archived += 1
        logger.info("Archived post %s (%s)", summary.id, summary.asset_name)

    def _stop(self, stats: RunStats, where: str) -> bool:
        if not self.stop_requested():
            return False
        stats.interrupted = True
        logger.warning("Stop requested; ending run %s", where)
        return True

    def _aborted(
        self,
        stats: RunStats,
        exc: FavoritesMirrorError,
        *,
        post_id: int | None = None,
        cursor: SyncCursor = None,
    ) -> SyncAbortedError:
        stats.aborted = f"{type(exc).__name__}: {exc}"
        if post_id is not None:
            stats.resume_cursor = post_id
        else:
            stats.resume_cursor = cursor
        logger.error("Run aborted: %s", stats.aborted)
        return SyncAbortedError(exc, stats, post_id=post_id, cursor=stats.resume_cursor)

    def _report_page(self, page: Page) -> None:
        level = logging.INFO if self.verbose else logging.DEBUG
        if not logger.isEnabledFor(level):
            return
        newest, oldest = page.posts[0], page.posts[-1]
        logger.log(
            level,
            "Page cursor=%s: %d favorites, ids %d..%d (%s .. %s)%s",
            page.cursor if page.cursor is not None else "newest",
            len(page.posts),
            newest.id,
            oldest.id,
            format_datetime(newest.created_at),
            format_datetime(oldest.created_at),
            " [last page]" if page.is_last else "",
        )
