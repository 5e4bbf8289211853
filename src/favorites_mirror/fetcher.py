from __future__ import annotations

import logging
from typing import Any

from favorites_mirror.errors import IntegrityError, UnavailableError
from favorites_mirror.models import FetchedPost, PostSummary
from favorites_mirror.ratelimit import RateLimiter
from favorites_mirror.retry import RetryPolicy, run_with_retry
from favorites_mirror.sources import FavoritesSource
from favorites_mirror.utils.checksum_utils import checksums_match, md5_hex

logger = logging.getLogger(__name__)


class ContentFetcher:
    def __init__(
        self,
        source: FavoritesSource,
        *,
        limiter: RateLimiter,
        retry_policy: RetryPolicy,
    ) -> None:
        self.source = source
        self.limiter = limiter
        self.retry_policy = retry_policy

    def fetch(self, summary: PostSummary) -> FetchedPost:
        """Download and verify one post; nothing is written to disk here."""
        if not summary.is_available:
            raise UnavailableError(f"post {summary.id} has no downloadable file")

        metadata = self._metadata_for(summary)
        content = run_with_retry(
            lambda: self._download_verified(summary),
            policy=self.retry_policy,
            limiter=self.limiter,
            label=f"download of post {summary.id}",
        )
        return FetchedPost(summary=summary, metadata=metadata, content=content)

    def _metadata_for(self, summary: PostSummary) -> dict[str, Any]:
        if summary.has_full_metadata:
            return summary.raw

        logger.debug("Listing entry for post %s is partial; fetching details", summary.id)
        detail = run_with_retry(
            lambda: self.source.fetch_post(summary.id),
            policy=self.retry_policy,
            limiter=self.limiter,
            label=f"details of post {summary.id}",
        )
        return {**summary.raw, **detail}

    def _download_verified(self, summary: PostSummary) -> bytes:
        content = self.source.download(summary.file.url or "")

        if len(content) != summary.file.size:
            raise IntegrityError(
                f"post {summary.id}: expected {summary.file.size} bytes, got {len(content)}"
            )

        actual = md5_hex(content)
        if not checksums_match(summary.file.md5, actual):
            raise IntegrityError(
                f"post {summary.id}: md5 mismatch (expected {summary.file.md5}, got {actual})"
            )
        return content
