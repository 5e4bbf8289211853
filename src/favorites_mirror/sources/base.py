from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from favorites_mirror.models import PostSummary, SyncCursor


class FavoritesSource(ABC):
    def __init__(self, source_id: str) -> None:
        self.source_id = source_id

    @abstractmethod
    def fetch_page(self, user_id: int, limit: int, cursor: SyncCursor) -> list[PostSummary]:
        """Return up to ``limit`` favorites with id <= ``cursor``, newest first."""

    @abstractmethod
    def fetch_post(self, post_id: int) -> dict[str, Any]:
        """Return the full metadata document for one post."""

    @abstractmethod
    def download(self, url: str) -> bytes:
        """Return the raw bytes of an asset."""
