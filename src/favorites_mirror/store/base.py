from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from favorites_mirror.models import ArchivedItem, PostSummary


class ArchiveStore(ABC):
    @abstractmethod
    def is_archived(self, summary: PostSummary) -> bool:
        """Return True only if a complete, matching copy is on disk."""

    @abstractmethod
    def persist(
        self,
        post_id: int,
        metadata: dict[str, Any],
        content: bytes,
        extension: str,
    ) -> ArchivedItem:
        """Commit the asset, then its metadata document."""
