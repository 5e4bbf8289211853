from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

# Inclusive upper bound on the ids still to visit; None starts from the newest.
SyncCursor = Optional[int]


@dataclass(slots=True)
class PostFile:
    url: str | None
    extension: str
    md5: str
    size: int


@dataclass(slots=True)
class PostSummary:
    id: int
    file: PostFile
    rating: str | None = None
    score: int | None = None
    tags: Any = None
    created_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def asset_name(self) -> str:
        return f"{self.id}.{self.file.extension}"

    @property
    def is_available(self) -> bool:
        return bool(self.file.url)

    @property
    def has_full_metadata(self) -> bool:
        return "tags" in self.raw


@dataclass(slots=True)
class Page:
    posts: list[PostSummary]
    cursor: SyncCursor
    next_cursor: SyncCursor
    is_last: bool

    @property
    def ids(self) -> list[int]:
        return [post.id for post in self.posts]


@dataclass(slots=True)
class FetchedPost:
    summary: PostSummary
    metadata: dict[str, Any]
    content: bytes


@dataclass(slots=True)
class ArchivedItem:
    post_id: int
    asset_path: Path
    metadata_path: Path
