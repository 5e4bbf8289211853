from __future__ import annotations

import hashlib
import random
from typing import Any

from favorites_mirror.models import PostSummary, SyncCursor
from favorites_mirror.ratelimit import RateLimiter
from favorites_mirror.sources import FavoritesSource, parse_post


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_limiter(clock: FakeClock | None = None, **kwargs: Any) -> RateLimiter:
    clock = clock or FakeClock()
    kwargs.setdefault("rng", random.Random(7))
    return RateLimiter(kwargs.pop("min_interval", 1.0), clock=clock, sleep=clock.sleep, **kwargs)


def asset_bytes(post_id: int) -> bytes:
    return f"asset-bytes-for-{post_id}".encode("utf-8") * 3


def make_raw_post(
    post_id: int,
    *,
    content: bytes | None = None,
    ext: str = "png",
    url: str | None = "default",
    with_tags: bool = True,
) -> dict[str, Any]:
    content = asset_bytes(post_id) if content is None else content
    if url == "default":
        url = f"https://static.example.test/data/{post_id}.{ext}"
    raw: dict[str, Any] = {
        "id": post_id,
        "created_at": "2024-03-01T12:00:00.000-05:00",
        "rating": "s",
        "score": {"up": 10, "down": -1, "total": 9},
        "file": {
            "width": 100,
            "height": 100,
            "ext": ext,
            "size": len(content),
            "md5": hashlib.md5(content).hexdigest(),
            "url": url,
        },
    }
    if with_tags:
        raw["tags"] = {"general": ["outdoors"], "artist": ["someone"]}
    return raw


def make_summary(post_id: int, **kwargs: Any) -> PostSummary:
    return parse_post(make_raw_post(post_id, **kwargs))


class FakeSource(FavoritesSource):
    """In-memory favorites listing that paces every call through the limiter."""

    def __init__(
        self,
        posts: list[dict[str, Any]],
        limiter: RateLimiter,
        *,
        assets: dict[str, bytes] | None = None,
    ) -> None:
        super().__init__(source_id="fake")
        self.posts = sorted(posts, key=lambda item: item["id"], reverse=True)
        self.limiter = limiter
        self.assets = assets if assets is not None else {}
        for raw in self.posts:
            url = raw["file"]["url"]
            if url and url not in self.assets:
                self.assets[url] = asset_bytes(raw["id"])
        self.page_calls: list[SyncCursor] = []
        self.download_calls: list[str] = []
        self.detail_calls: list[int] = []
        self.page_errors: list[Exception] = []
        self.download_errors: dict[str, list[Exception]] = {}

    @property
    def network_calls(self) -> int:
        return len(self.page_calls) + len(self.download_calls) + len(self.detail_calls)

    def fetch_page(self, user_id: int, limit: int, cursor: SyncCursor) -> list[PostSummary]:
        self.limiter.acquire()
        self.page_calls.append(cursor)
        if self.page_errors:
            self.limiter.record_failure()
            raise self.page_errors.pop(0)
        self.limiter.record_success()
        visible = [raw for raw in self.posts if cursor is None or raw["id"] <= cursor]
        return [parse_post(raw) for raw in visible[:limit]]

    def fetch_post(self, post_id: int) -> dict[str, Any]:
        self.limiter.acquire()
        self.detail_calls.append(post_id)
        self.limiter.record_success()
        for raw in self.posts:
            if raw["id"] == post_id:
                return {**raw, "tags": {"general": ["from-detail"]}, "description": "full"}
        raise KeyError(post_id)

    def download(self, url: str) -> bytes:
        self.limiter.acquire()
        self.download_calls.append(url)
        pending = self.download_errors.get(url)
        if pending:
            self.limiter.record_failure()
            raise pending.pop(0)
        self.limiter.record_success()
        return self.assets[url]
