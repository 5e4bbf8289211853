from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from favorites_mirror.errors import (
    AuthError,
    NetworkError,
    ProtocolError,
    RateLimitError,
    StorageError,
    SyncAbortedError,
)
from favorites_mirror.models import ArchivedItem, PostSummary, SyncCursor
from favorites_mirror.retry import RetryPolicy
from favorites_mirror.service import FavoritesSyncService
from favorites_mirror.store import FilesystemStore

from helpers import FakeClock, FakeSource, asset_bytes, make_limiter, make_raw_post


def _service(
    source: FakeSource,
    root: Path,
    *,
    page_size: int = 2,
    store: FilesystemStore | None = None,
    stop_requested: Any = None,
) -> FavoritesSyncService:
    (root / "metadata").mkdir(exist_ok=True)
    return FavoritesSyncService(
        source=source,
        store=store or FilesystemStore(root),
        limiter=source.limiter,
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0.5),
        user_id=1234,
        page_size=page_size,
        stop_requested=stop_requested,
    )


def _files(root: Path) -> list[str]:
    return sorted(str(path.relative_to(root)) for path in root.rglob("*") if path.is_file())


def test_three_favorites_two_runs(tmp_path: Path) -> None:
    source = FakeSource([make_raw_post(i) for i in (103, 101, 99)], make_limiter())

    first = _service(source, tmp_path).run()

    assert first.pages == 2
    assert (first.archived, first.skipped_existing, len(first.failures)) == (3, 0, 0)
    assert first.ok is True
    assert source.page_calls == [None, 100]
    assert _files(tmp_path) == [
        "101.png",
        "103.png",
        "99.png",
        "metadata/101.json",
        "metadata/103.json",
        "metadata/99.json",
    ]

    downloads_before = len(source.download_calls)
    files_before = {path: path.stat().st_mtime_ns for path in tmp_path.rglob("*")}

    second = _service(source, tmp_path).run()

    assert (second.archived, second.skipped_existing, len(second.failures)) == (0, 3, 0)
    assert len(source.download_calls) == downloads_before
    assert source.detail_calls == []
    assert {path: path.stat().st_mtime_ns for path in tmp_path.rglob("*")} == files_before
    # Only the two listing requests; nothing per item.
    assert second.requests == 2
    assert second.item_requests == 0
    assert first.item_requests == 3


def test_new_favorites_are_added_incrementally(tmp_path: Path) -> None:
    posts = [make_raw_post(i) for i in (50, 40)]
    source = FakeSource(posts, make_limiter())
    _service(source, tmp_path, page_size=5).run()

    source.posts.insert(0, make_raw_post(60))
    source.assets[source.posts[0]["file"]["url"]] = asset_bytes(60)
    downloads_before = len(source.download_calls)

    stats = _service(source, tmp_path, page_size=5).run()

    assert (stats.archived, stats.skipped_existing) == (1, 2)
    assert len(source.download_calls) == downloads_before + 1
    assert (tmp_path / "60.png").exists()


class _CountingStore(FilesystemStore):
    def __init__(self, root: Path, crash_after: int) -> None:
        super().__init__(root)
        self.crash_after = crash_after
        self.persisted: list[int] = []

    def persist(self, post_id: int, metadata: dict[str, Any], content: bytes, extension: str) -> ArchivedItem:
        if len(self.persisted) == self.crash_after:
            raise KeyboardInterrupt
        item = super().persist(post_id, metadata, content, extension)
        self.persisted.append(post_id)
        return item


def test_resume_after_interruption_fetches_only_the_rest(tmp_path: Path) -> None:
    ids = [9, 8, 7, 6, 5]
    source = FakeSource([make_raw_post(i) for i in ids], make_limiter())

    with pytest.raises(KeyboardInterrupt):
        _service(source, tmp_path, store=_CountingStore(tmp_path, crash_after=2)).run()

    downloaded_first = [url.rsplit("/", 1)[-1] for url in source.download_calls]
    assert downloaded_first == ["9.png", "8.png", "7.png"]
    source.download_calls.clear()

    stats = _service(source, tmp_path).run()

    assert (stats.archived, stats.skipped_existing) == (3, 2)
    assert [url.rsplit("/", 1)[-1] for url in source.download_calls] == ["7.png", "6.png", "5.png"]
    assert _files(tmp_path) == sorted(
        [f"{i}.png" for i in ids] + [f"metadata/{i}.json" for i in ids]
    )


def test_stop_request_is_honoured_between_items(tmp_path: Path) -> None:
    source = FakeSource([make_raw_post(i) for i in (30, 20, 10)], make_limiter())
    checks = {"count": 0}

    def stop_after_first() -> bool:
        checks["count"] += 1
        # first check guards the listing request, then one per item
        return checks["count"] > 2

    stats = _service(source, tmp_path, page_size=5, stop_requested=stop_after_first).run()

    assert stats.interrupted is True
    assert stats.archived == 1
    assert stats.resume_cursor == 29
    assert stats.ok is False
    assert (tmp_path / "30.png").exists()
    assert not (tmp_path / "20.png").exists()


def test_item_failures_are_recorded_and_run_continues(tmp_path: Path) -> None:
    posts = [make_raw_post(i) for i in (5, 4, 3)]
    source = FakeSource(posts, make_limiter())
    source.download_errors[posts[0]["file"]["url"]] = [NetworkError("reset")] * 2
    source.assets[posts[1]["file"]["url"]] = b"x" * posts[1]["file"]["size"]

    stats = _service(source, tmp_path, page_size=5).run()

    assert stats.archived == 1
    assert [failure.post_id for failure in stats.failures] == [5, 4]
    assert "reset" in stats.failures[0].reason
    assert "md5" in stats.failures[1].reason
    assert stats.ok is False
    assert _files(tmp_path) == ["3.png", "metadata/3.json"]


def test_posts_without_file_url_are_counted_unavailable(tmp_path: Path) -> None:
    source = FakeSource([make_raw_post(2, url=None), make_raw_post(1)], make_limiter())

    stats = _service(source, tmp_path, page_size=5).run()

    assert (stats.archived, stats.unavailable, len(stats.failures)) == (1, 1, 0)
    assert not (tmp_path / "metadata" / "2.json").exists()


class _PostFaultSource(FakeSource):
    def __init__(self, *args: Any, fault: Exception, fault_on: int, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.fault = fault
        self.fault_on = fault_on

    def download(self, url: str) -> bytes:
        if url.endswith(f"/{self.fault_on}.png"):
            raise self.fault
        return super().download(url)


def test_auth_failure_aborts_with_partial_stats(tmp_path: Path) -> None:
    source = _PostFaultSource(
        [make_raw_post(i) for i in (9, 8, 7)],
        make_limiter(),
        fault=AuthError("HTTP 401"),
        fault_on=8,
    )

    with pytest.raises(SyncAbortedError) as excinfo:
        _service(source, tmp_path, page_size=5).run()

    error = excinfo.value
    assert isinstance(error.cause, AuthError)
    assert error.post_id == 8
    assert error.stats.archived == 1
    assert error.stats.resume_cursor == 8
    assert error.stats.aborted is not None
    assert not (tmp_path / "7.png").exists()


class _BrokenStore(FilesystemStore):
    def persist(self, post_id: int, metadata: dict[str, Any], content: bytes, extension: str) -> ArchivedItem:
        raise StorageError("disk full")


def test_storage_failure_aborts_the_run(tmp_path: Path) -> None:
    source = FakeSource([make_raw_post(i) for i in (2, 1)], make_limiter())

    with pytest.raises(SyncAbortedError) as excinfo:
        _service(source, tmp_path, store=_BrokenStore(tmp_path)).run()

    assert isinstance(excinfo.value.cause, StorageError)
    assert excinfo.value.post_id == 2
    assert len(source.download_calls) == 1


class _ChangedApiSource(FakeSource):
    def fetch_page(self, user_id: int, limit: int, cursor: SyncCursor) -> list[PostSummary]:
        return super().fetch_page(user_id, limit, None)


def test_non_monotonic_pages_abort_with_cursor(tmp_path: Path) -> None:
    source = _ChangedApiSource([make_raw_post(i) for i in (6, 5, 4)], make_limiter())

    with pytest.raises(SyncAbortedError) as excinfo:
        _service(source, tmp_path).run()

    assert isinstance(excinfo.value.cause, ProtocolError)
    assert excinfo.value.cursor == 4
    assert excinfo.value.stats.archived == 2
    assert excinfo.value.stats.pages == 1


def test_listing_outage_aborts_after_retries(tmp_path: Path) -> None:
    source = FakeSource([make_raw_post(1)], make_limiter())
    source.page_errors = [NetworkError("down"), NetworkError("down")]

    with pytest.raises(SyncAbortedError) as excinfo:
        _service(source, tmp_path).run()

    assert isinstance(excinfo.value.cause, NetworkError)
    assert excinfo.value.cursor is None
    assert len(source.page_calls) == 2


def test_starting_cursor_skips_newer_items(tmp_path: Path) -> None:
    source = FakeSource([make_raw_post(i) for i in (30, 20, 10)], make_limiter())

    stats = _service(source, tmp_path, page_size=5).run(cursor=20)

    assert stats.archived == 2
    assert not (tmp_path / "30.png").exists()
    assert source.page_calls == [20]


def test_requests_are_spaced_by_the_shared_limiter(tmp_path: Path) -> None:
    clock = FakeClock()
    source = FakeSource([make_raw_post(i) for i in (3, 2, 1)], make_limiter(clock))

    stats = _service(source, tmp_path, page_size=5).run()

    # one listing + three downloads, each after the first waiting a full interval
    assert stats.requests == 4
    assert stats.item_requests == 3
    assert clock.sleeps == [1.0, 1.0, 1.0]


def test_integrity_errors_never_leave_archived_files(tmp_path: Path) -> None:
    raw = make_raw_post(4)
    source = FakeSource([raw], make_limiter())
    source.assets[raw["file"]["url"]] = b"y" * raw["file"]["size"]

    stats = _service(source, tmp_path).run()

    assert [failure.post_id for failure in stats.failures] == [4]
    assert _files(tmp_path) == []


class _ThrottledListing(FakeSource):
    def __init__(self, *args: Any, throttles: int, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.throttles = throttles

    def fetch_page(self, user_id: int, limit: int, cursor: SyncCursor) -> list[PostSummary]:
        if self.throttles:
            self.throttles -= 1
            self.limiter.acquire()
            self.page_calls.append(cursor)
            self.limiter.record_throttle()
            raise RateLimitError("HTTP 429")
        return super().fetch_page(user_id, limit, cursor)


def test_listing_throttled_beyond_budget_still_completes(tmp_path: Path) -> None:
    clock = FakeClock()
    limiter = make_limiter(clock, backoff_ceiling=300.0)
    source = _ThrottledListing([make_raw_post(i) for i in (2, 1)], limiter, throttles=12)
    service = _service(source, tmp_path, page_size=5)
    assert service.retry_policy.max_throttles == 10

    stats = service.run()

    assert stats.ok is True
    assert stats.archived == 2
    assert len(source.page_calls) == 13
    assert max(clock.sleeps) <= 300.0


def test_stop_request_ends_a_throttled_listing_wait(tmp_path: Path) -> None:
    source = _ThrottledListing([make_raw_post(1)], make_limiter(), throttles=10_000)

    def stop_after_fifteen_attempts() -> bool:
        return len(source.page_calls) >= 15

    stats = _service(source, tmp_path, stop_requested=stop_after_fifteen_attempts).run()

    assert stats.interrupted is True
    assert stats.aborted is None
    assert stats.pages == 0
    assert len(source.page_calls) == 15
    assert not (tmp_path / "1.png").exists()


def test_stop_request_prevents_the_next_listing_request(tmp_path: Path) -> None:
    source = FakeSource([make_raw_post(i) for i in (4, 3, 2, 1)], make_limiter())
    archived: list[int] = []

    class _RecordingStore(FilesystemStore):
        def persist(self, post_id: int, metadata: dict[str, Any], content: bytes, extension: str) -> ArchivedItem:
            item = super().persist(post_id, metadata, content, extension)
            archived.append(post_id)
            return item

    # stop arrives while the last item of the first page is being stored
    stats = _service(
        source,
        tmp_path,
        store=_RecordingStore(tmp_path),
        stop_requested=lambda: archived == [4, 3],
    ).run()

    assert stats.interrupted is True
    assert stats.archived == 2
    assert source.page_calls == [None]
    assert stats.resume_cursor == 2
