from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

import requests

from favorites_mirror.config import ApiSettings
from favorites_mirror.errors import (
    AuthError,
    NetworkError,
    ProtocolError,
    RateLimitError,
    UnavailableError,
)
from favorites_mirror.models import PostFile, PostSummary, SyncCursor
from favorites_mirror.ratelimit import RateLimiter
from favorites_mirror.utils.datetime_utils import parse_datetime_utc

from .base import FavoritesSource
from .registry import Credentials, register_source

USER_AGENT = "favorites-mirror/0.1 (+https://github.com/)"

_THROTTLE_STATUSES = {429, 503}
_EXTENSION = re.compile(r"^[a-z0-9]{1,10}$")
_MD5 = re.compile(r"^[0-9a-f]{32}$")

_LISTING = "listing"
_POST = "post"
_ASSET = "asset"


class E621Source(FavoritesSource):
    def __init__(
        self,
        settings: ApiSettings,
        limiter: RateLimiter,
        *,
        session: requests.Session | None = None,
        credentials: Credentials | None = None,
    ) -> None:
        super().__init__(source_id=settings.type)
        self.base_url = settings.base_url.rstrip("/")
        self.timeout_seconds = settings.timeout_seconds
        self.before_id_inclusive = settings.before_id_inclusive
        self.limiter = limiter
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})
        if credentials is not None:
            self.session.auth = credentials

    def fetch_page(self, user_id: int, limit: int, cursor: SyncCursor) -> list[PostSummary]:
        params: dict[str, Any] = {"user_id": user_id, "limit": limit}
        before = self.before_id_param(cursor)
        if before is not None:
            params["page"] = f"b{before}"

        response = self._get(f"{self.base_url}/favorites.json", kind=_LISTING, params=params)
        payload = _decode_json(response)
        posts = payload.get("posts") if isinstance(payload, dict) else None
        if not isinstance(posts, list):
            raise ProtocolError("favorites listing is missing the 'posts' array")
        return [parse_post(item) for item in posts]

    def fetch_post(self, post_id: int) -> dict[str, Any]:
        response = self._get(f"{self.base_url}/posts/{post_id}.json", kind=_POST)
        payload = _decode_json(response)
        post = payload.get("post") if isinstance(payload, dict) else None
        if not isinstance(post, dict):
            raise ProtocolError(f"post {post_id} detail is missing the 'post' object")
        return post

    def download(self, url: str) -> bytes:
        response = self._get(url, kind=_ASSET)
        return response.content

    def before_id_param(self, cursor: SyncCursor) -> int | None:
        # The cursor is inclusive; e621's "b<id>" returns ids strictly below <id>.
        if cursor is None:
            return None
        return cursor if self.before_id_inclusive else cursor + 1

    def _get(
        self,
        url: str,
        *,
        kind: str,
        params: dict[str, Any] | None = None,
    ) -> requests.Response:
        self.limiter.acquire()
        try:
            response = self.session.get(url, params=params, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            self.limiter.record_failure()
            raise NetworkError(f"GET {url} failed: {exc}") from exc

        status = response.status_code
        if status in _THROTTLE_STATUSES:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            self.limiter.record_throttle(retry_after)
            raise RateLimitError(f"GET {url} throttled with HTTP {status}", retry_after=retry_after)

        if status < 400:
            self.limiter.record_success()
            return response

        self.limiter.record_failure()
        raise _error_for_status(status, url, kind)


def parse_post(raw: Any) -> PostSummary:
    if not isinstance(raw, dict):
        raise ProtocolError(f"post entry must be an object, got {type(raw).__name__}")

    post_id = raw.get("id")
    if isinstance(post_id, bool) or not isinstance(post_id, int) or post_id <= 0:
        raise ProtocolError(f"post entry has an invalid id: {post_id!r}")

    file_info = raw.get("file")
    if not isinstance(file_info, dict):
        raise ProtocolError(f"post {post_id} has no file block")

    extension = str(file_info.get("ext") or "").strip().lower().lstrip(".")
    if not _EXTENSION.match(extension):
        raise ProtocolError(f"post {post_id} has an invalid file extension: {extension!r}")

    md5 = str(file_info.get("md5") or "").strip().lower()
    if not _MD5.match(md5):
        raise ProtocolError(f"post {post_id} has an invalid md5: {md5!r}")

    size = file_info.get("size")
    if isinstance(size, bool) or not isinstance(size, int) or size < 0:
        raise ProtocolError(f"post {post_id} has an invalid file size: {size!r}")

    url = file_info.get("url")
    return PostSummary(
        id=post_id,
        file=PostFile(
            url=str(url).strip() if url else None,
            extension=extension,
            md5=md5,
            size=size,
        ),
        rating=raw.get("rating"),
        score=_score_total(raw.get("score")),
        tags=raw.get("tags"),
        created_at=parse_datetime_utc(raw.get("created_at")),
        raw=raw,
    )


def parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    retry_at = parse_datetime_utc(value)
    if retry_at is None:
        return None
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())


def _score_total(value: Any) -> int | None:
    if isinstance(value, dict):
        value = value.get("total")
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _decode_json(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise ProtocolError(f"{response.url} did not return valid JSON") from exc


def _error_for_status(status: int, url: str, kind: str) -> Exception:
    message = f"GET {url} returned HTTP {status}"
    if status >= 500:
        return NetworkError(message)
    if kind == _ASSET:
        return UnavailableError(message)
    if status in {401, 403}:
        return AuthError(message)
    if kind == _LISTING:
        if status in {404, 422}:
            return AuthError(f"{message}; the user id was not accepted")
        return ProtocolError(message)
    if status in {404, 410}:
        return UnavailableError(message)
    return ProtocolError(message)


@register_source("e621")
def _build_e621_source(
    settings: ApiSettings,
    limiter: RateLimiter,
    credentials: Credentials | None,
) -> FavoritesSource:
    return E621Source(settings, limiter, credentials=credentials)
