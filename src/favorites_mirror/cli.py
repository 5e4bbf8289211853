from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from types import FrameType

from favorites_mirror.config import AppConfig, ConfigError, SyncSettings, load_config
from favorites_mirror.errors import StorageError, SyncAbortedError
from favorites_mirror.logging_config import setup_logging
from favorites_mirror.ratelimit import RateLimiter
from favorites_mirror.retry import RetryPolicy
from favorites_mirror.service import FavoritesSyncService, RunStats
from favorites_mirror.sources import create_source
from favorites_mirror.sources.registry import SourceRegistrationError
from favorites_mirror.store import FilesystemStore, RunLock
from favorites_mirror.store.filesystem_store import METADATA_DIRNAME

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ITEM_FAILURES = 1
EXIT_USAGE = 2
EXIT_ABORTED = 3
EXIT_INTERRUPTED = 130


class StopFlag:
    def __init__(self) -> None:
        self.requested = False

    def __call__(self) -> bool:
        return self.requested

    def handle_signal(self, signum: int, frame: FrameType | None) -> None:
        if self.requested:
            raise KeyboardInterrupt
        self.requested = True
        logger.warning(
            "Received %s; finishing the current post before stopping",
            signal.Signals(signum).name,
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="favorites-mirror",
        description="Mirror a user's favorites into a local directory.",
    )
    parser.add_argument("-u", "--user-id", type=int, required=True, help="Numeric user id")
    parser.add_argument(
        "-d",
        "--directory",
        required=True,
        help="Archive root directory (created if missing)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Report progress for every page",
    )
    parser.add_argument(
        "-c",
        "--config",
        help="Optional YAML config file with API, rate limit and retry settings",
    )
    parser.add_argument(
        "--log-level",
        help="Override config log level (e.g. INFO, DEBUG)",
    )
    parser.add_argument(
        "--cursor",
        type=int,
        help="Resume below this post id (inclusive) instead of starting from the newest",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.user_id <= 0:
        parser.error("--user-id must be a positive integer")
    if args.cursor is not None and args.cursor < 0:
        parser.error("--cursor must be >= 0")

    try:
        app_config = load_config(args.config)
    except ConfigError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    log_level = args.log_level or app_config.log_level
    setup_logging(log_level)

    settings = SyncSettings(
        user_id=args.user_id,
        root=Path(args.directory).expanduser().resolve(),
        verbose=args.verbose,
    )

    try:
        (settings.root / METADATA_DIRNAME).mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("Cannot create archive directory %s: %s", settings.root, exc)
        return EXIT_USAGE

    stop_flag = StopFlag()
    signal.signal(signal.SIGINT, stop_flag.handle_signal)
    signal.signal(signal.SIGTERM, stop_flag.handle_signal)

    try:
        return run_sync(app_config, settings, cursor=args.cursor, stop_requested=stop_flag)
    except SourceRegistrationError as exc:
        logger.error("%s", exc)
        return EXIT_USAGE
    except KeyboardInterrupt:
        logger.warning("Interrupted by a second signal; rerun to pick up where the archive left off")
        return EXIT_INTERRUPTED


def run_sync(
    app_config: AppConfig,
    settings: SyncSettings,
    *,
    cursor: int | None = None,
    stop_requested: StopFlag | None = None,
) -> int:
    limiter = RateLimiter(
        app_config.rate_limit.min_interval,
        backoff_base=app_config.rate_limit.backoff_base,
        backoff_ceiling=app_config.rate_limit.backoff_ceiling,
        jitter=app_config.rate_limit.jitter,
    )
    retry_policy = RetryPolicy(
        max_attempts=app_config.retry.max_attempts,
        base_delay=app_config.retry.base_delay,
        max_delay=app_config.retry.max_delay,
        max_throttles=app_config.retry.max_throttles,
    )
    source = create_source(app_config.api, limiter)
    store = FilesystemStore(settings.root, verify_checksums=app_config.storage.verify_checksums)

    service = FavoritesSyncService(
        source=source,
        store=store,
        limiter=limiter,
        retry_policy=retry_policy,
        user_id=settings.user_id,
        page_size=app_config.api.page_size,
        verbose=settings.verbose,
        stop_requested=stop_requested,
    )

    try:
        with RunLock(settings.root):
            store.cleanup_partials()
            stats = service.run(cursor)
    except SyncAbortedError as exc:
        _log_summary(exc.stats)
        logger.error(
            "Sync aborted; rerun with --cursor %s to resume: %s",
            exc.stats.resume_cursor,
            exc.cause,
        )
        return EXIT_ABORTED
    except StorageError as exc:
        logger.error("%s", exc)
        return EXIT_ABORTED

    _log_summary(stats)
    if stats.interrupted:
        logger.warning("Interrupted; rerun with --cursor %s to continue", stats.resume_cursor)
        return EXIT_INTERRUPTED
    return EXIT_OK if stats.ok else EXIT_ITEM_FAILURES


def _log_summary(stats: RunStats) -> None:
    logger.info(
        "Run complete | pages=%d archived=%d skipped_existing=%d unavailable=%d failed=%d "
        "requests=%d item_requests=%d",
        stats.pages,
        stats.archived,
        stats.skipped_existing,
        stats.unavailable,
        len(stats.failures),
        stats.requests,
        stats.item_requests,
    )
    for failure in stats.failures:
        logger.warning("  post %d: %s", failure.post_id, failure.reason)


if __name__ == "__main__":
    raise SystemExit(main())
