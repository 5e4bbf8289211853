from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from favorites_mirror.errors import StorageError
from favorites_mirror.models import ArchivedItem, PostSummary
from favorites_mirror.utils.checksum_utils import checksums_match, file_md5_hex

from .base import ArchiveStore

logger = logging.getLogger(__name__)

METADATA_DIRNAME = "metadata"
METADATA_SUFFIX = ".json"
PARTIAL_SUFFIX = ".part"


class FilesystemStore(ArchiveStore):
    """Archive laid out as ``<root>/<id>.<ext>`` plus ``<root>/metadata/<id>.json``.

    The filesystem is the only index: every ``is_archived`` call looks at the
    files again, so whatever a previous (possibly crashed) run left behind is
    judged on what is actually there.
    """

    def __init__(self, root: str | Path, *, verify_checksums: bool = False) -> None:
        self.root = Path(root)
        self.metadata_dir = self.root / METADATA_DIRNAME
        self.verify_checksums = verify_checksums

    def asset_path(self, post_id: int, extension: str) -> Path:
        return self.root / f"{post_id}.{extension}"

    def metadata_path(self, post_id: int) -> Path:
        return self.metadata_dir / f"{post_id}{METADATA_SUFFIX}"

    def is_archived(self, summary: PostSummary) -> bool:
        metadata_path = self.metadata_path(summary.id)
        asset_path = self.asset_path(summary.id, summary.file.extension)

        try:
            if not metadata_path.is_file():
                return False
            asset_size = asset_path.stat().st_size
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"cannot inspect archive for post {summary.id}: {exc}") from exc

        if asset_size != summary.file.size:
            logger.warning(
                "Post %s on disk has %d bytes, expected %d; fetching again",
                summary.id,
                asset_size,
                summary.file.size,
            )
            return False

        if self.verify_checksums:
            try:
                actual = file_md5_hex(asset_path)
            except OSError as exc:
                raise StorageError(f"cannot read {asset_path}: {exc}") from exc
            if not checksums_match(summary.file.md5, actual):
                logger.warning("Post %s on disk fails its md5 check; fetching again", summary.id)
                return False

        return True

    def persist(
        self,
        post_id: int,
        metadata: dict[str, Any],
        content: bytes,
        extension: str,
    ) -> ArchivedItem:
        asset_path = self.asset_path(post_id, extension)
        metadata_path = self.metadata_path(post_id)
        document = json.dumps(metadata, indent=2, ensure_ascii=False).encode("utf-8")

        try:
            _atomic_write(asset_path, content)
            # Metadata marks the pair complete, so it only lands after the asset.
            _atomic_write(metadata_path, document)
        except OSError as exc:
            raise StorageError(f"failed to persist post {post_id}: {exc}") from exc

        logger.debug("Archived post %s as %s", post_id, asset_path.name)
        return ArchivedItem(post_id=post_id, asset_path=asset_path, metadata_path=metadata_path)

    def cleanup_partials(self) -> int:
        """Remove temp files orphaned by an interrupted run."""
        removed = 0
        for directory in (self.root, self.metadata_dir):
            if not directory.is_dir():
                continue
            for partial in directory.glob(f".*{PARTIAL_SUFFIX}"):
                try:
                    partial.unlink()
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    raise StorageError(f"cannot remove partial file {partial}: {exc}") from exc
                removed += 1

        if removed:
            logger.info("Removed %d partial file(s) left by an earlier run", removed)
        return removed


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=PARTIAL_SUFFIX,
        dir=str(path.parent),
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    _fsync_directory(path.parent)


def _fsync_directory(directory: Path) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
