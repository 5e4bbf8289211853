from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import IO

from favorites_mirror.errors import LockError, StorageError

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".favorites-mirror.lock"


class RunLock:
    """Advisory lock giving one process exclusive use of an archive root.

    Uses ``flock`` so the kernel drops the lock when the holder dies, even
    without a clean shutdown.
    """

    def __init__(self, root: str | Path) -> None:
        self.path = Path(root) / LOCK_FILENAME
        self._handle: IO[str] | None = None

    @property
    def locked(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        if self._handle is not None:
            return
        try:
            handle = self.path.open("a+", encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"cannot open lock file {self.path}: {exc}") from exc

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            handle.close()
            raise LockError(
                f"{self.path.parent} is in use by another run (lock file {self.path})"
            ) from exc

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug("Acquired run lock %s", self.path)

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
        logger.debug("Released run lock %s", self.path)

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
