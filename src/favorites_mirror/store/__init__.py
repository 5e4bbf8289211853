"""Local archive implementations."""

from .base import ArchiveStore
from .filesystem_store import FilesystemStore
from .lock import RunLock

__all__ = ["ArchiveStore", "FilesystemStore", "RunLock"]
