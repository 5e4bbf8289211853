from __future__ import annotations

import hashlib
from pathlib import Path

_READ_CHUNK = 1024 * 1024


def md5_hex(content: bytes) -> str:
    return hashlib.md5(content).hexdigest()


def file_md5_hex(path: Path) -> str:
    digest = hashlib.md5()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_READ_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksums_match(expected: str, actual: str) -> bool:
    return expected.strip().lower() == actual.strip().lower()
