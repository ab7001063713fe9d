# imagesort/services/hashing.py
# Content digests. The algorithm is recorded in the catalog; changing it makes
# old sha256sum values incomparable, so bump DIGEST_ALGORITHM with it.

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import BinaryIO

DIGEST_ALGORITHM = "sha256"
BUFSIZE = 1024 * 1024


def digest_stream(stream: BinaryIO, bufsize: int = BUFSIZE) -> str:
    """64-char lowercase hex SHA-256 of everything left in `stream`."""
    h = hashlib.sha256()
    while True:
        chunk = stream.read(bufsize)
        if not chunk:
            break
        h.update(chunk)
    return h.hexdigest()


def sha256_file(p: Path, bufsize: int = BUFSIZE) -> str:
    with p.open("rb", buffering=0) as f:
        return digest_stream(f, bufsize)


def file_token(*parts: str) -> str:
    """Short stable token for one device file (scratch names, log context)."""
    return hashlib.sha1("|".join(parts).encode("utf-8", "surrogateescape")).hexdigest()[:8]
