"""Streaming content digests for download verification.

A :class:`Digest` accumulates chunks in order and produces one lowercase hex
string.  The helpers below drive it over bytes or a file in fixed-size
chunks, optionally reporting ``(bytes_processed, total_bytes)`` after each
chunk.  Chunking never changes the resulting digest.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from sftpkit.errors import DigestFinalizedError

logger = logging.getLogger(__name__)

ProgressHandler = Callable[[int, int], None]
CompletionHandler = Callable[[Optional[str]], None]

DEFAULT_CHUNK_SIZE = 4096


class DigestAlgorithm(Enum):
    """Supported digest algorithms, valued by their hashlib name."""

    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"

    @property
    def digest_length(self) -> int:
        """Length of the raw digest in bytes."""
        return hashlib.new(self.value).digest_size

    @classmethod
    def from_name(cls, name: str) -> "DigestAlgorithm":
        """Look up an algorithm by name, case-insensitively."""
        try:
            return cls(name.lower())
        except ValueError:
            raise ValueError(f"Unsupported digest algorithm: {name!r}") from None


class Digest:
    """Incremental digest context.

    ``update()`` may be called any number of times; ``finalize()`` computes
    the hex digest once and returns the cached value on every later call.
    """

    def __init__(self, algorithm: DigestAlgorithm = DigestAlgorithm.MD5) -> None:
        self.algorithm = algorithm
        self._hash = hashlib.new(algorithm.value)
        self._hexdigest: str | None = None

    @property
    def finalized(self) -> bool:
        return self._hexdigest is not None

    def update(self, data: bytes | bytearray | memoryview) -> None:
        if self._hexdigest is not None:
            raise DigestFinalizedError(
                f"{self.algorithm.name} digest already finalised; create a new Digest"
            )
        self._hash.update(data)

    def finalize(self) -> str:
        if self._hexdigest is None:
            self._hexdigest = self._hash.hexdigest()
        return self._hexdigest


def _check_chunk_size(chunk_size: int) -> None:
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")


def checksum_bytes(
    data: bytes | bytearray | memoryview,
    algorithm: DigestAlgorithm = DigestAlgorithm.MD5,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    progress: ProgressHandler | None = None,
) -> str:
    """Return the hex digest of *data*, fed in *chunk_size* slices.

    Empty input makes no progress calls and yields the algorithm's
    empty-input digest.
    """
    _check_chunk_size(chunk_size)
    view = memoryview(data).cast("B")
    total = len(view)
    digest = Digest(algorithm)
    offset = 0
    while offset < total:
        end = min(offset + chunk_size, total)
        digest.update(view[offset:end])
        offset = end
        if progress:
            progress(offset, total)
    return digest.finalize()


def checksum_file(
    path: str | os.PathLike[str],
    algorithm: DigestAlgorithm = DigestAlgorithm.MD5,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    progress: ProgressHandler | None = None,
) -> str:
    """Return the hex digest of the file at *path*, read in *chunk_size* pieces.

    Raises:
        OSError: If the file cannot be opened or read.
    """
    _check_chunk_size(chunk_size)
    path = Path(path)
    total = path.stat().st_size
    digest = Digest(algorithm)
    processed = 0
    with open(path, "rb") as fh:
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
            processed += len(chunk)
            if progress:
                progress(processed, max(total, processed))
    return digest.finalize()


def checksum_file_async(
    path: str | os.PathLike[str],
    completion: CompletionHandler,
    algorithm: DigestAlgorithm = DigestAlgorithm.MD5,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    progress: ProgressHandler | None = None,
) -> threading.Thread:
    """Compute :func:`checksum_file` on a daemon thread.

    *completion* receives the hex digest, or ``None`` if the file could not
    be read.  Both callbacks run on the worker thread; dispatch to your own
    context as needed.
    """

    def _run() -> None:
        try:
            result: str | None = checksum_file(path, algorithm, chunk_size, progress)
        except OSError as exc:
            logger.error("Checksum of %s failed: %s", path, exc)
            result = None
        try:
            completion(result)
        except Exception:
            logger.exception("Exception in checksum completion callback")

    worker = threading.Thread(target=_run, name=f"checksum-{Path(path).name}", daemon=True)
    worker.start()
    return worker
