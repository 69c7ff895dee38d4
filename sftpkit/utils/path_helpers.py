"""Remote path normalisation and validation utilities."""

from __future__ import annotations

import logging
import posixpath
from pathlib import PurePosixPath

logger = logging.getLogger(__name__)


def remote_join(directory: str, filename: str) -> str:
    """Join a remote directory and filename using POSIX rules.

    An empty *directory* yields the bare filename (relative to the SFTP
    server's default directory).
    """
    if not directory:
        return filename
    return posixpath.join(directory, filename)


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units (KiB/MiB/GiB) but labels them KB/MB/GB for
    familiarity with everyday usage.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe for SFTP operations.

    Rejects paths that contain null bytes or path-traversal sequences (``..``).
    """
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    parts = path.split("/")
    if ".." in parts:
        logger.warning("Remote path rejected — contains '..': %r", path)
        return False
    return True


def filename_from_remote_path(remote_path: str) -> str:
    """Return the last component of *remote_path*.

    Raises:
        ValueError: If the path has no filename component (e.g. ``"/"`` or
            ``"dir/"``).
    """
    name = PurePosixPath(remote_path).name
    if not name or remote_path.endswith("/"):
        raise ValueError(f"Remote path has no filename: {remote_path!r}")
    return name


def normalize_remote_directory(path: str) -> tuple[list[str], bool]:
    """Split a remote directory into its components.

    Trailing and repeated slashes are ignored.  Returns ``(components,
    is_absolute)``::

        >>> normalize_remote_directory("/remote/dir/")
        (['remote', 'dir'], True)
        >>> normalize_remote_directory("uploads")
        (['uploads'], False)
    """
    is_absolute = path.startswith("/")
    components = [p for p in path.split("/") if p and p != "."]
    return components, is_absolute


def directory_prefixes(components: list[str], is_absolute: bool) -> list[str]:
    """Return every cumulative prefix of *components*, shortest first.

    Example::

        >>> directory_prefixes(["remote", "dir"], True)
        ['/remote', '/remote/dir']
    """
    prefixes: list[str] = []
    cumulative = ""
    for part in components:
        if cumulative:
            cumulative = f"{cumulative}/{part}"
        else:
            cumulative = f"/{part}" if is_absolute else part
        prefixes.append(cumulative)
    return prefixes


def join_directory(components: list[str], is_absolute: bool) -> str:
    """Rebuild a normalised directory path from its components."""
    joined = "/".join(components)
    return f"/{joined}" if is_absolute else joined
