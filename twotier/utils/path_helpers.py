"""Remote path validation and size formatting utilities."""

from __future__ import annotations

import logging
import ntpath
import os
from pathlib import Path, PureWindowsPath

logger = logging.getLogger(__name__)


def remote_join(*parts: str) -> str:
    """Join path parts using Windows rules.

    The provisioned machines are Windows hosts, so remote paths are built
    with backslashes regardless of the local OS.
    """
    return ntpath.join(*parts)


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units but labels them KB/MB/GB.
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
    """Return True if *path* is safe to hand to the remote agent.

    Rejects empty paths and paths that contain null bytes. An anchored
    path (drive or root) must not contain ``..`` segments under either
    separator. Relative paths may climb with ``..``; the remote side
    resolves them against the session's working directory.
    """
    if not path:
        logger.warning("Remote path rejected: empty")
        return False
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    windows_path = PureWindowsPath(path)
    if windows_path.anchor and ".." in windows_path.parts:
        logger.warning("Remote path rejected — anchored path contains '..': %r", path)
        return False
    return True


def normalize_local_path(path: str | os.PathLike[str]) -> Path:
    """Resolve *path* to an absolute ``pathlib.Path`` on the local filesystem."""
    return Path(path).expanduser().resolve()
