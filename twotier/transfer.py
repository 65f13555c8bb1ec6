"""Chunked file transfer for TwoTier.

Copies a local file to a remote host over an open :class:`RemoteSession`
one segment at a time:

- The destination is reset once (old file deleted, parent directory created)
  and resolved by the remote side before the first segment is sent.
- Segments are read from a single reusable buffer and appended in source
  order; the final short segment is trimmed to the bytes actually read.
- Progress is reported after every segment.
- A final ``stat_file`` round-trip verifies the destination size.

There is no retry and no rollback: a failed segment aborts the transfer and
whatever was already appended stays on the remote host.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, BinaryIO, Callable, Protocol

from twotier.errors import TwoTierError
from twotier.utils.path_helpers import human_readable_size, validate_remote_path

logger = logging.getLogger(__name__)

SEGMENT_SIZE = 1024 * 1024  # 1 MiB per remote append


class AgentSession(Protocol):
    """The part of :class:`twotier.connection.RemoteSession` a transfer needs."""

    def invoke(self, operation: str, stdin: Any = None, **arguments: Any) -> Any:
        ...


class TransferVerificationError(TwoTierError):
    """Raised when the remote file size differs from the bytes sent."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TransferStatus(Enum):
    """Lifecycle state of a TransferItem."""

    PENDING = auto()
    IN_PROGRESS = auto()
    COMPLETE = auto()
    FAILED = auto()


# ---------------------------------------------------------------------------
# TransferItem
# ---------------------------------------------------------------------------


@dataclass
class TransferItem:
    """One file transfer and, once finished, its observable result."""

    source_path: str
    dest_path: str
    file_size: int
    segment_size: int = SEGMENT_SIZE
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    bytes_transferred: int = 0
    segments_sent: int = 0
    status: TransferStatus = TransferStatus.PENDING
    error: str | None = None
    remote_size: int | None = None
    remote_modified: str | None = None
    start_time: float | None = None
    end_time: float | None = None

    @property
    def progress_percent(self) -> float:
        """Percent of the file sent so far (0.0 – 100.0)."""
        if self.file_size <= 0:
            return 100.0
        return min(100.0, self.bytes_transferred * 100.0 / self.file_size)

    @property
    def speed_mbps(self) -> float:
        """Transfer speed in MB/s, or 0 if not yet started."""
        if self.start_time is None or self.bytes_transferred == 0:
            return 0.0
        elapsed = (self.end_time or time.monotonic()) - self.start_time
        if elapsed <= 0:
            return 0.0
        return (self.bytes_transferred / elapsed) / (1024 * 1024)


ProgressCallback = Callable[[TransferItem], None]


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def plan_segments(total_size: int, segment_size: int = SEGMENT_SIZE) -> list[int]:
    """Return the length of every segment needed to send *total_size* bytes.

    >>> plan_segments(5, 2)
    [2, 2, 1]
    """
    if segment_size <= 0:
        raise ValueError(f"Segment size must be positive, got {segment_size}")
    if total_size < 0:
        raise ValueError(f"Size must not be negative, got {total_size}")
    full, rest = divmod(total_size, segment_size)
    return [segment_size] * full + ([rest] if rest else [])


# ---------------------------------------------------------------------------
# Transfer
# ---------------------------------------------------------------------------


def send_file(
    session: AgentSession,
    source_path: str | os.PathLike[str],
    dest_path: str,
    segment_size: int = SEGMENT_SIZE,
    on_progress: ProgressCallback | None = None,
) -> TransferItem:
    """Copy *source_path* to *dest_path* on the host behind *session*.

    Args:
        session: An open remote session.
        source_path: Local file to send.
        dest_path: Destination on the remote host; relative paths are
            resolved against the remote session's working directory.
        segment_size: Nominal bytes per remote append.
        on_progress: Called after each segment with the updated item.

    Returns:
        The completed :class:`TransferItem`, with ``dest_path`` replaced by
        the remote-resolved path and ``remote_size``/``remote_modified``
        taken from the final verification round-trip.

    Raises:
        ValueError: Bad segment size, or an unsafe destination path (empty,
            null byte, or an anchored path containing ``..``).
        FileNotFoundError, PermissionError: Source missing or unreadable;
            raised before any remote interaction.
        TransferVerificationError: Remote size differs from bytes sent.
    """
    if segment_size <= 0:
        raise ValueError(f"Segment size must be positive, got {segment_size}")
    if not validate_remote_path(dest_path):
        raise ValueError(f"Invalid remote destination path: {dest_path!r}")

    source = os.fspath(source_path)
    with open(source, "rb") as local_fh:
        item = TransferItem(
            source_path=source,
            dest_path=dest_path,
            file_size=os.fstat(local_fh.fileno()).st_size,
            segment_size=segment_size,
        )
        logger.info(
            "Sending %s → %s (%s in %d segment(s))",
            source,
            dest_path,
            human_readable_size(item.file_size),
            len(plan_segments(item.file_size, segment_size)),
        )
        item.status = TransferStatus.IN_PROGRESS
        item.start_time = time.monotonic()
        try:
            item.dest_path = session.invoke("prepare_destination", path=dest_path)
            _stream_segments(session, local_fh, item, on_progress)
        except Exception as exc:
            _fail(item, exc)
            raise

    try:
        _verify(session, item)
    except Exception as exc:
        _fail(item, exc)
        raise

    item.end_time = time.monotonic()
    item.status = TransferStatus.COMPLETE
    logger.info(
        "Transfer complete: %s → %s (%d segment(s), %.1f MB/s)",
        item.source_path,
        item.dest_path,
        item.segments_sent,
        item.speed_mbps,
    )
    return item


def _fail(item: TransferItem, exc: BaseException) -> None:
    item.end_time = time.monotonic()
    item.status = TransferStatus.FAILED
    item.error = str(exc)
    logger.error("Transfer failed for %r after %d byte(s): %s", item.source_path, item.bytes_transferred, exc)


def _stream_segments(
    session: AgentSession,
    local_fh: BinaryIO,
    item: TransferItem,
    on_progress: ProgressCallback | None,
) -> None:
    """Append the file to the remote destination segment by segment.

    Every read asks for the full nominal size; only the bytes actually read
    are sent.
    """
    buffer = bytearray(item.segment_size)
    view = memoryview(buffer)
    while True:
        read = local_fh.readinto(buffer)
        if not read:
            break
        session.invoke("append_bytes", stdin=view[:read], path=item.dest_path)
        item.bytes_transferred += read
        item.segments_sent += 1
        logger.info(
            "%s: %.1f%% (%s of %s)",
            item.dest_path,
            item.progress_percent,
            human_readable_size(item.bytes_transferred),
            human_readable_size(item.file_size),
        )
        if on_progress:
            on_progress(item)


def _verify(session: AgentSession, item: TransferItem) -> None:
    stat = session.invoke("stat_file", path=item.dest_path)
    item.remote_size = int(stat["size"])
    item.remote_modified = stat.get("modified")
    if item.remote_size != item.bytes_transferred:
        raise TransferVerificationError(
            f"{item.dest_path} is {item.remote_size} byte(s) on the remote host, "
            f"expected {item.bytes_transferred}"
        )
