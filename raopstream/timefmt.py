"""File loading and formatting of nanosecond timestamps as local time."""

from __future__ import annotations

import time
from pathlib import Path

SECOND_IN_NSECS = 1_000_000_000


def read_file(filename: str | Path) -> bytes:
    """Return the whole contents of ``filename``.

    Raises ``OSError`` (for example ``FileNotFoundError``) when the file
    cannot be opened or read.
    """
    return Path(filename).read_bytes()


def _split(ntp_timestamp: int) -> tuple[time.struct_time, int]:
    if ntp_timestamp < 0:
        raise ValueError("timestamp must not be negative")
    seconds, nanos = divmod(int(ntp_timestamp), SECOND_IN_NSECS)
    return time.localtime(seconds), nanos


def ntp_timestamp_to_time(ntp_timestamp: int) -> str:
    """Format a nanosecond Unix timestamp as ``YYYY-MM-DD HH:MM:SS.nnnnnnnnn`` local time."""
    local, nanos = _split(ntp_timestamp)
    return f"{time.strftime('%Y-%m-%d %H:%M:%S', local)}.{nanos:09d}"


def ntp_timestamp_to_seconds(ntp_timestamp: int) -> str:
    """Format only the seconds field of a nanosecond timestamp as ``SS.nnnnnnnnn``."""
    local, nanos = _split(ntp_timestamp)
    return f"{time.strftime('%S', local)}.{nanos:09d}"