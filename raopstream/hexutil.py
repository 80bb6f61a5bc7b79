"""Helpers for hex strings, hardware addresses and byte dumps."""

from __future__ import annotations

import re

_HEX_RE = re.compile(r"[0-9a-fA-F]*")


def strsep(string: str | None, delim: str) -> tuple[str | None, str | None]:
    """Split ``string`` at the first ``delim``.

    Returns ``(token, rest)``. ``rest`` is ``None`` when ``delim`` does not
    occur, and both are ``None`` when ``string`` itself is ``None``.
    """
    if string is None:
        return None, None
    if not delim:
        raise ValueError("delimiter must not be empty")
    token, found, rest = string.partition(delim)
    if not found:
        return string, None
    return token, rest


def hwaddr_raop(hwaddr: bytes) -> str:
    """Format a hardware address as upper-case hex with no separators."""
    return bytes(hwaddr).hex().upper()


def hwaddr_airplay(hwaddr: bytes) -> str:
    """Format a hardware address as lower-case hex pairs joined by colons."""
    return ":".join(f"{byte:02x}" for byte in bytes(hwaddr))


def parse_hex(text: str) -> bytes:
    """Decode a string of hex digit pairs.

    Raises ``ValueError`` for an odd length or any non-hex character.
    """
    if len(text) % 2:
        raise ValueError("hex string must have an even length")
    if not _HEX_RE.fullmatch(text):
        raise ValueError(f"invalid hex string: {text!r}")
    return bytes.fromhex(text)


def data_to_string(data: bytes, chars_per_line: int = 16) -> str:
    """Render bytes as a hex dump: ``"xx "`` per byte, a fixed number per line."""
    if chars_per_line <= 0:
        raise ValueError("chars_per_line must be positive")
    data = bytes(data)
    lines = (
        "".join(f"{byte:02x} " for byte in data[start:start + chars_per_line])
        for start in range(0, len(data), chars_per_line)
    )
    return "\n".join(lines) + "\n"


def data_to_text(data: bytes) -> str:
    """Decode text up to the first NUL byte, turning carriage returns into spaces."""
    raw = bytes(data).split(b"\0", 1)[0]
    return raw.decode("utf-8", errors="replace").replace("\r", " ")