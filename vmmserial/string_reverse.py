"""Reversal of a NUL-terminated string held in a shared buffer."""

from __future__ import annotations

__all__ = ["STRING_REVERSE_BUFSIZE", "reverse_dataport_string"]

STRING_REVERSE_BUFSIZE = 8192
"""Size of the source and destination buffers."""


def reverse_dataport_string(src: bytes, size: int = STRING_REVERSE_BUFSIZE) -> bytes:
    """Return the string in ``src`` reversed and NUL-terminated.

    The string ends at the first NUL byte and is never longer than
    ``size - 1`` bytes, so the result always fits in a buffer of ``size``.
    """
    if size < 1:
        raise ValueError("buffer size must be at least 1")
    limit = bytes(src[: size - 1])
    end = limit.find(b"\0")
    text = limit if end < 0 else limit[:end]
    return text[::-1] + b"\0"