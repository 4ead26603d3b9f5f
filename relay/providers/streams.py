"""
Readable stream adapters for provider downloads.
"""

from __future__ import annotations

import io
from typing import Callable, Iterable


class ChunkedReader(io.RawIOBase):
    """
    Expose an iterable of byte chunks as a readable binary stream.

    Nothing is buffered beyond the current chunk, so a download can be piped
    straight into an upload without staging it on disk.
    """

    def __init__(self, chunks: Iterable[bytes], on_close: Callable[[], None] | None = None):
        self._chunks = iter(chunks)
        self._buffer = b""
        self._on_close = on_close

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        while not self._buffer:
            try:
                self._buffer = next(self._chunks)
            except StopIteration:
                return 0

        size = min(len(b), len(self._buffer))
        b[:size] = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return size

    def close(self) -> None:
        if not self.closed and self._on_close is not None:
            self._on_close()
        super().close()
