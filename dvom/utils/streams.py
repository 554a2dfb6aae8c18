"""
File-like adapters used to chain stream transforms.

Everything here reads lazily, so the memory held at any time is bounded by
the size of the chunks being passed around.
"""

import io
import logging
from typing import BinaryIO, Callable, Iterable, Iterator, List


logger = logging.getLogger(__name__)


class BufferedRawReader(io.RawIOBase):
    """
    Base class for readers that produce output in variable-sized blocks.

    Subclasses implement _next_block(), returning b'' once exhausted.
    """

    def __init__(self):
        super().__init__()
        self._buffer = b''
        self._exhausted = False

    def readable(self) -> bool:
        return True

    def _next_block(self) -> bytes:
        raise NotImplementedError

    def readinto(self, b) -> int:
        while not self._buffer and not self._exhausted:
            block = self._next_block()
            if not block:
                self._exhausted = True
            self._buffer = block

        if not self._buffer:
            return 0

        n = min(len(b), len(self._buffer))
        b[:n] = self._buffer[:n]
        self._buffer = self._buffer[n:]
        return n


class IterStream(BufferedRawReader):
    """Expose an iterator of byte chunks (e.g. a Docker archive export) as a file."""

    def __init__(self, chunks: Iterable[bytes]):
        super().__init__()
        self._chunks: Iterator[bytes] = iter(chunks)

    def _next_block(self) -> bytes:
        for chunk in self._chunks:
            if chunk:
                return chunk
        return b''


class ChainReader(BufferedRawReader):
    """Concatenate several readable streams, like reading them back to back."""

    def __init__(self, *streams: BinaryIO, chunk_size: int = 64 * 1024):
        super().__init__()
        self._streams: List[BinaryIO] = list(streams)
        self._owned: List[BinaryIO] = list(streams)
        self._chunk_size = chunk_size

    def _next_block(self) -> bytes:
        while self._streams:
            block = self._streams[0].read(self._chunk_size)
            if block:
                return block
            self._streams.pop(0)
        return b''

    def close(self):
        for stream in self._owned:
            try:
                stream.close()
            except OSError as e:
                logger.warning(f"Warning: failed to close stream: {e}")
        self._streams = []
        self._owned = []
        super().close()


class CheckedReader(BufferedRawReader):
    """Pass reads through, calling check() before each chunk (cancellation hook)."""

    def __init__(self, source: BinaryIO, check: Callable[[], None], chunk_size: int = 64 * 1024):
        super().__init__()
        self._source = source
        self._check = check
        self._chunk_size = chunk_size

    def _next_block(self) -> bytes:
        self._check()
        return self._source.read(self._chunk_size) or b''

    def close(self):
        self._source.close()
        super().close()


def read_full(stream: BinaryIO, size: int) -> bytes:
    """
    Read exactly size bytes unless the stream ends first.

    Raw streams may return short reads; this keeps reading until the
    requested amount is collected or EOF is reached.
    """
    parts = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        parts.append(chunk)
        remaining -= len(chunk)
    return b''.join(parts)
