"""Incremental reading from async byte-chunk streams.

Both HTTP bodies (``httpx.Response.aiter_bytes()``) and in-memory test
fixtures are consumed through ``AsyncByteReader`` so decoders never need
the whole object in memory.
"""

from __future__ import annotations

import struct
from collections.abc import AsyncIterable, AsyncIterator, Iterable

from multiformats import varint

from freeway_mcp.errors import DecodeError, TruncatedStreamError

# 9 bytes of 7 bits each covers every unsigned 63-bit value (multiformats limit)
MAX_VARINT_BYTES = 9


def decode_varint(buf: bytes | bytearray | memoryview, pos: int = 0) -> tuple[int, int] | None:
    """Decode an unsigned varint starting at ``pos`` once all of it has arrived.

    Returns:
        (value, position after the varint), or None if ``buf`` ends first.

    Raises:
        DecodeError: If the varint is longer than 9 bytes or not minimal.
    """
    window = buf[pos:pos + MAX_VARINT_BYTES]
    end = next((i for i, byte in enumerate(window) if not byte & 0x80), None)
    if end is None:
        if len(window) == MAX_VARINT_BYTES:
            raise DecodeError(f"Varint longer than {MAX_VARINT_BYTES} bytes")
        return None
    try:
        value, size, _ = varint.decode_raw(bytes(window[:end + 1]))
    except ValueError as e:
        raise DecodeError(f"Malformed varint: {e}") from e
    return value, pos + size


async def iter_chunks(chunks: Iterable[bytes]) -> AsyncIterator[bytes]:
    """Adapt an in-memory sequence of chunks to an async iterator."""
    for chunk in chunks:
        yield chunk


class AsyncByteReader:
    """Pull exact byte counts out of an async chunk iterator."""

    def __init__(self, chunks: AsyncIterable[bytes]):
        self._chunks = chunks.__aiter__()
        self._buffer = bytearray()
        self._exhausted = False
        self.position = 0  # bytes handed out so far

    async def _fill(self) -> bool:
        """Append the next non-empty chunk to the buffer; False at end."""
        while not self._exhausted:
            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                self._exhausted = True
                break
            if chunk:
                self._buffer.extend(chunk)
                return True
        return False

    async def at_eof(self) -> bool:
        """True when no more bytes will arrive."""
        if self._buffer:
            return False
        return not await self._fill()

    async def read_exactly(self, n: int) -> bytes:
        """Read exactly ``n`` bytes or raise TruncatedStreamError."""
        while len(self._buffer) < n:
            if not await self._fill():
                raise TruncatedStreamError(
                    n, len(self._buffer), position=self.position
                )
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        self.position += n
        return data

    async def read_varint(self) -> int:
        """Read one unsigned varint."""
        while True:
            decoded = decode_varint(self._buffer)
            if decoded is not None:
                value, size = decoded
                del self._buffer[:size]
                self.position += size
                return value
            if not await self._fill():
                raise TruncatedStreamError(
                    len(self._buffer) + 1, len(self._buffer), position=self.position
                )

    async def read_uint32(self) -> int:
        return struct.unpack("<I", await self.read_exactly(4))[0]

    async def read_int32(self) -> int:
        return struct.unpack("<i", await self.read_exactly(4))[0]

    async def read_uint64(self) -> int:
        return struct.unpack("<Q", await self.read_exactly(8))[0]

    async def read_int64(self) -> int:
        return struct.unpack("<q", await self.read_exactly(8))[0]
