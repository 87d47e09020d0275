"""CARv1 framing.

A CAR is ``varint(len) || dag-cbor header`` followed by frames of
``varint(len(cid) + len(payload)) || cid || payload``. Block lengths are only
known once a frame header has been read, so ranged reads go through
``FrameDecoder``, which consumes exactly one frame and nothing after it.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass
from enum import Enum

import dag_cbor
from multiformats import CID, varint

from freeway_mcp.codec.stream import AsyncByteReader, decode_varint
from freeway_mcp.config import MAX_ENCODED_BLOCK_LENGTH
from freeway_mcp.errors import DecodeError, FrameDecodeError, TruncatedStreamError
from freeway_mcp.models import cid_key

# length varint + the largest CID we accept (4 varints + 64 byte digest)
MAX_FRAME_HEADER_LENGTH = 9 + 4 * 9 + 64

CIDV0_PREFIX = b"\x12\x20"
CIDV0_LENGTH = 34


@dataclass(frozen=True)
class CarBlock:
    cid: CID
    data: bytes


@dataclass(frozen=True)
class CarArchive:
    """A fully parsed in-memory CAR."""
    roots: list[CID]
    blocks: dict[bytes, CarBlock]  # keyed by multihash

    def get(self, cid: CID) -> bytes | None:
        block = self.blocks.get(cid_key(cid))
        return block.data if block else None


def cid_length(buf: bytes | bytearray | memoryview, pos: int = 0) -> int | None:
    """Byte length of the binary CID starting at ``pos``, None if incomplete."""
    if len(buf) - pos < 2:
        return None
    if bytes(buf[pos:pos + 2]) == CIDV0_PREFIX:
        return CIDV0_LENGTH

    p = pos
    fields = []
    for _ in range(4):  # version, codec, hash code, digest length
        try:
            decoded = decode_varint(buf, p)
        except DecodeError as e:
            raise FrameDecodeError(f"Malformed CID: {e.message}") from e
        if decoded is None:
            return None
        value, p = decoded
        fields.append(value)
        if len(fields) == 1 and value != 1:
            raise FrameDecodeError(f"Unsupported CID version {value}")
    digest_length = fields[3]
    if digest_length > 64:
        raise FrameDecodeError("CID digest too long", digest_length=digest_length)
    return p + digest_length - pos


def _decode_cid(data: bytes) -> CID:
    try:
        return CID.decode(data)
    except (ValueError, KeyError) as e:
        raise FrameDecodeError(f"Malformed CID in frame: {e}") from e


class FrameState(str, Enum):
    AWAITING_HEADER = "awaiting-header"
    READING_PAYLOAD = "reading-payload"
    COMPLETE = "complete"


class FrameDecoder:
    """Incremental decoder for exactly one CAR frame.

    Feed it chunks as they arrive; ``feed`` returns how many bytes of the
    chunk it used, so bytes past the end of the frame stay with the caller.
    """

    def __init__(self, max_length: int = MAX_ENCODED_BLOCK_LENGTH):
        self.max_length = max_length
        self.state = FrameState.AWAITING_HEADER
        self.cid: CID | None = None
        self.payload_length: int | None = None
        self._header = bytearray()
        self._payload = bytearray()

    @property
    def complete(self) -> bool:
        return self.state is FrameState.COMPLETE

    @property
    def payload(self) -> bytes:
        if not self.complete:
            raise FrameDecodeError("Frame payload read before frame completed", state=self.state.value)
        return bytes(self._payload)

    @property
    def bytes_received(self) -> int:
        return len(self._header) + len(self._payload)

    def feed(self, data: bytes | bytearray | memoryview) -> int:
        """Consume bytes of the frame; returns the count consumed."""
        view = memoryview(data)
        consumed = 0
        if self.state is FrameState.AWAITING_HEADER:
            consumed = self._feed_header(view)
        if self.state is FrameState.READING_PAYLOAD:
            wanted = self.payload_length - len(self._payload)
            taken = view[consumed:consumed + wanted]
            self._payload += taken
            consumed += len(taken)
            if len(self._payload) == self.payload_length:
                self.state = FrameState.COMPLETE
        return consumed

    def finish(self) -> tuple[CID, bytes]:
        """Return (cid, payload), raising if the stream ended early."""
        if not self.complete:
            expected = None
            if self.payload_length is not None:
                expected = len(self._header) + self.payload_length
            raise FrameDecodeError(
                "Stream ended before frame was complete",
                state=self.state.value,
                received=self.bytes_received,
                expected=expected,
            )
        return self.cid, self.payload

    def _feed_header(self, view: memoryview) -> int:
        previous = len(self._header)
        self._header += view[:MAX_FRAME_HEADER_LENGTH - previous]
        header_length = self._parse_header()
        if header_length is None:
            if len(self._header) >= MAX_FRAME_HEADER_LENGTH:
                raise FrameDecodeError("Frame header too long")
            return len(self._header) - previous

        del self._header[header_length:]
        self.state = (
            FrameState.READING_PAYLOAD if self.payload_length else FrameState.COMPLETE
        )
        return header_length - previous

    def _parse_header(self) -> int | None:
        try:
            decoded = decode_varint(self._header)
        except DecodeError as e:
            raise FrameDecodeError(f"Malformed frame length: {e.message}") from e
        if decoded is None:
            return None
        frame_length, pos = decoded
        if frame_length > self.max_length:
            raise FrameDecodeError(
                "Frame exceeds maximum block length",
                length=frame_length,
                max_length=self.max_length,
            )

        length = cid_length(self._header, pos)
        if length is None or len(self._header) < pos + length:
            return None
        if length > frame_length:
            raise FrameDecodeError(
                "Frame shorter than its CID", length=frame_length, cid_length=length
            )

        self.cid = _decode_cid(bytes(self._header[pos:pos + length]))
        self.payload_length = frame_length - length
        return pos + length


def decode_frame(data: bytes, max_length: int = MAX_ENCODED_BLOCK_LENGTH) -> tuple[CID, bytes, int]:
    """Decode one frame from the start of ``data``.

    Returns:
        (cid, payload, bytes consumed)
    """
    decoder = FrameDecoder(max_length)
    consumed = decoder.feed(data)
    cid, payload = decoder.finish()
    return cid, payload, consumed


def _decode_header(data: bytes) -> list[CID]:
    try:
        header = dag_cbor.decode(data)
    except ValueError as e:
        raise DecodeError(f"Malformed CAR header: {e}") from e
    version = header.get("version") if isinstance(header, dict) else None
    if version != 1:
        raise DecodeError("Unsupported CAR header", version=version)
    roots = header.get("roots") or []
    if not all(isinstance(r, CID) for r in roots):
        raise DecodeError("CAR header roots must be CIDs")
    return list(roots)


def parse_car(data: bytes, max_length: int = MAX_ENCODED_BLOCK_LENGTH) -> CarArchive:
    """Parse a complete CAR held in memory."""
    view = memoryview(data)
    decoded = decode_varint(view)
    if decoded is None:
        raise TruncatedStreamError(1, len(data))
    header_length, pos = decoded
    if pos + header_length > len(data):
        raise TruncatedStreamError(pos + header_length, len(data))
    roots = _decode_header(bytes(view[pos:pos + header_length]))
    pos += header_length

    blocks = {}
    while pos < len(data):
        cid, payload, consumed = decode_frame(view[pos:], max_length)
        blocks[cid_key(cid)] = CarBlock(cid, payload)
        pos += consumed
    return CarArchive(roots=roots, blocks=blocks)


async def read_car(
    chunks: AsyncIterable[bytes],
    max_length: int = MAX_ENCODED_BLOCK_LENGTH,
) -> AsyncIterator[CarBlock]:
    """Stream the blocks of a CAR, validating its header first."""
    reader = AsyncByteReader(chunks)
    header_length = await reader.read_varint()
    _decode_header(await reader.read_exactly(header_length))

    while not await reader.at_eof():
        frame_length = await reader.read_varint()
        if frame_length > max_length:
            raise FrameDecodeError(
                "Frame exceeds maximum block length",
                length=frame_length,
                max_length=max_length,
            )
        frame = await reader.read_exactly(frame_length)
        length = cid_length(frame)
        if length is None or length > frame_length:
            raise FrameDecodeError("Frame shorter than its CID", length=frame_length)
        yield CarBlock(_decode_cid(frame[:length]), frame[length:])


def encode_frame(cid: CID, data: bytes) -> bytes:
    cid_bytes = bytes(cid)
    return varint.encode(len(cid_bytes) + len(data)) + cid_bytes + data


def encode_car(roots: list[CID], blocks: Iterable[tuple[CID, bytes]]) -> bytes:
    header = dag_cbor.encode({"roots": list(roots), "version": 1})
    out = bytearray(varint.encode(len(header)) + header)
    for cid, data in blocks:
        out += encode_frame(cid, data)
    return bytes(out)
