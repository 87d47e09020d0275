"""CARv2 MultihashIndexSorted codec.

Layout (all fixed-width integers little-endian)::

    varint   codec (0x0401)
    int32    number of hash functions
    per hash function, ascending by code:
        uint64  multihash code
        int32   number of width buckets
        per bucket, ascending by width:
            uint32  width (digest length + 8)
            int64   byte length of the records that follow
            records of ``width`` bytes: digest || uint64 offset, sorted by digest

Offsets point at the start of a block's CAR frame inside the indexed part.
"""

from __future__ import annotations

import struct
from collections import defaultdict
from collections.abc import AsyncIterable, AsyncIterator, Iterable

from multiformats import multihash, varint

from freeway_mcp.codec.stream import AsyncByteReader
from freeway_mcp.errors import DecodeError, IndexDecodeError
from freeway_mcp.models import IndexEntry

MULTIHASH_INDEX_SORTED_CODEC = 0x0401
OFFSET_WIDTH = 8


def split_multihash(mh: bytes) -> tuple[int, bytes]:
    """Split multihash bytes into (hash code, raw digest)."""
    try:
        code, digest = multihash.unwrap_raw(mh)
    except (ValueError, KeyError) as e:
        raise IndexDecodeError(f"Malformed multihash: {e}") from e
    return code, bytes(digest)


def join_multihash(code: int, digest: bytes) -> bytes:
    return varint.encode(code) + varint.encode(len(digest)) + digest


async def decode_index(
    chunks: AsyncIterable[bytes],
    location: str,
) -> AsyncIterator[IndexEntry]:
    """Lazily decode index records, attributing each to ``location``.

    Raises:
        IndexDecodeError: On a wrong codec, inconsistent bucket sizes or a
            stream that ends mid-record.
    """
    reader = AsyncByteReader(chunks)
    try:
        codec = await reader.read_varint()
        if codec != MULTIHASH_INDEX_SORTED_CODEC:
            raise IndexDecodeError(
                f"Unexpected index codec 0x{codec:04x}",
                expected=f"0x{MULTIHASH_INDEX_SORTED_CODEC:04x}",
            )

        num_codes = await reader.read_int32()
        if num_codes < 0:
            raise IndexDecodeError("Negative hash function count", count=num_codes)

        for _ in range(num_codes):
            code = await reader.read_uint64()
            num_buckets = await reader.read_int32()
            if num_buckets < 0:
                raise IndexDecodeError("Negative bucket count", count=num_buckets)

            for _ in range(num_buckets):
                width = await reader.read_uint32()
                byte_length = await reader.read_int64()
                if width <= OFFSET_WIDTH:
                    raise IndexDecodeError("Bucket width too small", width=width)
                if byte_length < 0 or byte_length % width:
                    raise IndexDecodeError(
                        "Bucket length is not a multiple of its width",
                        width=width,
                        byte_length=byte_length,
                    )

                for _ in range(byte_length // width):
                    record = await reader.read_exactly(width)
                    digest = record[:-OFFSET_WIDTH]
                    (offset,) = struct.unpack("<Q", record[-OFFSET_WIDTH:])
                    yield IndexEntry(
                        multihash=join_multihash(code, digest),
                        offset=offset,
                        location=location,
                    )
    except IndexDecodeError:
        raise
    except DecodeError as e:
        raise IndexDecodeError(f"Malformed index: {e.message}", **e.context) from e


def encode_index(records: Iterable[tuple[bytes, int]]) -> bytes:
    """Encode (multihash, offset) pairs as a sorted index.

    Record order in the output follows the format (code, width, digest),
    not the input order.
    """
    grouped: dict[int, dict[int, list[tuple[bytes, int]]]] = defaultdict(lambda: defaultdict(list))
    for mh, offset in records:
        code, digest = split_multihash(mh)
        grouped[code][len(digest) + OFFSET_WIDTH].append((digest, offset))

    out = bytearray(varint.encode(MULTIHASH_INDEX_SORTED_CODEC))
    out += struct.pack("<i", len(grouped))
    for code in sorted(grouped):
        buckets = grouped[code]
        out += struct.pack("<Q", code)
        out += struct.pack("<i", len(buckets))
        for width in sorted(buckets):
            entries = sorted(buckets[width])
            out += struct.pack("<I", width)
            out += struct.pack("<q", width * len(entries))
            for digest, offset in entries:
                out += digest
                out += struct.pack("<Q", offset)
    return bytes(out)
