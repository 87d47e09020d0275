"""Binary formats: CAR framing and the MultihashIndexSorted index."""

from freeway_mcp.codec.car import FrameDecoder, FrameState, parse_car, read_car
from freeway_mcp.codec.index import decode_index, encode_index

__all__ = [
    "FrameDecoder",
    "FrameState",
    "decode_index",
    "encode_index",
    "parse_car",
    "read_car",
]
