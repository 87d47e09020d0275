"""Block store that reads single blocks out of remote CARs with range requests.

The index only records where a block's frame starts, not how long it is, so
the request asks for the largest frame that could be there and the frame
header decides how many bytes are actually read. The response is closed as
soon as the payload is complete.
"""

from __future__ import annotations

import httpx
from multiformats import CID, multihash

from freeway_mcp.claims.resolver import ContentClaimsIndex
from freeway_mcp.codec.car import FrameDecoder
from freeway_mcp.config import MAX_ENCODED_BLOCK_LENGTH
from freeway_mcp.errors import BlockFetchError, BlockVerificationError, FrameDecodeError
from freeway_mcp.logging_config import StructuredLogger
from freeway_mcp.models import Block, IndexEntry, cid_key, cid_str

logger = StructuredLogger(__name__)


def range_header(entry: IndexEntry, max_frame_length: int = MAX_ENCODED_BLOCK_LENGTH) -> str:
    return f"bytes={entry.offset}-{entry.offset + max_frame_length}"


def verify_block(cid: CID, data: bytes) -> bool:
    """Re-hash ``data`` with ``cid``'s hash function and compare digests.

    Returns:
        False if the hash function is not available locally.
    """
    try:
        digest = multihash.digest(data, cid.hashfun.name)
    except (KeyError, ValueError, NotImplementedError):
        logger.warning("Cannot verify block, unsupported hash", cid=cid, hashfun=cid.hashfun.name)
        return False
    if bytes(digest) != bytes(cid.digest):
        raise BlockVerificationError(cid_str(cid), length=len(data))
    return True


class RangeBlockStore:
    """Fetches blocks located by a ``ContentClaimsIndex``."""

    def __init__(
        self,
        index: ContentClaimsIndex,
        client: httpx.AsyncClient,
        *,
        max_frame_length: int = MAX_ENCODED_BLOCK_LENGTH,
        verify: bool = True,
    ):
        self.index = index
        self._client = client
        self.max_frame_length = max_frame_length
        self.verify = verify

    async def has(self, cid: CID) -> bool:
        """True if the index can locate ``cid``; no block bytes are fetched."""
        return await self.index.resolve(cid) is not None

    async def get(self, cid: CID) -> Block | None:
        """Get the bytes of one block.

        Returns:
            The block, or None when the CID cannot be located or the origin
            answers with an error status or an empty body.

        Raises:
            BlockFetchError: Transport failure talking to the origin.
            FrameDecodeError: Malformed, truncated or mismatched frame.
            BlockVerificationError: Payload does not hash to ``cid``.
        """
        entry = await self.index.resolve(cid)
        if entry is None:
            return None

        decoder = FrameDecoder(self.max_frame_length)
        headers = {"Range": range_header(entry, self.max_frame_length)}
        try:
            async with self._client.stream("GET", entry.location, headers=headers) as response:
                if not response.is_success:
                    logger.warning(
                        "Block fetch failed",
                        cid=cid,
                        url=entry.location,
                        status=response.status_code,
                    )
                    return None
                async for chunk in response.aiter_bytes():
                    decoder.feed(chunk)
                    if decoder.complete:
                        break
                # leaving the context closes the response and drops any unread bytes
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise BlockFetchError(
                f"Block fetch failed: {e}", cid=cid_str(cid), url=entry.location
            ) from e

        if decoder.bytes_received == 0:
            logger.warning("Block fetch returned no body", cid=cid, url=entry.location)
            return None

        frame_cid, payload = decoder.finish()
        if cid_key(frame_cid) != cid_key(cid):
            raise FrameDecodeError(
                "Frame at offset holds a different block",
                cid=cid_str(cid),
                found=cid_str(frame_cid),
                url=entry.location,
                offset=entry.offset,
            )
        if self.verify:
            verify_block(cid, payload)

        return Block(cid=cid, bytes=payload)
