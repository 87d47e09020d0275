"""Block tools: freeway.index.resolve, freeway.block.get"""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING, Any

from multiformats import multibase

from freeway_mcp.models import IndexEntry, cid_str, parse_cid
from freeway_mcp.server import tool_handler

if TYPE_CHECKING:
    from freeway_mcp.server import FreewayServer


def register_block_tools(server: FreewayServer) -> None:
    """Register index and block tools."""

    @server.tool("freeway.index.resolve")
    async def freeway_index_resolve(session_id: str, cid: str) -> dict[str, Any]:
        """Locate the CAR file and byte offset holding a block.

        Args:
            session_id: Session ID
            cid: CID of the block
        """
        return await _index_resolve(server, session_id=session_id, cid=cid)

    @server.tool("freeway.block.get")
    async def freeway_block_get(session_id: str, cid: str) -> dict[str, Any]:
        """Fetch the raw bytes of a block (base64).

        Args:
            session_id: Session ID
            cid: CID of the block
        """
        return await _block_get(server, session_id=session_id, cid=cid)


def _entry_output(entry: IndexEntry) -> dict[str, Any]:
    return {
        "multihash": multibase.encode(entry.multihash, "base58btc"),
        "location": entry.location,
        "offset": entry.offset,
        "length": entry.length,
    }


@tool_handler("freeway.index.resolve")
async def _index_resolve(
    server: FreewayServer,
    session_id: str,
    cid: str,
) -> dict[str, Any]:
    """Resolve a CID to its index entry."""
    context = server.get_session(session_id)
    parsed = parse_cid(cid)

    entry = await context.index.resolve(parsed)
    report = context.index.report(parsed)

    return {
        "cid": cid_str(parsed),
        "found": entry is not None,
        "entry": _entry_output(entry) if entry is not None else None,
        "report": report.model_dump(mode="json") if report is not None else None,
    }


@tool_handler("freeway.block.get")
async def _block_get(
    server: FreewayServer,
    session_id: str,
    cid: str,
) -> dict[str, Any]:
    """Fetch block bytes, truncated to the session's response cap."""
    context = server.get_session(session_id)
    parsed = parse_cid(cid)

    block = await context.blocks.get(parsed)
    if block is None:
        return {"cid": cid_str(parsed), "found": False}

    encoded = base64.b64encode(block.bytes).decode("ascii")
    max_chars = context.session.config.max_chars_per_response
    # keep whole base64 quanta so a truncated prefix still decodes
    data, truncated = server.truncate_content(encoded, max_chars - max_chars % 4)

    return {
        "cid": cid_str(parsed),
        "found": True,
        "size": len(block.bytes),
        "encoding": "base64",
        "data": data,
        "truncated": truncated,
    }
