"""Storage layer for freeway-mcp."""

from freeway_mcp.storage.blockstore import RangeBlockStore

__all__ = ["RangeBlockStore"]
