"""freeway-mcp: content-claims block resolution server.

Resolves a CID to the CAR file and byte offset that hold its block by
walking content claims, then reads exactly that block with an HTTP range
request.

Key features:
- Claim graph resolution (partition -> inclusion -> location)
- Streaming MultihashIndexSorted decoding
- Single-frame range reads with digest verification
- Session-scoped caches, one resolver per session

Tool naming convention: freeway.<category>.<action>
"""

__version__ = "0.1.0"

from freeway_mcp.server import FreewayServer, ToolNamingError, create_server, run_server

__all__ = ["FreewayServer", "ToolNamingError", "create_server", "run_server", "__version__"]
