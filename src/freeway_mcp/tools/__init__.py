"""MCP Tools for freeway-mcp.

Tools use canonical naming: freeway.<category>.<action>
"""

from freeway_mcp.tools.blocks import register_block_tools
from freeway_mcp.tools.session import register_session_tools

__all__ = [
    "register_block_tools",
    "register_session_tools",
]
