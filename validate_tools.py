#!/usr/bin/env python3
"""Validate that tools are registered with canonical names."""

import asyncio

from freeway_mcp.config import load_config
from freeway_mcp.server import create_server

EXPECTED_TOOLS = {
    "freeway.session.create",
    "freeway.session.info",
    "freeway.session.close",
    "freeway.index.resolve",
    "freeway.block.get",
}


async def main():
    config = load_config()

    async with create_server(config) as server:
        # Get tools from FastMCP's tool manager
        tools = server.mcp._tool_manager._tools

        print("Registered tools:")
        print("-" * 60)
        for tool_name in sorted(tools.keys()):
            status = "✓" if tool_name in EXPECTED_TOOLS else "✗"
            print(f"{status} {tool_name}")

        missing = EXPECTED_TOOLS - set(tools)
        unexpected = set(tools) - EXPECTED_TOOLS
        print("-" * 60)
        print(f"Total tools: {len(tools)}")

        if missing or unexpected:
            for name in sorted(missing):
                print(f"missing: {name}")
            print("\n❌ ERROR: Tool names do not match freeway.category.action")
            return 1
        print("\n✅ SUCCESS: All tools use canonical naming (freeway.category.action)")
        return 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    exit(exit_code)
