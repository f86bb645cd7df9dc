"""Smoke-test a running HTTP server: list its tools and optionally call one."""

import asyncio
import json
import os
import sys

import fastmcp


async def main() -> None:
    url = os.environ.get("DAV_MCP_URL", "http://127.0.0.1:3000/mcp")
    client = fastmcp.Client(url, auth=os.environ.get("BEARER_TOKEN"), timeout=30)
    async with client:
        tools = await client.list_tools()
        print("Tools:", ", ".join(tool.name for tool in tools))
        if len(sys.argv) < 2:
            return
        name = sys.argv[1]
        arguments = json.loads(sys.argv[2]) if len(sys.argv) > 2 else {}
        result = await client.call_tool_mcp(name, arguments)
        print("isError:", result.isError)
        print("Structured:", json.dumps(result.structuredContent or {}, indent=2))


if __name__ == "__main__":
    asyncio.run(main())
