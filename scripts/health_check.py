from __future__ import annotations

import asyncio
import os
import sys

import httpx
from mcp import ClientSession
from mcp.client.sse import sse_client

from list_tools import MCP_URL, auth_headers


BASE_URL = MCP_URL.rsplit("/", 1)[0]


async def main() -> None:
    async with httpx.AsyncClient(timeout=5.0) as client:
        response = await client.get(f"{BASE_URL}/health")
        print(f"/health -> {response.status_code} {response.text}")
        if response.status_code != 200:
            sys.exit(1)
        if response.json().get("transport") != "sse":
            print("Server is not running the sse transport, skipping tool check")
            return

    print(f"Connecting to MCP server at {MCP_URL}...")
    async with sse_client(MCP_URL, headers=auth_headers()) as (read_stream, write_stream):
        async with ClientSession(read_stream, write_stream) as session:
            await session.initialize()
            tools = await session.list_tools()
            print(f"Found {len(tools.tools)} tools")

            print("Calling get-users for health check...")
            result = await session.call_tool("get-users", {})
            if result.isError:
                print("get-users FAILED")
                for item in result.content:
                    print(getattr(item, "text", item))
                sys.exit(1)
            print("get-users OK")


if __name__ == "__main__":
    if not os.getenv("PIPEDRIVE_API_TOKEN"):
        print("PIPEDRIVE_API_TOKEN is not set; the tool check will fail")
    asyncio.run(main())
