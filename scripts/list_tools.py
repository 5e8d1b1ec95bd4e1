from __future__ import annotations

import asyncio
import os

from mcp import ClientSession
from mcp.client.sse import sse_client


MCP_URL = os.getenv("MCP_URL", "http://127.0.0.1:3000/sse")


def auth_headers() -> dict[str, str]:
    token = os.getenv("PIPEDRIVE_API_TOKEN", "")
    domain = os.getenv("PIPEDRIVE_DOMAIN", "")
    headers = {"Authorization": f"Bearer {token}:{domain}"}
    jwt_token = os.getenv("MCP_JWT_TOKEN", "").strip()
    if jwt_token:
        headers[os.getenv("MCP_JWT_HEADER", "X-MCP-Authorization")] = f"Bearer {jwt_token}"
    return headers


async def main() -> None:
    async with sse_client(MCP_URL, headers=auth_headers()) as (read_stream, write_stream):
        async with ClientSession(read_stream, write_stream) as session:
            await session.initialize()
            tools_result = await session.list_tools()
            print("Available tools:")
            for tool in tools_result.tools:
                print(f"- {tool.name}: {tool.description}")


if __name__ == "__main__":
    asyncio.run(main())
