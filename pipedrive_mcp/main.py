"""
Main entry point for the Pipedrive MCP server.

Transport per MCP_TRANSPORT:
- stdio: MCP über stdin/stdout, Credentials aus PIPEDRIVE_API_TOKEN/PIPEDRIVE_DOMAIN
- sse / http: FastAPI App unter uvicorn, Credentials pro Request
"""
from __future__ import annotations

import asyncio
import logging
import sys

import uvicorn

from .config import Settings, load_settings
from .dispatch import PIPE, Dispatcher
from .errors import ConfigError
from .http_app import create_app
from .pipedrive import PipedriveClients, create_http_client
from .rate_limits import CallScheduler
from .security import build_auth_gate
from .server import build_server, setup_logger
from .sessions import SessionStore
from .transports import run_stdio

logger = logging.getLogger("pipedrive_mcp.main")


async def serve_stdio(settings: Settings) -> None:
    client = create_http_client(settings.http_limits)
    scheduler = CallScheduler(
        min_time_ms=settings.rate_limit_min_time_ms,
        max_concurrent=settings.rate_limit_max_concurrent,
    )
    sessions = SessionStore(
        lambda credentials: PipedriveClients.build(
            client, credentials, scheduler, timeout=settings.upstream_timeout
        )
    )
    dispatcher = Dispatcher(build_server(sessions, name=settings.name), sessions, PIPE)
    try:
        await run_stdio(dispatcher, settings)
    finally:
        await client.aclose()


def main() -> None:
    """Start the MCP server on the configured transport."""
    try:
        settings = load_settings()
    except (ConfigError, OSError, ValueError) as e:
        print(f"Invalid MCP server configuration: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logger(settings)

    try:
        # refuse to start on a bad gate configuration, whatever the transport
        build_auth_gate(settings.auth)
        if settings.transport == "stdio":
            asyncio.run(serve_stdio(settings))
            return

        app = create_app(settings)
        logger.info(
            f"Starting MCP server on http://{settings.host}:{settings.port} "
            f"(transport={settings.transport}, endpoint={settings.endpoint})",
            extra={"transport": settings.transport},
        )
        uvicorn.run(
            app,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
            server_header=False,  # Security: Don't expose server version
        )
    except ConfigError as e:
        logger.error(f"Failed to start MCP server: {e}", extra={"transport": settings.transport})
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Server shutdown requested...")
        sys.exit(0)


if __name__ == "__main__":
    main()
