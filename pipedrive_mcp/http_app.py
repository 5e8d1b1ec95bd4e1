"""
FastAPI/ASGI-Struktur für den Pipedrive MCP Server.

- AuthGate Middleware (signierter Token, optional) vor /sse und dem Message-Endpoint
- SSE-Transport: GET /sse + POST <endpoint>?sessionId=...
- HTTP-Transport: zustandsloser POST <endpoint>
- Healthcheck unter /health (immer ohne Auth)
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Tuple

import httpx
from fastapi import FastAPI, status
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Receive, Scope, Send

from .config import Settings
from .credentials import CredentialSet
from .dispatch import POLICIES, Dispatcher
from .pipedrive import PipedriveClients, create_http_client
from .rate_limits import CallScheduler
from .security import AuthGate, build_auth_gate
from .server import build_server
from .sessions import SessionStore
from .transports import StreamedConnectEndpoint, message_handler

logger = logging.getLogger("pipedrive_mcp.http_app")

SSE_PATH = "/sse"
HEALTH_PATH = "/health"


class AuthGateMiddleware:
    """
    Reine ASGI-Middleware für den Token-Gate.

    Kein BaseHTTPMiddleware: der SSE-Stream darf nicht gepuffert werden.
    """

    def __init__(self, app: ASGIApp, gate: AuthGate, protected: Tuple[str, ...]) -> None:
        self.app = app
        self.gate = gate
        self.protected = protected

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.gate.enabled:
            await self.app(scope, receive, send)
            return
        path = scope.get("path", "")
        if path.rstrip("/") not in self.protected:
            await self.app(scope, receive, send)
            return

        result = self.gate.check(Headers(scope=scope))
        if not result.ok:
            logger.warning(f"[Auth] {result.message} for {scope.get('method')} {path}")
            response = JSONResponse(
                {"error": result.message},
                status_code=result.status,
                headers={"WWW-Authenticate": "Bearer"},
            )
            await response(scope, receive, send)
            return
        await self.app(scope, receive, send)


def create_app(
    settings: Settings,
    *,
    sessions: Optional[SessionStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    gate: Optional[AuthGate] = None,
) -> FastAPI:
    """Create the FastAPI app for the sse or http transport."""
    if settings.transport not in ("sse", "http"):
        raise ValueError(f"create_app serves sse or http, not {settings.transport!r}")

    # boot check first: a bad gate configuration must stop startup
    gate = gate if gate is not None else build_auth_gate(settings.auth)

    owns_client = http_client is None
    client = http_client if http_client is not None else create_http_client(settings.http_limits)
    scheduler = CallScheduler(
        min_time_ms=settings.rate_limit_min_time_ms,
        max_concurrent=settings.rate_limit_max_concurrent,
    )

    def client_factory(credentials: CredentialSet) -> PipedriveClients:
        return PipedriveClients.build(client, credentials, scheduler, timeout=settings.upstream_timeout)

    store = sessions if sessions is not None else SessionStore(client_factory)
    mcp = build_server(store, name=settings.name)
    dispatcher = Dispatcher(mcp, store, POLICIES[settings.transport], reply_timeout=settings.reply_timeout)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            f"Pipedrive MCP server ready ({settings.transport}) on {settings.endpoint}",
            extra={"transport": settings.transport},
        )
        try:
            yield
        finally:
            await dispatcher.drain()
            if owns_client:
                await client.aclose()

    app = FastAPI(
        title="Pipedrive MCP Server",
        description="MCP adapter for the Pipedrive CRM API",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings
    app.state.sessions = store
    app.state.dispatcher = dispatcher
    app.state.scheduler = scheduler

    @app.get(HEALTH_PATH)
    async def health() -> JSONResponse:
        """Healthcheck endpoint (no auth required)."""
        return JSONResponse(
            {
                "ok": True,
                "status": "healthy",
                "transport": settings.transport,
                "sessions": len(store),
            },
            status_code=status.HTTP_200_OK,
        )

    app.add_route(settings.endpoint, message_handler(dispatcher), methods=["POST"])
    protected: Tuple[str, ...] = (settings.endpoint.rstrip("/"),)
    if settings.transport == "sse":
        app.add_route(SSE_PATH, StreamedConnectEndpoint(dispatcher, settings.endpoint), methods=["GET"])
        protected = protected + (SSE_PATH,)

    app.add_middleware(AuthGateMiddleware, gate=gate, protected=protected)
    return app
