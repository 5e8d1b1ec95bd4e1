"""
Transport front-ends on top of the dispatcher.

- stdio: one implicit session from process configuration, MCP over stdin/stdout
- sse: `GET /sse` opens an event stream, messages arrive via POST and their
  replies travel back over that stream
- http: every POST is self-contained and answered synchronously
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional

import anyio
from mcp import types
from mcp.server.stdio import stdio_server
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

from .config import Settings
from .dispatch import PIPE_SESSION_ID, Dispatcher
from .errors import InternalDispatchError, MalformedRequest, MCPClientError
from .sessions import short_id

logger = logging.getLogger("pipedrive_mcp.transports")

PARSE_ERROR = -32700
INTERNAL_ERROR = -32603

SSE_HEADERS = [
    (b"content-type", b"text/event-stream"),
    (b"cache-control", b"no-cache"),
    (b"connection", b"keep-alive"),
    (b"x-accel-buffering", b"no"),
]

Handler = Callable[[Request], Awaitable[Response]]


def error_response(exc: MCPClientError) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)


def rpc_error_response(code: int, message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "id": None, "error": {"code": code, "message": message}},
        status_code=status_code,
    )


def parse_error_response(exc: ValidationError) -> JSONResponse:
    return rpc_error_response(
        PARSE_ERROR,
        f"Parse error: {exc.error_count()} validation error(s)",
        MalformedRequest.status_code,
    )


def sse_event(event: str, data: str) -> bytes:
    return f"event: {event}\ndata: {data}\n\n".encode("utf-8")


def session_id_of(request: Request) -> Optional[str]:
    return (
        request.query_params.get("sessionId")
        or request.query_params.get("session_id")
        or request.headers.get("mcp-session-id")
    )


async def read_message(request: Request) -> types.JSONRPCMessage:
    body = await request.body()
    return types.JSONRPCMessage.model_validate_json(body)


class StreamedConnectEndpoint:
    """
    `GET /sse` als rohe ASGI-App.

    Reihenfolge: Credentials binden (fail closed, 401 ohne Credentials), Stream
    öffnen, `endpoint`-Event senden, danach jede Server-Nachricht als
    `message`-Event. Verbindungsabbruch beendet den Server-Lauf und gibt die
    Session frei.
    """

    def __init__(self, dispatcher: Dispatcher, endpoint: str) -> None:
        self._dispatcher = dispatcher
        self._endpoint = endpoint

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        try:
            session = self._dispatcher.connect(request.headers)
        except MCPClientError as exc:
            logger.warning(f"SSE connect rejected: {exc}", extra={"transport": "sse"})
            await error_response(exc)(scope, receive, send)
            return

        session_id = session.session_id
        async with self._dispatcher.channel(session_id) as (read_reader, write_writer, write_reader):
            async with anyio.create_task_group() as tg:

                async def pump() -> None:
                    await send({"type": "http.response.start", "status": 200, "headers": SSE_HEADERS})
                    await send({
                        "type": "http.response.body",
                        "body": sse_event("endpoint", f"{self._endpoint}?sessionId={session_id}"),
                        "more_body": True,
                    })
                    async with write_reader:
                        async for outgoing in write_reader:
                            payload = outgoing.message.model_dump_json(by_alias=True, exclude_none=True)
                            await send({
                                "type": "http.response.body",
                                "body": sse_event("message", payload),
                                "more_body": True,
                            })
                    await send({"type": "http.response.body", "body": b"", "more_body": False})
                    tg.cancel_scope.cancel()

                async def watch_disconnect() -> None:
                    while True:
                        message = await receive()
                        if message["type"] == "http.disconnect":
                            break
                    logger.info(
                        "SSE client disconnected",
                        extra={"transport": "sse", "session": short_id(session_id)},
                    )
                    tg.cancel_scope.cancel()

                async def run() -> None:
                    try:
                        await self._dispatcher.serve(read_reader, write_writer, session_id)
                    except Exception:
                        logger.exception(
                            "MCP server failed on stream",
                            extra={"transport": "sse", "session": short_id(session_id)},
                        )
                    finally:
                        await write_writer.aclose()

                tg.start_soon(pump)
                tg.start_soon(watch_disconnect)
                tg.start_soon(run)


def streamed_message_handler(dispatcher: Dispatcher) -> Handler:
    async def handle(request: Request) -> Response:
        try:
            session = dispatcher.admit(request.headers, session_id_of(request))
        except MCPClientError as exc:
            return error_response(exc)
        try:
            message = await read_message(request)
        except ValidationError as exc:
            return parse_error_response(exc)
        try:
            await dispatcher.deliver(session.session_id, message, request)
        except MCPClientError as exc:
            return error_response(exc)
        except Exception:
            logger.exception("Message dispatch failed", extra={"transport": "sse"})
            return rpc_error_response(INTERNAL_ERROR, "Internal error", InternalDispatchError.status_code)
        return Response("Accepted", status_code=202)

    return handle


def stateless_message_handler(dispatcher: Dispatcher) -> Handler:
    async def handle(request: Request) -> Response:
        try:
            session = dispatcher.admit(request.headers, session_id_of(request))
        except MCPClientError as exc:
            return error_response(exc)
        try:
            message = await read_message(request)
        except ValidationError as exc:
            dispatcher.sessions.release(session.session_id)
            return parse_error_response(exc)
        headers: Dict[str, str] = {"Mcp-Session-Id": session.session_id}
        try:
            reply = await dispatcher.exchange(session, message, request)
        except Exception:
            logger.exception(
                "Message dispatch failed",
                extra={"transport": "http", "session": short_id(session.session_id)},
            )
            return rpc_error_response(INTERNAL_ERROR, "Internal error", InternalDispatchError.status_code)
        if reply is None:
            return JSONResponse({"status": "accepted"}, status_code=202, headers=headers)
        return JSONResponse(
            reply.model_dump(by_alias=True, mode="json", exclude_none=True),
            headers=headers,
        )

    return handle


async def run_stdio(dispatcher: Dispatcher, settings: Settings) -> None:
    """Serve one implicit session over stdin/stdout until the peer closes the pipe."""
    dispatcher.bind_default(PIPE_SESSION_ID, settings.default_credentials)
    logger.info("Serving MCP over stdio", extra={"transport": "stdio"})
    try:
        async with stdio_server() as (read_stream, write_stream):
            await dispatcher.serve(read_stream, write_stream, PIPE_SESSION_ID)
    finally:
        dispatcher.sessions.release(PIPE_SESSION_ID)


def message_handler(dispatcher: Dispatcher) -> Handler:
    if dispatcher.policy.delivery == "stream":
        return streamed_message_handler(dispatcher)
    if dispatcher.policy.delivery == "reply":
        return stateless_message_handler(dispatcher)
    raise ValueError(f"Transport {dispatcher.policy.name!r} has no HTTP message endpoint")


