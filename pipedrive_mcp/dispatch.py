"""
Dispatcher core shared by the three transports.

The transports differ only in a few facts, captured by `TransportPolicy`:
whether a POST must reference an open stream, whether credentials must come
with every message, and how replies travel back. Everything else (credential
resolution, session lifetime, running the MCP server with the session bound to
the identity context) lives here once.
"""
from __future__ import annotations

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Set, Tuple

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp import types
from mcp.server.fastmcp import FastMCP
from mcp.shared.message import ServerMessageMetadata, SessionMessage

from .context import bind_session
from .credentials import extract_credentials
from .errors import CredentialsRequired, MalformedRequest, SessionNotFound
from .sessions import Session, SessionStore, new_session_id, short_id

logger = logging.getLogger("pipedrive_mcp.dispatch")

PIPE_SESSION_ID = "stdio"


@dataclass(frozen=True)
class TransportPolicy:
    name: str
    # POST must name a session whose stream is open
    requires_open_session: bool
    # "never": credentials come from process config; "optional": may rebind; "required": every request
    inline_credentials: str
    # "pipe" | "stream" | "reply"
    delivery: str
    stateless: bool = False


PIPE = TransportPolicy("stdio", requires_open_session=False, inline_credentials="never", delivery="pipe")
STREAMED = TransportPolicy("sse", requires_open_session=True, inline_credentials="optional", delivery="stream")
STATELESS = TransportPolicy(
    "http", requires_open_session=False, inline_credentials="required", delivery="reply", stateless=True
)

POLICIES: Dict[str, TransportPolicy] = {p.name: p for p in (PIPE, STREAMED, STATELESS)}


class PendingReply:
    """Holds the single synchronous reply of a stateless exchange."""

    def __init__(self, request_id: Optional[types.RequestId]) -> None:
        self.request_id = request_id
        self.message: Optional[types.JSONRPCMessage] = None

    @property
    def expects_reply(self) -> bool:
        return self.request_id is not None

    @property
    def settled(self) -> bool:
        return self.message is not None

    def offer(self, message: types.JSONRPCMessage) -> bool:
        if self.settled or not self.expects_reply:
            return False
        root = message.root
        if isinstance(root, (types.JSONRPCResponse, types.JSONRPCError)) and root.id == self.request_id:
            self.message = message
            return True
        return False


def request_id_of(message: types.JSONRPCMessage) -> Optional[types.RequestId]:
    root = message.root
    if isinstance(root, types.JSONRPCRequest):
        return root.id
    return None


class Dispatcher:
    def __init__(
        self,
        mcp: FastMCP,
        sessions: SessionStore,
        policy: TransportPolicy,
        reply_timeout: float = 30.0,
    ) -> None:
        self._mcp = mcp
        self._sessions = sessions
        self._policy = policy
        self._reply_timeout = reply_timeout
        self._channels: Dict[str, MemoryObjectSendStream[SessionMessage | Exception]] = {}
        self._background: Set["asyncio.Task[None]"] = set()

    @property
    def policy(self) -> TransportPolicy:
        return self._policy

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    def has_channel(self, session_id: str) -> bool:
        return session_id in self._channels

    async def serve(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
        session_id: str,
    ) -> None:
        """Run the MCP server over a stream pair with `session_id` bound for every handler."""
        server = self._mcp._mcp_server
        with bind_session(session_id):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
                stateless=self._policy.stateless,
            )

    # -- admission -------------------------------------------------------

    def bind_default(self, session_id: str = PIPE_SESSION_ID, credentials: Any = None) -> Optional[Session]:
        """Pipe transport: one implicit session from process configuration, if any."""
        if credentials is None:
            logger.warning(
                "No default Pipedrive credentials configured; tool calls will fail until "
                "PIPEDRIVE_API_TOKEN and PIPEDRIVE_DOMAIN are set",
                extra={"transport": self._policy.name},
            )
            return None
        return self._sessions.resolve(session_id, credentials)

    def connect(self, headers: Mapping[str, Any]) -> Session:
        """Streamed transport GET: mint an id and bind the request's credentials (fail closed)."""
        extracted = extract_credentials(headers)
        session_id = new_session_id()
        return self._sessions.resolve(session_id, extracted.to_credential_set())

    def admit(self, headers: Mapping[str, Any], session_id: Optional[str] = None) -> Session:
        """Resolve the session a POSTed message runs under, according to the policy."""
        credentials = extract_credentials(headers).to_credential_set()
        policy = self._policy

        if policy.requires_open_session:
            if not session_id:
                raise MalformedRequest("sessionId is required")
            if session_id not in self._channels:
                raise SessionNotFound(session_id)
            session = self._sessions.lookup(session_id)
            if credentials is not None and (session is None or session.credentials != credentials):
                return self._sessions.rebind(session_id, credentials)
            return self._sessions.resolve(session_id, None)

        if policy.inline_credentials == "required":
            if credentials is None:
                raise CredentialsRequired()
            if not session_id or session_id in self._sessions:
                session_id = new_session_id()
            return self._sessions.resolve(session_id, credentials)

        # the pipe serves its single default session directly, see bind_default
        raise ValueError(f"Transport {policy.name!r} does not admit posted messages")

    # -- streamed delivery -----------------------------------------------

    @asynccontextmanager
    async def channel(
        self, session_id: str
    ) -> AsyncIterator[
        Tuple[
            MemoryObjectReceiveStream[SessionMessage | Exception],
            MemoryObjectSendStream[SessionMessage],
            MemoryObjectReceiveStream[SessionMessage],
        ]
    ]:
        """Open stream for one connection; closing it releases the session."""
        read_writer, read_reader = anyio.create_memory_object_stream(0)
        write_writer, write_reader = anyio.create_memory_object_stream(0)
        self._channels[session_id] = read_writer
        logger.info(
            "Stream opened", extra={"transport": self._policy.name, "session": short_id(session_id)}
        )
        try:
            yield read_reader, write_writer, write_reader
        finally:
            self._channels.pop(session_id, None)
            self._sessions.release(session_id)
            for stream in (read_writer, read_reader, write_writer, write_reader):
                await stream.aclose()
            logger.info(
                "Stream closed", extra={"transport": self._policy.name, "session": short_id(session_id)}
            )

    async def deliver(self, session_id: str, message: types.JSONRPCMessage, request: Any = None) -> None:
        writer = self._channels.get(session_id)
        if writer is None:
            raise SessionNotFound(session_id)
        try:
            await writer.send(SessionMessage(message, metadata=ServerMessageMetadata(request_context=request)))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            raise SessionNotFound(session_id) from None

    # -- stateless exchange ----------------------------------------------

    def _spawn(self, coro: Any) -> "asyncio.Task[Any]":
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Background exchange failed: {task.exception()!r}",
                extra={"transport": self._policy.name},
            )

    async def exchange(
        self,
        session: Session,
        message: types.JSONRPCMessage,
        request: Any = None,
    ) -> Optional[types.JSONRPCMessage]:
        """
        Handle one message and return its reply, or None.

        None means either that the message expects no reply or that the handler
        did not answer within `reply_timeout`. In the latter case the handler
        keeps running in the background and its reply is dropped; the session is
        released when it finishes.
        """
        read_writer, read_reader = anyio.create_memory_object_stream(1)
        write_writer, write_reader = anyio.create_memory_object_stream(math.inf)
        reply = PendingReply(request_id_of(message))

        run = self._spawn(self._run_exchange(session.session_id, read_reader, write_writer))
        await read_writer.send(SessionMessage(message, metadata=ServerMessageMetadata(request_context=request)))
        if not reply.expects_reply:
            await read_writer.aclose()
        collect = self._spawn(self._collect(reply, write_reader, read_writer))
        if not reply.expects_reply:
            return None

        done, _ = await asyncio.wait({collect}, timeout=self._reply_timeout)
        if not done:
            logger.warning(
                f"No reply within {self._reply_timeout:.1f}s, answering accepted",
                extra={"transport": self._policy.name, "session": short_id(session.session_id)},
            )
            return None
        collect.result()
        if reply.settled:
            return reply.message
        # server closed its side without answering; surface its failure, if any
        await run
        return None

    async def _collect(
        self,
        reply: PendingReply,
        write_reader: MemoryObjectReceiveStream[SessionMessage],
        read_writer: MemoryObjectSendStream[SessionMessage | Exception],
    ) -> None:
        # the read side stays open until the reply is in: the server session
        # closes its write stream as soon as its read stream ends
        try:
            async for outgoing in write_reader:
                if reply.offer(outgoing.message):
                    break
        finally:
            await read_writer.aclose()
            await write_reader.aclose()

    async def _run_exchange(
        self,
        session_id: str,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
    ) -> None:
        try:
            async with read_stream:
                await self.serve(read_stream, write_stream, session_id)
        finally:
            await write_stream.aclose()
            self._sessions.release(session_id)

    async def drain(self) -> None:
        """Wait for exchanges still running after their accepted fallback reply."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
