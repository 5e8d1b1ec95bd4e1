"""
Request identity context.

Tool handlers take no session argument; they ask which session the current
asynchronous work belongs to. The binding lives in a ContextVar, so every task
spawned while it is set (the MCP server's receive loop and each request
handler) inherits its own copy and concurrent sessions never see each other.
"""
from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Iterator, Optional, TypeVar

T = TypeVar("T")

_session_id: ContextVar[Optional[str]] = ContextVar("mcp_session_id", default=None)


def current_session_id() -> Optional[str]:
    """Session id bound to the running task, or None outside any binding."""
    return _session_id.get()


@contextmanager
def bind_session(session_id: str) -> Iterator[str]:
    token = _session_id.set(session_id)
    try:
        yield session_id
    finally:
        _session_id.reset(token)


async def run_with(session_id: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
    with bind_session(session_id):
        return await fn(*args, **kwargs)
