from __future__ import annotations

from typing import Optional


class MCPError(Exception):
    """Base exception for all MCP server errors."""

    status_code = 500


class MCPClientError(MCPError):
    """Client-side errors (4xx) - caller input or identity issues."""

    status_code = 400


class MCPServerError(MCPError):
    """Server-side errors (5xx) - internal issues."""

    status_code = 500


class AuthRejected(MCPClientError):
    """Signed-token gate refused the request."""

    status_code = 401


class CredentialsRequired(MCPClientError):
    """No usable Pipedrive credentials could be resolved for the session."""

    status_code = 401

    def __init__(self, message: str = "Pipedrive credentials required: send Authorization: Bearer <api_token>:<domain>") -> None:
        super().__init__(message)


class SessionNotFound(MCPClientError):
    status_code = 404

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class MalformedRequest(MCPClientError):
    status_code = 400


class UpstreamError(MCPServerError):
    """The Pipedrive API call itself failed."""

    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class InternalDispatchError(MCPServerError):
    status_code = 500


class ConfigError(MCPError):
    """Invalid static configuration; fatal at startup."""
