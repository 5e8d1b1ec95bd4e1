"""Pipedrive CRM exposed as MCP tools over stdio, SSE and stateless HTTP."""

__version__ = "1.1.0"
