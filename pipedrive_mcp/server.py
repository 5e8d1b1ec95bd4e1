from __future__ import annotations

import logging

from mcp.server.fastmcp import FastMCP

from .config import Settings
from .prompts import register_pipedrive_prompts
from .sessions import SessionStore
from .tools import register_pipedrive_tools

INSTRUCTIONS = (
    "Read access to a Pipedrive CRM account: deals, persons, organizations, "
    "pipelines, stages, leads and users. Results are raw Pipedrive JSON."
)


class StructuredFormatter(logging.Formatter):
    """Formatter that fills structured fields missing from a record."""

    FIELDS = ("transport", "session")

    def format(self, record: logging.LogRecord) -> str:
        for name in self.FIELDS:
            if not hasattr(record, name):
                setattr(record, name, "")
        return super().format(record)


def setup_logger(settings: Settings) -> logging.Logger:
    logger = logging.getLogger("pipedrive_mcp")
    if logger.handlers:
        return logger
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logger.setLevel(level)
    # stderr: stdout carries the protocol in stdio mode
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter(
        '{"ts":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","transport":"%(transport)s",'
        '"session":"%(session)s","msg":"%(message)s"}'
    ))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def build_server(sessions: SessionStore, name: str = "pipedrive-mcp-server") -> FastMCP:
    """FastMCP instance with the Pipedrive tools and prompts bound to `sessions`."""
    mcp = FastMCP(name, instructions=INSTRUCTIONS)
    register_pipedrive_tools(mcp, sessions)
    register_pipedrive_prompts(mcp)
    return mcp
