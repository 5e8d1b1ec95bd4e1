from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Optional

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from .context import current_session_id
from .errors import UpstreamError
from .pipedrive import PipedriveClients
from .sessions import SessionStore, short_id

logger = logging.getLogger("pipedrive_mcp.tools")

UpstreamCall = Callable[[PipedriveClients], Awaitable[Any]]


def register_pipedrive_tools(mcp: FastMCP, sessions: SessionStore) -> None:
    async def fetch(action: str, call: UpstreamCall) -> str:
        """
        Run one upstream call for the caller's session.

        Upstream failures become tool errors (isError) carrying the Pipedrive
        message; the MCP exchange itself still succeeds.
        """
        session = sessions.current()
        try:
            data = await call(session.clients)
        except UpstreamError as exc:
            logger.error(
                f"Error {action}: {exc}",
                extra={"session": short_id(current_session_id())},
            )
            raise ToolError(f"Error {action}: {exc}") from exc
        return json.dumps(data, indent=2, ensure_ascii=False)

    @mcp.tool(name="get-users", description="Get all users from Pipedrive")
    async def get_users() -> str:
        return await fetch("fetching users", lambda c: c.users.get_users())

    @mcp.tool(
        name="get-deals",
        description="Get deals from Pipedrive including custom fields, optionally filtered by status, owner, stage or pipeline",
    )
    async def get_deals(
        status: str = "all_not_deleted",
        owner_id: Optional[int] = None,
        stage_id: Optional[int] = None,
        pipeline_id: Optional[int] = None,
        limit: int = 100,
    ) -> str:
        if pipeline_id is not None:
            return await fetch(
                f"fetching deals for pipeline {pipeline_id}",
                lambda c: c.pipelines.get_pipeline_deals(
                    pipeline_id, stage_id=stage_id, user_id=owner_id, limit=limit
                ),
            )
        return await fetch(
            "fetching deals",
            lambda c: c.deals.get_deals(status=status, user_id=owner_id, stage_id=stage_id, limit=limit),
        )

    @mcp.tool(name="get-deal", description="Get a specific deal by ID including custom fields")
    async def get_deal(deal_id: int) -> str:
        return await fetch(f"fetching deal {deal_id}", lambda c: c.deals.get_deal(deal_id))

    @mcp.tool(name="search-deals", description="Search deals by term")
    async def search_deals(term: str) -> str:
        return await fetch("searching deals", lambda c: c.deals.search_deals(term))

    @mcp.tool(name="get-persons", description="Get all persons from Pipedrive including custom fields")
    async def get_persons(limit: int = 100) -> str:
        return await fetch("fetching persons", lambda c: c.persons.get_persons(limit=limit))

    @mcp.tool(name="get-person", description="Get a specific person by ID including custom fields")
    async def get_person(person_id: int) -> str:
        return await fetch(f"fetching person {person_id}", lambda c: c.persons.get_person(person_id))

    @mcp.tool(name="search-persons", description="Search persons by term")
    async def search_persons(term: str) -> str:
        return await fetch("searching persons", lambda c: c.persons.search_persons(term))

    @mcp.tool(name="get-organizations", description="Get all organizations from Pipedrive including custom fields")
    async def get_organizations(limit: int = 100) -> str:
        return await fetch(
            "fetching organizations", lambda c: c.organizations.get_organizations(limit=limit)
        )

    @mcp.tool(name="get-organization", description="Get a specific organization by ID including custom fields")
    async def get_organization(organization_id: int) -> str:
        return await fetch(
            f"fetching organization {organization_id}",
            lambda c: c.organizations.get_organization(organization_id),
        )

    @mcp.tool(name="search-organizations", description="Search organizations by term")
    async def search_organizations(term: str) -> str:
        return await fetch(
            "searching organizations", lambda c: c.organizations.search_organizations(term)
        )

    @mcp.tool(name="get-pipelines", description="Get all pipelines from Pipedrive")
    async def get_pipelines() -> str:
        return await fetch("fetching pipelines", lambda c: c.pipelines.get_pipelines())

    @mcp.tool(name="get-pipeline", description="Get a specific pipeline by ID")
    async def get_pipeline(pipeline_id: int) -> str:
        return await fetch(
            f"fetching pipeline {pipeline_id}", lambda c: c.pipelines.get_pipeline(pipeline_id)
        )

    @mcp.tool(name="get-stages", description="Get all stages from Pipedrive, optionally for one pipeline")
    async def get_stages(pipeline_id: Optional[int] = None) -> str:
        return await fetch("fetching stages", lambda c: c.stages.get_stages(pipeline_id=pipeline_id))

    @mcp.tool(name="search-leads", description="Search leads by term")
    async def search_leads(term: str) -> str:
        return await fetch("searching leads", lambda c: c.leads.search_leads(term))

    @mcp.tool(
        name="search-all",
        description="Search across all item types (deals, persons, organizations, etc.)",
    )
    async def search_all(term: str, item_types: Optional[str] = None) -> str:
        """item_types: comma-separated subset of deal,person,organization,product,file,activity,lead."""
        return await fetch(
            "performing search", lambda c: c.item_search.search_item(term, item_types=item_types)
        )
