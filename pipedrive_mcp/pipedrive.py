"""
Pipedrive REST clients, one bundle per credential set.

Every resource client talks to `https://{domain}/api/v1` through a
`RateLimitedRequester`, so each upstream request passes the shared
`CallScheduler`. The raw requester is never handed to resource clients.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .credentials import CredentialSet
from .errors import UpstreamError
from .rate_limits import CallScheduler

logger = logging.getLogger("pipedrive_mcp.pipedrive")


class PipedriveRequester:
    """Raw HTTP access to one tenant, authenticated with `api_token` in the query string."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        credentials: CredentialSet,
        timeout: float = 30.0,
    ) -> None:
        self._http = http_client
        self._credentials = credentials
        self._timeout = timeout

    @property
    def base_url(self) -> str:
        return self._credentials.base_url

    def _scrub(self, text: str) -> str:
        token = self._credentials.api_token
        return text.replace(token, "***") if token else text

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        query = {k: v for k, v in (params or {}).items() if v is not None}
        query["api_token"] = self._credentials.api_token

        try:
            response = await self._http.request(
                method=method.upper(),
                url=url,
                params=query,
                timeout=self._timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            message = self._scrub(f"{exc.__class__.__name__}: {exc}".rstrip(": "))
            raise UpstreamError(f"Request to Pipedrive failed ({message})") from exc

        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = None

        if status == 429:
            raise UpstreamError("Pipedrive rate limit exceeded", upstream_status=status)
        if status >= 400:
            detail = _error_detail(body) or response.reason_phrase or "error"
            raise UpstreamError(
                self._scrub(f"Pipedrive returned {status}: {detail}"),
                upstream_status=status,
            )
        if not isinstance(body, dict):
            raise UpstreamError("Pipedrive returned a non-JSON response", upstream_status=status)
        if body.get("success") is False:
            raise UpstreamError(
                self._scrub(_error_detail(body) or "Pipedrive reported failure"),
                upstream_status=status,
            )
        return body.get("data")


def _error_detail(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    info = body.get("error_info")
    if error and info:
        return f"{error} ({info})"
    return str(error) if error else None


class RateLimitedRequester:
    """Same call interface as `PipedriveRequester`, delegating through the scheduler."""

    __slots__ = ("_inner", "_scheduler")

    def __init__(self, inner: PipedriveRequester, scheduler: CallScheduler) -> None:
        self._inner = inner
        self._scheduler = scheduler

    @property
    def base_url(self) -> str:
        return self._inner.base_url

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        return await self._scheduler.schedule(self._inner.request, method, path, params)


class _Resource:
    def __init__(self, requester: RateLimitedRequester) -> None:
        self._requester = requester

    async def _get(self, path: str, **params: Any) -> Any:
        return await self._requester.request("GET", path, params)


class DealsApi(_Resource):
    async def get_deals(
        self,
        status: str = "all_not_deleted",
        user_id: Optional[int] = None,
        stage_id: Optional[int] = None,
        limit: int = 100,
        start: int = 0,
    ) -> Any:
        return await self._get(
            "/deals", status=status, user_id=user_id, stage_id=stage_id, limit=limit, start=start
        )

    async def get_deal(self, deal_id: int) -> Any:
        return await self._get(f"/deals/{int(deal_id)}")

    async def search_deals(self, term: str) -> Any:
        return await self._get("/deals/search", term=term)


class PersonsApi(_Resource):
    async def get_persons(self, limit: int = 100, start: int = 0) -> Any:
        return await self._get("/persons", limit=limit, start=start)

    async def get_person(self, person_id: int) -> Any:
        return await self._get(f"/persons/{int(person_id)}")

    async def search_persons(self, term: str) -> Any:
        return await self._get("/persons/search", term=term)


class OrganizationsApi(_Resource):
    async def get_organizations(self, limit: int = 100, start: int = 0) -> Any:
        return await self._get("/organizations", limit=limit, start=start)

    async def get_organization(self, organization_id: int) -> Any:
        return await self._get(f"/organizations/{int(organization_id)}")

    async def search_organizations(self, term: str) -> Any:
        return await self._get("/organizations/search", term=term)


class PipelinesApi(_Resource):
    async def get_pipelines(self) -> Any:
        return await self._get("/pipelines")

    async def get_pipeline(self, pipeline_id: int) -> Any:
        return await self._get(f"/pipelines/{int(pipeline_id)}")

    async def get_pipeline_deals(
        self,
        pipeline_id: int,
        stage_id: Optional[int] = None,
        user_id: Optional[int] = None,
        limit: int = 100,
    ) -> Any:
        return await self._get(
            f"/pipelines/{int(pipeline_id)}/deals", stage_id=stage_id, user_id=user_id, limit=limit
        )


class StagesApi(_Resource):
    async def get_stages(self, pipeline_id: Optional[int] = None) -> Any:
        return await self._get("/stages", pipeline_id=pipeline_id)


class LeadsApi(_Resource):
    async def search_leads(self, term: str) -> Any:
        return await self._get("/leads/search", term=term)


class ItemSearchApi(_Resource):
    async def search_item(self, term: str, item_types: Optional[str] = None) -> Any:
        return await self._get("/itemSearch", term=term, item_types=item_types)


class UsersApi(_Resource):
    async def get_users(self) -> Any:
        return await self._get("/users")


@dataclass(frozen=True)
class PipedriveClients:
    deals: DealsApi
    persons: PersonsApi
    organizations: OrganizationsApi
    pipelines: PipelinesApi
    stages: StagesApi
    leads: LeadsApi
    item_search: ItemSearchApi
    users: UsersApi

    @classmethod
    def build(
        cls,
        http_client: httpx.AsyncClient,
        credentials: CredentialSet,
        scheduler: CallScheduler,
        timeout: float = 30.0,
    ) -> "PipedriveClients":
        requester = RateLimitedRequester(
            PipedriveRequester(http_client, credentials, timeout=timeout),
            scheduler,
        )
        logger.debug("Built Pipedrive clients for %s", credentials.domain)
        return cls(
            deals=DealsApi(requester),
            persons=PersonsApi(requester),
            organizations=OrganizationsApi(requester),
            pipelines=PipelinesApi(requester),
            stages=StagesApi(requester),
            leads=LeadsApi(requester),
            item_search=ItemSearchApi(requester),
            users=UsersApi(requester),
        )


def create_http_client(http_limits: Optional[Dict[str, Any]] = None) -> httpx.AsyncClient:
    """Shared connection pool for all sessions."""
    limits = http_limits or {}
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=int(limits.get("max_connections", 100)),
            max_keepalive_connections=int(limits.get("max_keepalive_connections", 20)),
        ),
        timeout=httpx.Timeout(
            connect=float(limits.get("connect_timeout", 5.0)),
            read=float(limits.get("read_timeout", 30.0)),
            write=float(limits.get("write_timeout", 10.0)),
            pool=float(limits.get("pool_timeout", 5.0)),
        ),
        follow_redirects=False,
    )
