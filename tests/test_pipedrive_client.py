from __future__ import annotations

import httpx
import pytest

from pipedrive_mcp.credentials import CredentialSet
from pipedrive_mcp.errors import UpstreamError
from pipedrive_mcp.pipedrive import PipedriveClients, PipedriveRequester, RateLimitedRequester
from pipedrive_mcp.rate_limits import CallScheduler

CREDS = CredentialSet(api_token="secret-token-123", domain="corp.example.com")


def requester_for(handler) -> PipedriveRequester:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PipedriveRequester(client, CREDS)


class CountingScheduler(CallScheduler):
    def __init__(self) -> None:
        super().__init__(min_time_ms=0, max_concurrent=2)
        self.calls = 0

    async def schedule(self, fn, *args, **kwargs):
        self.calls += 1
        return await super().schedule(fn, *args, **kwargs)


@pytest.mark.asyncio
async def test_request_targets_tenant_and_unwraps_data() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": [{"id": 1}]})

    data = await requester_for(handler).request("get", "/deals", {"limit": 10, "stage_id": None})
    assert data == [{"id": 1}]
    request = seen[0]
    assert request.method == "GET"
    assert str(request.url).startswith("https://corp.example.com/api/v1/deals?")
    assert request.url.params["api_token"] == "secret-token-123"
    assert request.url.params["limit"] == "10"
    assert "stage_id" not in request.url.params


@pytest.mark.asyncio
async def test_http_error_status_raises_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"success": False, "error": "Deal not found"})

    with pytest.raises(UpstreamError) as excinfo:
        await requester_for(handler).request("GET", "/deals/9")
    assert excinfo.value.upstream_status == 404
    assert "404" in str(excinfo.value)
    assert "Deal not found" in str(excinfo.value)


@pytest.mark.asyncio
async def test_rate_limited_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="slow down")

    with pytest.raises(UpstreamError, match="rate limit"):
        await requester_for(handler).request("GET", "/users")


@pytest.mark.asyncio
async def test_success_false_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "error": "Bad filter", "error_info": "see docs"})

    with pytest.raises(UpstreamError, match="Bad filter"):
        await requester_for(handler).request("GET", "/deals")


@pytest.mark.asyncio
async def test_non_json_body_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(UpstreamError, match="non-JSON"):
        await requester_for(handler).request("GET", "/deals")


@pytest.mark.asyncio
async def test_transport_error_never_leaks_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"cannot reach {request.url}", request=request)

    with pytest.raises(UpstreamError) as excinfo:
        await requester_for(handler).request("GET", "/users")
    assert "secret-token-123" not in str(excinfo.value)
    assert "ConnectError" in str(excinfo.value)


@pytest.mark.asyncio
async def test_unparseable_domain_raises_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request should be sent")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    requester = PipedriveRequester(client, CredentialSet("secret-token-123", "corp.example.com:80x0"))
    with pytest.raises(UpstreamError) as excinfo:
        await requester.request("GET", "/users")
    assert "InvalidURL" in str(excinfo.value)
    assert "secret-token-123" not in str(excinfo.value)


@pytest.mark.asyncio
async def test_error_detail_never_leaks_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"success": False, "error": f"token {request.url.params['api_token']} invalid"})

    with pytest.raises(UpstreamError) as excinfo:
        await requester_for(handler).request("GET", "/users")
    assert "secret-token-123" not in str(excinfo.value)


@pytest.mark.asyncio
async def test_every_resource_call_goes_through_scheduler() -> None:
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append((request.url.path, dict(request.url.params)))
        return httpx.Response(200, json={"success": True, "data": []})

    scheduler = CountingScheduler()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    clients = PipedriveClients.build(client, CREDS, scheduler)
    assert isinstance(clients.deals._requester, RateLimitedRequester)

    await clients.deals.get_deals(stage_id=3)
    await clients.deals.get_deal(7)
    await clients.persons.search_persons("ada")
    await clients.organizations.get_organization(5)
    await clients.pipelines.get_pipeline_deals(1, user_id=2)
    await clients.stages.get_stages()
    await clients.leads.search_leads("lead")
    await clients.item_search.search_item("acme", item_types="deal,person")
    await clients.users.get_users()

    assert scheduler.calls == 9
    assert [p for p, _ in paths] == [
        "/api/v1/deals",
        "/api/v1/deals/7",
        "/api/v1/persons/search",
        "/api/v1/organizations/5",
        "/api/v1/pipelines/1/deals",
        "/api/v1/stages",
        "/api/v1/leads/search",
        "/api/v1/itemSearch",
        "/api/v1/users",
    ]
    assert paths[0][1]["status"] == "all_not_deleted"
    assert paths[0][1]["stage_id"] == "3"
    assert "pipeline_id" not in paths[5][1]
    assert paths[7][1]["item_types"] == "deal,person"
