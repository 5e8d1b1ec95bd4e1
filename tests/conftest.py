from __future__ import annotations

import json
from typing import Any, Dict, List

import httpx
import pytest

from pipedrive_mcp.config import Settings
from pipedrive_mcp.credentials import CredentialSet
from pipedrive_mcp.pipedrive import PipedriveClients
from pipedrive_mcp.rate_limits import CallScheduler
from pipedrive_mcp.sessions import SessionStore

TOKEN = "abc123"
DOMAIN = "corp.example.com"
CREDENTIALS_HEADER = {"Authorization": f"Bearer {TOKEN}:{DOMAIN}"}

FAKE_DATA: Dict[str, Any] = {
    "/api/v1/users": [{"id": 1, "name": "Ada Lovelace"}],
    "/api/v1/deals": [{"id": 7, "title": "Big deal", "value": 5000}],
    "/api/v1/pipelines": [{"id": 1, "name": "Sales"}],
    "/api/v1/stages": [{"id": 3, "name": "Qualified", "pipeline_id": 1}],
}


class FakePipedrive:
    """Stand-in for the Pipedrive API, recording every request it sees."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in FAKE_DATA:
            return httpx.Response(200, json={"success": True, "data": FAKE_DATA[path]})
        if path.startswith("/api/v1/deals/"):
            deal_id = int(path.rsplit("/", 1)[1])
            return httpx.Response(200, json={"success": True, "data": {"id": deal_id, "title": f"Deal {deal_id}"}})
        return httpx.Response(404, json={"success": False, "error": "Not found"})

    def hosts(self) -> List[str]:
        return [r.url.host for r in self.requests]


@pytest.fixture
def fake_pipedrive() -> FakePipedrive:
    return FakePipedrive()


@pytest.fixture
def mock_http_client(fake_pipedrive: FakePipedrive) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_pipedrive))


@pytest.fixture
def credentials() -> CredentialSet:
    return CredentialSet(api_token=TOKEN, domain=DOMAIN)


@pytest.fixture
def session_store(mock_http_client: httpx.AsyncClient) -> SessionStore:
    scheduler = CallScheduler(min_time_ms=0, max_concurrent=4)
    return SessionStore(lambda creds: PipedriveClients.build(mock_http_client, creds, scheduler))


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {"rate_limit_min_time_ms": 0, "rate_limit_max_concurrent": 4}
    values.update(overrides)
    return Settings(**values)


def rpc(method: str, params: Dict[str, Any] | None = None, id: int | None = 1) -> Dict[str, Any]:
    message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        message["params"] = params
    if id is not None:
        message["id"] = id
    return message


INITIALIZE_PARAMS = {
    "protocolVersion": "2024-11-05",
    "capabilities": {},
    "clientInfo": {"name": "pytest", "version": "0"},
}


def tool_text(result: Dict[str, Any]) -> Any:
    """Parse the JSON text content of a tools/call result."""
    return json.loads(result["content"][0]["text"])
