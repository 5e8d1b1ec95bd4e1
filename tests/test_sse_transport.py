"""
End-to-end tests for the streamed transport.

The event stream never ends on its own, so the ASGI app is driven directly:
`receive` hands out the GET request and then blocks until the test signals a
disconnect, `send` pushes every ASGI message into a queue the test reads from.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
import jwt
import pytest

from conftest import CREDENTIALS_HEADER, INITIALIZE_PARAMS, FakePipedrive, make_settings, rpc, tool_text
from pipedrive_mcp.http_app import create_app
from pipedrive_mcp.security import AuthConfig


class EventStream:
    def __init__(self, app: Any, headers: Dict[str, str]) -> None:
        self.app = app
        self.headers = headers
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self.disconnected = asyncio.Event()
        self.status: Optional[int] = None
        self.buffer = ""
        self.task: Optional["asyncio.Task[None]"] = None
        self._requested = False

    def scope(self) -> Dict[str, Any]:
        return {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/sse",
            "raw_path": b"/sse",
            "root_path": "",
            "query_string": b"",
            "headers": [(k.lower().encode(), v.encode()) for k, v in self.headers.items()],
            "client": ("127.0.0.1", 50000),
            "server": ("testserver", 80),
        }

    async def receive(self) -> Dict[str, Any]:
        if not self._requested:
            self._requested = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await self.disconnected.wait()
        return {"type": "http.disconnect"}

    async def send(self, message: Dict[str, Any]) -> None:
        await self.queue.put(message)

    async def open(self) -> int:
        self.task = asyncio.create_task(self.app(self.scope(), self.receive, self.send))
        start = await asyncio.wait_for(self.queue.get(), timeout=5.0)
        assert start["type"] == "http.response.start"
        self.status = start["status"]
        return self.status

    async def body(self) -> bytes:
        chunks = []
        while True:
            message = await asyncio.wait_for(self.queue.get(), timeout=5.0)
            chunks.append(message.get("body", b""))
            if not message.get("more_body", False):
                return b"".join(chunks)

    async def next_event(self) -> Tuple[str, str]:
        while "\n\n" not in self.buffer:
            message = await asyncio.wait_for(self.queue.get(), timeout=5.0)
            self.buffer += message.get("body", b"").decode("utf-8")
        raw, self.buffer = self.buffer.split("\n\n", 1)
        fields = dict(line.split(": ", 1) for line in raw.splitlines())
        return fields["event"], fields["data"]

    async def next_message(self) -> Dict[str, Any]:
        event, data = await self.next_event()
        assert event == "message"
        return json.loads(data)

    async def close(self) -> None:
        self.disconnected.set()
        if self.task is not None:
            await asyncio.wait_for(self.task, timeout=5.0)


def poster(app: Any) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


async def handshake(stream: EventStream, client: httpx.AsyncClient, endpoint: str) -> None:
    response = await client.post(endpoint, json=rpc("initialize", INITIALIZE_PARAMS, id=1))
    assert response.status_code == 202
    reply = await stream.next_message()
    assert reply["id"] == 1
    assert reply["result"]["serverInfo"]["name"] == "pipedrive-mcp-server"
    response = await client.post(endpoint, json=rpc("notifications/initialized", id=None))
    assert response.status_code == 202


@pytest.mark.asyncio
async def test_connect_list_call_and_disconnect(mock_http_client: httpx.AsyncClient, fake_pipedrive: FakePipedrive) -> None:
    app = create_app(make_settings(transport="sse"), http_client=mock_http_client)
    stream = EventStream(app, CREDENTIALS_HEADER)
    assert await stream.open() == 200

    event, endpoint = await stream.next_event()
    assert event == "endpoint"
    assert endpoint.startswith("/message?sessionId=")
    session_id = endpoint.split("=", 1)[1]
    assert session_id in app.state.sessions

    async with poster(app) as client:
        await handshake(stream, client, endpoint)

        response = await client.post(endpoint, json=rpc("tools/list", id=2))
        assert response.status_code == 202
        tools = await stream.next_message()
        assert tools["id"] == 2
        assert len(tools["result"]["tools"]) == 15

        response = await client.post(
            endpoint, json=rpc("tools/call", {"name": "get-users", "arguments": {}}, id=3)
        )
        assert response.status_code == 202
        result = await stream.next_message()
        assert tool_text(result["result"]) == [{"id": 1, "name": "Ada Lovelace"}]
        assert fake_pipedrive.hosts() == ["corp.example.com"]

        unknown = await client.post("/message?sessionId=does-not-exist", json=rpc("tools/list", id=4))
        assert unknown.status_code == 404

        missing = await client.post("/message", json=rpc("tools/list", id=5))
        assert missing.status_code == 400

        # session lookup is decided before the body is read
        garbled = await client.post("/message?sessionId=does-not-exist", content=b"{not json")
        assert garbled.status_code == 404
        bad_body = await client.post(endpoint, content=b"{not json")
        assert bad_body.status_code == 400
        assert bad_body.json()["error"]["code"] == -32700

        await stream.close()
        assert session_id not in app.state.sessions
        assert not app.state.dispatcher.has_channel(session_id)

        after = await client.post(endpoint, json=rpc("tools/list", id=6))
        assert after.status_code == 404


@pytest.mark.asyncio
async def test_connect_without_credentials_is_rejected(mock_http_client: httpx.AsyncClient) -> None:
    app = create_app(make_settings(transport="sse"), http_client=mock_http_client)
    stream = EventStream(app, {})
    assert await stream.open() == 401
    assert "credentials required" in json.loads(await stream.body())["error"]
    assert len(app.state.sessions) == 0
    await stream.close()


@pytest.mark.asyncio
async def test_post_with_new_credentials_rebinds_session(
    mock_http_client: httpx.AsyncClient, fake_pipedrive: FakePipedrive
) -> None:
    app = create_app(make_settings(transport="sse"), http_client=mock_http_client)
    stream = EventStream(app, CREDENTIALS_HEADER)
    await stream.open()
    _, endpoint = await stream.next_event()
    session_id = endpoint.split("=", 1)[1]

    async with poster(app) as client:
        await handshake(stream, client, endpoint)
        response = await client.post(
            endpoint,
            json=rpc("tools/call", {"name": "get-pipelines", "arguments": {}}, id=2),
            headers={"Authorization": "Bearer zzz999:other.example.com"},
        )
        assert response.status_code == 202
        await stream.next_message()

        # later POSTs without credentials keep the rebound tenant
        await client.post(endpoint, json=rpc("tools/call", {"name": "get-stages", "arguments": {}}, id=3))
        await stream.next_message()

    assert fake_pipedrive.hosts() == ["other.example.com", "other.example.com"]
    assert app.state.sessions.lookup(session_id).credentials.domain == "other.example.com"
    await stream.close()
    assert len(app.state.sessions) == 0


@pytest.mark.asyncio
async def test_concurrent_streams_are_isolated(
    mock_http_client: httpx.AsyncClient, fake_pipedrive: FakePipedrive
) -> None:
    app = create_app(make_settings(transport="sse"), http_client=mock_http_client)
    streams: List[EventStream] = [
        EventStream(app, CREDENTIALS_HEADER),
        EventStream(app, {"Authorization": "Bearer zzz999:other.example.com"}),
    ]
    endpoints = []
    for stream in streams:
        await stream.open()
        endpoints.append((await stream.next_event())[1])

    async with poster(app) as client:
        for stream, endpoint in zip(streams, endpoints):
            await handshake(stream, client, endpoint)
        await asyncio.gather(*(
            client.post(endpoint, json=rpc("tools/call", {"name": "get-users", "arguments": {}}, id=9))
            for endpoint in endpoints
        ))
        for stream in streams:
            await stream.next_message()

    assert sorted(fake_pipedrive.hosts()) == ["corp.example.com", "other.example.com"]
    assert len(app.state.sessions) == 2
    for stream in streams:
        await stream.close()
    assert len(app.state.sessions) == 0


@pytest.mark.asyncio
async def test_gate_protects_stream(mock_http_client: httpx.AsyncClient) -> None:
    secret = "sse-gate-secret-for-tests-0123456789abcdef"
    token = jwt.encode({"sub": "client", "exp": int(time.time()) + 300}, secret, algorithm="HS256")
    app = create_app(
        make_settings(transport="sse", auth=AuthConfig(secret=secret, token=token)),
        http_client=mock_http_client,
    )

    denied = EventStream(app, CREDENTIALS_HEADER)
    assert await denied.open() == 401
    await denied.close()
    assert len(app.state.sessions) == 0

    allowed = EventStream(app, {**CREDENTIALS_HEADER, "X-MCP-Authorization": f"Bearer {token}"})
    assert await allowed.open() == 200
    _, endpoint = await allowed.next_event()
    async with poster(app) as client:
        blocked = await client.post(endpoint, json=rpc("tools/list", id=1))
        assert blocked.status_code == 401
    assert len(app.state.sessions) == 1
    await allowed.close()
