"""Tests for the MCP JSON-RPC server endpoints."""

import json
from typing import Any, Dict, Optional

import pytest
from httpx import ASGITransport, AsyncClient

from forum_qa_bot.expert_discovery import ExpertFinder
from forum_qa_bot.mcp_client import parse_sse_response
from forum_qa_bot.mcp_server import SessionRegistry, create_app
from forum_qa_bot.message_store import MessageStore
from forum_qa_bot.tools import ForumToolbox

JSON_ONLY = {"Accept": "application/json"}


def _rpc(method: str, params: Optional[Dict[str, Any]] = None, msg_id: Optional[int] = 1) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if msg_id is not None:
        payload["id"] = msg_id
    if params is not None:
        payload["params"] = params
    return payload


def _app(store: MessageStore, auth_token: str = "", ttl: Optional[int] = None):
    toolbox = ForumToolbox(store, ExpertFinder(store))
    return create_app(toolbox=toolbox, auth_token=auth_token, session_ttl_seconds=ttl)


async def _open_session(client: AsyncClient, headers: Optional[Dict[str, str]] = None) -> str:
    response = await client.post("/mcp", json=_rpc("initialize", {"clientInfo": {"name": "test"}}),
                                 headers={**JSON_ONLY, **(headers or {})})
    assert response.status_code == 200
    return response.headers["mcp-session-id"]


class TestHandshake:
    @pytest.mark.asyncio
    async def test_initialize_returns_session(self, populated_store):
        transport = ASGITransport(app=_app(populated_store))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post("/mcp", json=_rpc("initialize", {}), headers=JSON_ONLY)

        assert response.status_code == 200
        assert response.headers["mcp-session-id"]
        body = response.json()
        assert body["id"] == 1
        assert body["result"]["serverInfo"]["name"] == "forum-qa-mcp"
        assert "tools" in body["result"]["capabilities"]

    @pytest.mark.asyncio
    async def test_initialized_notification_accepted(self, populated_store):
        transport = ASGITransport(app=_app(populated_store))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            session_id = await _open_session(client)
            response = await client.post(
                "/mcp",
                json=_rpc("notifications/initialized", msg_id=None),
                headers={**JSON_ONLY, "mcp-session-id": session_id},
            )
        assert response.status_code == 202

    @pytest.mark.asyncio
    async def test_sse_framing(self, populated_store):
        transport = ASGITransport(app=_app(populated_store))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/mcp",
                json=_rpc("initialize", {}),
                headers={"Accept": "application/json, text/event-stream"},
            )

        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text.startswith("event: message\ndata: ")
        assert parse_sse_response(response.text)["result"]["protocolVersion"] == "2024-11-05"

    @pytest.mark.asyncio
    async def test_health(self, populated_store):
        transport = ASGITransport(app=_app(populated_store))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")
        assert response.json() == {"status": "ok", "sessions": 0, "tools": 4}


class TestSessions:
    @pytest.mark.asyncio
    async def test_missing_session(self, populated_store):
        transport = ASGITransport(app=_app(populated_store))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post("/mcp", json=_rpc("tools/list"), headers=JSON_ONLY)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32600

    @pytest.mark.asyncio
    async def test_unknown_session(self, populated_store):
        transport = ASGITransport(app=_app(populated_store))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/mcp", json=_rpc("tools/list"), headers={**JSON_ONLY, "mcp-session-id": "nope"}
            )
        assert response.status_code == 404

    def test_registry_expiry(self):
        registry = SessionRegistry(ttl_seconds=-1)
        session_id = registry.create()
        assert not registry.touch(session_id)
        assert len(registry) == 0

    def test_registry_touch(self):
        registry = SessionRegistry(ttl_seconds=60)
        session_id = registry.create()
        assert registry.touch(session_id)
        assert not registry.touch("other")


class TestMethods:
    @pytest.mark.asyncio
    async def test_tools_list_and_call(self, populated_store):
        transport = ASGITransport(app=_app(populated_store))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            session_id = await _open_session(client)
            headers = {**JSON_ONLY, "mcp-session-id": session_id}

            listed = await client.post("/mcp", json=_rpc("tools/list", msg_id=2), headers=headers)
            called = await client.post(
                "/mcp",
                json=_rpc("tools/call", {"name": "search_messages", "arguments": {"query": "printer"}}, msg_id=3),
                headers=headers,
            )

        tools = listed.json()["result"]["tools"]
        assert {t["name"] for t in tools} >= {"search_messages", "get_thread", "find_experts"}

        result = called.json()["result"]
        assert called.json()["id"] == 3
        assert result["isError"] is False
        payload = json.loads(result["content"][0]["text"])
        assert payload["results"][0]["author"] == "dave"
        assert result["structuredContent"] == payload

    @pytest.mark.asyncio
    async def test_tool_argument_error_is_result(self, populated_store):
        transport = ASGITransport(app=_app(populated_store))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            session_id = await _open_session(client)
            response = await client.post(
                "/mcp",
                json=_rpc("tools/call", {"name": "search_messages", "arguments": {}}),
                headers={**JSON_ONLY, "mcp-session-id": session_id},
            )
        assert response.status_code == 200
        assert response.json()["result"]["isError"] is True

    @pytest.mark.asyncio
    async def test_unknown_tool(self, populated_store):
        transport = ASGITransport(app=_app(populated_store))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            session_id = await _open_session(client)
            response = await client.post(
                "/mcp",
                json=_rpc("tools/call", {"name": "drop_tables"}),
                headers={**JSON_ONLY, "mcp-session-id": session_id},
            )
        assert response.json()["error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_unknown_method_and_ping(self, populated_store):
        transport = ASGITransport(app=_app(populated_store))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            session_id = await _open_session(client)
            headers = {**JSON_ONLY, "mcp-session-id": session_id}
            unknown = await client.post("/mcp", json=_rpc("resources/list"), headers=headers)
            ping = await client.post("/mcp", json=_rpc("ping"), headers=headers)

        assert unknown.json()["error"]["code"] == -32601
        assert ping.json()["result"] == {}

    @pytest.mark.asyncio
    async def test_parse_error(self, populated_store):
        transport = ASGITransport(app=_app(populated_store))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/mcp", content=b"{not json", headers={**JSON_ONLY, "Content-Type": "application/json"}
            )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32700

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [[1, 2], {"jsonrpc": "1.0", "id": 1, "method": "ping"}, {"jsonrpc": "2.0", "id": 1}])
    async def test_invalid_request(self, populated_store, body):
        transport = ASGITransport(app=_app(populated_store))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post("/mcp", json=body, headers=JSON_ONLY)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32600


class TestAuth:
    @pytest.mark.asyncio
    async def test_missing_token(self, populated_store):
        transport = ASGITransport(app=_app(populated_store, auth_token="s3cret"))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post("/mcp", json=_rpc("initialize", {}), headers=JSON_ONLY)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_token(self, populated_store):
        transport = ASGITransport(app=_app(populated_store, auth_token="s3cret"))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/mcp", json=_rpc("initialize", {}), headers={**JSON_ONLY, "Authorization": "Bearer wrong"}
            )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_valid_token(self, populated_store):
        transport = ASGITransport(app=_app(populated_store, auth_token="s3cret"))
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            session_id = await _open_session(client, {"Authorization": "Bearer s3cret"})
        assert session_id
