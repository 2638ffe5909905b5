"""Tests for API Server."""

import pytest
from fastapi.testclient import TestClient

from fakes import FakeSession, ScriptedModel, answer, calls, make_config, make_tool, text_result
from mcpchat.api.main import create_app
from mcpchat.chat.model import ModelError
from mcpchat.mcp.registry import ConnectionRegistry
from mcpchat.settings import Settings


def _config(server_id: str = "a", **overrides) -> dict:
    data = {"id": server_id, "name": server_id.upper(), "transport": "stdio", "config": {"command": "echo"}}
    data.update(overrides)
    return data


@pytest.fixture
def echo_farm(farm):
    farm.add(
        "a",
        FakeSession(
            tools=[make_tool("echo", schema={"type": "object", "properties": {"text": {"type": "string"}}})],
            handlers={"echo": lambda args: text_result(args.get("text", ""))},
        ),
    )
    return farm


@pytest.fixture
def client(echo_farm):
    """Test client with the lifespan running; no servers connected at start."""
    app = create_app(Settings(), registry=ConnectionRegistry(echo_farm), server_configs=[])
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def connected_client(client):
    assert client.post("/api/mcp/connect", json={"config": _config()}).status_code == 200
    return client


class TestConnectEndpoints:
    def test_connect(self, client):
        response = client.post("/api/mcp/connect", json={"config": _config()})

        assert response.status_code == 200
        assert response.json() == {"success": True, "serverId": "a"}
        assert client.get("/api/mcp/status").json() == {
            "servers": [{"id": "a", "name": "A", "status": "connected"}]
        }

    def test_connect_requires_config(self, client):
        response = client.post("/api/mcp/connect", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid server configuration"

    def test_connect_unsupported_transport(self, client):
        response = client.post(
            "/api/mcp/connect",
            json={"config": _config(transport="websocket", config={"url": "ws://x"})},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Unsupported transport type: websocket"

    def test_connect_malformed_transport(self, client):
        response = client.post("/api/mcp/connect", json={"config": _config(transport={"k": 1})})

        assert response.status_code == 400
        assert response.json()["serverId"] == "a"

    def test_connect_failure(self, client, echo_farm):
        echo_farm.connect_errors["b"] = RuntimeError("spawn failed")

        response = client.post("/api/mcp/connect", json={"config": _config("b")})

        assert response.status_code == 500
        assert response.json() == {"success": False, "serverId": "b", "error": "spawn failed"}
        [server] = client.get("/api/mcp/status").json()["servers"]
        assert server["status"] == "error"
        assert server["error"] == "spawn failed"

    def test_disconnect(self, connected_client, echo_farm):
        response = connected_client.post("/api/mcp/disconnect", json={"serverId": "a"})

        assert response.json() == {"success": True}
        assert echo_farm.live["a"] == 0
        assert connected_client.get("/api/mcp/status").json() == {"servers": []}

    def test_disconnect_requires_id(self, client):
        assert client.post("/api/mcp/disconnect", json={}).status_code == 400

    def test_disconnect_unknown(self, client):
        response = client.post("/api/mcp/disconnect", json={"serverId": "nope"})

        assert response.status_code == 500
        assert response.json()["error"] == "Server not found"


class TestCapabilityEndpoints:
    def test_list_tools(self, connected_client):
        response = connected_client.post("/api/mcp/list", json={"serverId": "a", "type": "tools"})

        assert response.status_code == 200
        [tool] = response.json()["data"]
        assert tool["name"] == "echo"
        assert tool["inputSchema"]["properties"] == {"text": {"type": "string"}}

    def test_list_invalid_type(self, connected_client):
        response = connected_client.post("/api/mcp/list", json={"serverId": "a", "type": "widgets"})

        assert response.status_code == 400

    def test_list_not_connected(self, client):
        response = client.post("/api/mcp/list", json={"serverId": "a", "type": "tools"})

        assert response.status_code == 500
        assert response.json()["error"] == "Server not connected"

    def test_execute_tool(self, connected_client):
        response = connected_client.post(
            "/api/mcp/execute?action=tool",
            json={"serverId": "a", "toolName": "echo", "arguments": {"text": "hi"}},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["result"]["content"] == [{"type": "text", "text": "hi"}]

    def test_execute_prompt_and_resource(self, connected_client):
        prompt = connected_client.post(
            "/api/mcp/execute?action=prompt",
            json={"serverId": "a", "promptName": "greet", "arguments": {"who": "you"}},
        )
        resource = connected_client.post(
            "/api/mcp/execute?action=resource",
            json={"serverId": "a", "uri": "file:///notes.txt"},
        )

        assert prompt.json()["messages"][0]["role"] == "user"
        assert resource.json()["contents"][0]["text"] == "hello"

    def test_execute_requires_fields(self, connected_client):
        response = connected_client.post("/api/mcp/execute?action=tool", json={"serverId": "a"})

        assert response.status_code == 400
        assert response.json()["error"] == "Server ID and tool name are required"

    def test_execute_invalid_action(self, connected_client):
        response = connected_client.post("/api/mcp/execute?action=delete", json={"serverId": "a"})

        assert response.status_code == 400


class TestChatEndpoint:
    def test_chat_without_model(self, client):
        response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})

        assert response.status_code == 503

    def test_chat_with_tools(self, echo_farm):
        model = ScriptedModel(calls(("a__echo", {"text": "ping"})), answer("pong"))
        app = create_app(
            Settings(),
            registry=ConnectionRegistry(echo_farm),
            model=model,
            server_configs=[make_config("a")],
        )

        with TestClient(app) as client:
            response = client.post(
                "/api/chat",
                json={"messages": [{"role": "user", "content": "echo ping"}]},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["content"] == "pong"
        assert body["toolCalls"] == [
            {
                "serverName": "A",
                "toolName": "echo",
                "arguments": {"text": "ping"},
                "result": {"content": [{"type": "text", "text": "ping"}], "isError": False},
            }
        ]

    def test_chat_model_failure(self, farm):
        class FailingModel:
            async def generate(self, contents, *, system_instruction, declarations):
                raise ModelError("upstream unavailable")

        app = create_app(Settings(), registry=ConnectionRegistry(farm), model=FailingModel(), server_configs=[])

        with TestClient(app) as client:
            response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})

        assert response.status_code == 502
        assert response.json() == {"error": "upstream unavailable"}

    def test_chat_requires_messages(self, farm):
        app = create_app(Settings(), registry=ConnectionRegistry(farm), model=ScriptedModel(answer("x")), server_configs=[])

        with TestClient(app) as client:
            assert client.post("/api/chat", json={"messages": []}).status_code == 400


class TestLifecycle:
    def test_configured_servers_connect_at_startup_and_close_on_shutdown(self, farm):
        app = create_app(
            Settings(),
            registry=ConnectionRegistry(farm),
            server_configs=[make_config("a"), make_config("b")],
        )

        with TestClient(app) as client:
            statuses = {s["id"]: s["status"] for s in client.get("/api/mcp/status").json()["servers"]}
            assert statuses == {"a": "connected", "b": "connected"}

        assert sum(farm.live.values()) == 0
        assert sorted(farm.closed) == ["a", "b"]

    def test_health(self, connected_client):
        response = connected_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["servers"]["connected"] == 1
        assert data["model_configured"] is False
        assert "X-Request-ID" in response.headers
