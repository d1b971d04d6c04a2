"""HTTP surface tests using the FastAPI TestClient."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from core.app import create_app
from core.security import create_access_token
from llm.models import ModelProvider, ModelResponse, StreamEvent, Usage
from llm.providers import ModelHandle
from services.collaborators import AgentProfile, SessionContext
from services.container import build_services


class ScriptedClient:

    def __init__(self, responses=None, streams=None):
        self.responses = list(responses or [])
        self.streams = list(streams or [])

    async def complete(self, request):
        return self.responses.pop(0)

    async def stream(self, request):
        for event in self.streams.pop(0):
            yield event


@pytest.fixture
def auth_headers():
    token = create_access_token({"sub": "user-1", "tenant_id": "tenant-1"})
    return {"Authorization": f"Bearer {token}"}


def _services(settings, sink, client=None):
    services = build_services(settings, status_sink=sink)
    services.agents.add_agent(AgentProfile(
        id="agent-1",
        name="Helper",
        tenant_id="tenant-1",
        model_provider="openai",
        model_id="gpt-4.1-mini",
        allowed_action_ids=["Debug_echo"],
    ))
    services.credentials.set_api_key("tenant-1", "openai", "sk-test")
    services.resolver.resolve = MagicMock(
        return_value=ModelHandle(ModelProvider.OPENAI, "gpt-4.1-mini", {}, client or ScriptedClient(), "gpt-4.1-mini")
    )
    return services


class TestHealth:

    def test_health(self, settings, sink):
        with TestClient(create_app(_services(settings, sink))) as client:
            response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["services"]["bundles"] == "3"

    def test_root(self, settings, sink):
        with TestClient(create_app(_services(settings, sink))) as client:
            response = client.get("/")

        assert response.json()["mcp"] == "/mcp"
        assert "X-Process-Time" in response.headers


class TestMCPEndpoint:

    def test_initialize(self, settings, sink):
        with TestClient(create_app(_services(settings, sink))) as client:
            response = client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}})

        assert response.status_code == 200
        assert response.headers["Mcp-Session-Id"].startswith("mcp_")
        assert response.json()["result"]["serverInfo"]["version"] == settings.VERSION

    def test_parse_error(self, settings, sink):
        with TestClient(create_app(_services(settings, sink))) as client:
            response = client.post("/mcp", content=b"{not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 200
        assert response.json()["error"]["code"] == -32700

    def test_unauthenticated_tool_call(self, settings, sink):
        with TestClient(create_app(_services(settings, sink))) as client:
            response = client.post("/mcp", json={
                "jsonrpc": "2.0", "id": 2, "method": "tools/call", "params": {"name": "list_agents"},
            })

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"].startswith('Bearer realm="MCP"')

    def test_authenticated_tool_call(self, settings, sink, auth_headers):
        with TestClient(create_app(_services(settings, sink))) as client:
            response = client.post(
                "/mcp",
                json={"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": {"name": "list_agents"}},
                headers=auth_headers,
            )

        assert response.status_code == 200
        assert "Mcp-Session-Id" in response.headers
        assert '"agent-1"' in response.json()["result"]["content"][0]["text"]

    def test_notification(self, settings, sink):
        with TestClient(create_app(_services(settings, sink))) as client:
            response = client.post("/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"})

        assert response.status_code == 202
        assert response.content == b""

    def test_terminate(self, settings, sink):
        with TestClient(create_app(_services(settings, sink))) as client:
            session_id = client.post(
                "/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "initialize"}
            ).headers["Mcp-Session-Id"]

            deleted = client.delete("/mcp", headers={"Mcp-Session-Id": session_id})
            again = client.delete("/mcp", headers={"Mcp-Session-Id": session_id})

        assert deleted.status_code == 204
        assert again.status_code == 404

    def test_protected_resource_metadata(self, settings, sink):
        with TestClient(create_app(_services(settings, sink))) as client:
            response = client.get("/.well-known/oauth-protected-resource")

        body = response.json()
        assert body["resource"].endswith("/mcp")
        assert body["bearer_methods_supported"] == ["header"]


class TestAgentExecute:

    def test_requires_token(self, settings, sink):
        with TestClient(create_app(_services(settings, sink))) as client:
            response = client.post("/api/v1/agents/agent-1/execute", json={"user_input": "hi"})

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_unknown_agent(self, settings, sink, auth_headers):
        with TestClient(create_app(_services(settings, sink))) as client:
            response = client.post("/api/v1/agents/nope/execute", json={"user_input": "hi"}, headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["detail"] == "Agent nope not found"

    def test_batch_reply(self, settings, sink, auth_headers):
        model = ScriptedClient([ModelResponse(text="Hello there.", usage=Usage(input_tokens=5, output_tokens=3))])
        services = _services(settings, sink, model)

        with TestClient(create_app(services)) as client:
            response = client.post("/api/v1/agents/agent-1/execute", json={"user_input": "hi"}, headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["role"] == "assistant"
        assert body["content"] == [{"type": "text", "text": {"value": "Hello there."}}]
        assert body["id"].startswith("msg_")
        assert body["usage"] == {"input_tokens": 5, "output_tokens": 3}

    def test_json_reply(self, settings, sink, auth_headers):
        model = ScriptedClient([ModelResponse(text='{"answer": 42}')])

        with TestClient(create_app(_services(settings, sink, model))) as client:
            response = client.post(
                "/api/v1/agents/agent-1/execute",
                json={"user_input": "answer?", "response_format": {"type": "json_object"}},
                headers=auth_headers,
            )

        assert response.json()["message_type"] == "json"
        assert response.json()["data"] == {"answer": 42}

    def test_missing_credential_is_an_error_reply(self, settings, sink, auth_headers):
        services = _services(settings, sink)
        services.agents.add_agent(AgentProfile(
            id="agent-2", name="Claude", tenant_id="tenant-1", model_provider="anthropic", model_id="claude-haiku-4-5",
        ))

        with TestClient(create_app(services)) as client:
            response = client.post("/api/v1/agents/agent-2/execute", json={"user_input": "hi"}, headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["message_type"] == "error"
        assert body["content"][0]["text"]["value"] == "anthropic API key not found. Please add your API key in settings."

    def test_unparseable_json_is_an_error_reply(self, settings, sink, auth_headers):
        model = ScriptedClient([ModelResponse(text="no json here", usage=Usage(input_tokens=500, output_tokens=80))])
        services = _services(settings, sink, model)

        with TestClient(create_app(services)) as client:
            response = client.post(
                "/api/v1/agents/agent-1/execute",
                json={"user_input": "answer?", "response_format": {"type": "json_object"}},
                headers=auth_headers,
            )

        assert response.status_code == 200
        body = response.json()
        assert body["message_type"] == "error"
        assert body["content"][0]["text"]["value"] == "Model response did not contain a JSON object"
        assert services.cost_ledger.records["tenant-1"][0].input_tokens == 500

    def test_json_schema_reply(self, settings, sink, auth_headers):
        model = ScriptedClient([ModelResponse(text='{"answer": 42}')])
        schema = {"type": "object", "properties": {"answer": {"type": "integer"}}, "required": ["answer"]}

        with TestClient(create_app(_services(settings, sink, model))) as client:
            response = client.post(
                "/api/v1/agents/agent-1/execute",
                json={"user_input": "answer?", "response_format": {"type": "json_schema", "schema": schema}},
                headers=auth_headers,
            )

        assert response.status_code == 200
        assert response.json()["message_type"] == "json"
        assert response.json()["data"] == {"answer": 42}

    def test_unexpected_failure_is_an_error_reply(self, settings, sink, auth_headers):
        services = _services(settings, sink)
        services.orchestrator.run = AsyncMock(side_effect=RuntimeError("attachment host unreachable"))

        with TestClient(create_app(services)) as client:
            response = client.post("/api/v1/agents/agent-1/execute", json={"user_input": "hi"}, headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["message_type"] == "error"
        assert body["content"][0]["text"]["value"].endswith("attachment host unreachable")


class TestSessionMessages:

    def test_streamed_turn_is_persisted(self, settings, sink, auth_headers):
        model = ScriptedClient(streams=[[
            StreamEvent(type="text_delta", text="Streaming "),
            StreamEvent(type="text_delta", text="works."),
            StreamEvent(type="usage", usage=Usage(input_tokens=8, output_tokens=2)),
            StreamEvent(type="done"),
        ]])
        services = _services(settings, sink, model)
        session_id = services.session_store.create_session(
            SessionContext(tenant_id="tenant-1", user_id="user-1", agent_id="agent-1",
                           model_provider="openai", model_id="gpt-4.1-mini")
        )

        with TestClient(create_app(services)) as client:
            response = client.post(
                f"/api/v1/sessions/{session_id}/messages",
                json={"user_input": "stream please", "stream": True},
                headers=auth_headers,
            )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == "Streaming works."
        assert response.headers["X-Message-Id"].startswith("msg_")

        messages = asyncio.run(services.session_store.list_messages(session_id))
        assert [m.role for m in messages] == ["user", "assistant"]
        assert services.cost_ledger.records["tenant-1"][0].request_type.value == "streaming"

    def test_other_tenant_session(self, settings, sink, auth_headers):
        services = _services(settings, sink)
        session_id = services.session_store.create_session(SessionContext(tenant_id="tenant-2", agent_id="agent-1"))

        with TestClient(create_app(services)) as client:
            response = client.post(
                f"/api/v1/sessions/{session_id}/messages", json={"user_input": "hi"}, headers=auth_headers
            )

        assert response.status_code == 404
