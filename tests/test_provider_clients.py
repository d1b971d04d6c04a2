"""Wire-format tests for the vendor clients, served by httpx.MockTransport."""

import json

import httpx
import pytest

from core.exceptions import ProviderError, ProviderErrorKind
from llm.client import AnthropicClient, GoogleClient, OpenAIClient
from llm.models import Message, ModelRequest, ToolCall, ToolCallResult, ToolDefinition


TOOL = ToolDefinition(
    name="jira_fetchTickets",
    description="Fetch tickets",
    parameters={"type": "object", "properties": {"status": {"type": "string"}}},
)


def _transport(handler, captured):
    def wrapped(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return handler(request)
    return httpx.MockTransport(wrapped)


class TestOpenAIClient:

    @pytest.mark.asyncio
    async def test_complete_with_tool_call(self):
        captured = []

        def handler(request):
            return httpx.Response(200, json={
                "choices": [{
                    "message": {
                        "content": None,
                        "tool_calls": [{
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "jira_fetchTickets", "arguments": "{\"status\": \"open\"}"},
                        }],
                    },
                    "finish_reason": "tool_calls",
                }],
                "usage": {"prompt_tokens": 120, "completion_tokens": 15},
            })

        client = OpenAIClient(
            "sk-test", "gpt-5-mini", "https://api.openai.test/v1",
            options={"reasoning_effort": "low"}, transport=_transport(handler, captured),
        )
        response = await client.complete(ModelRequest(
            messages=[Message(role="user", content="show open tickets")],
            system="You are helpful",
            tools=[TOOL],
            temperature=0.2,
        ))

        assert response.tool_calls[0].name == "jira_fetchTickets"
        assert response.tool_calls[0].arguments == "{\"status\": \"open\"}"
        assert response.usage.input_tokens == 120
        assert response.usage.output_tokens == 15

        request = captured[0]
        assert str(request.url) == "https://api.openai.test/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["messages"][0] == {"role": "system", "content": "You are helpful"}
        assert body["tools"][0]["function"]["name"] == "jira_fetchTickets"
        assert body["reasoning_effort"] == "low"
        assert "temperature" not in body

    @pytest.mark.asyncio
    async def test_tool_transcript_encoding(self):
        captured = []
        client = OpenAIClient(
            "sk-test", "gpt-4o", "https://api.openai.test/v1",
            transport=_transport(lambda r: httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}), captured),
        )

        await client.complete(ModelRequest(messages=[
            Message(role="user", content="hi"),
            Message(role="assistant", tool_calls=[ToolCall(id="call_1", name="jira_fetchTickets", arguments={})]),
            Message(role="tool", tool_results=[ToolCallResult(tool_call_id="call_1", name="jira_fetchTickets", result=[1])]),
        ], json_mode=True))

        body = json.loads(captured[0].content)
        assert body["messages"][1]["tool_calls"][0]["function"]["arguments"] == "{}"
        assert body["messages"][2] == {"role": "tool", "tool_call_id": "call_1", "content": "[1]"}
        assert body["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_invalid_key_is_credential_error(self):
        def handler(request):
            return httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})

        client = OpenAIClient("bad", "gpt-4o", "https://api.openai.test/v1", transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderError) as exc_info:
            await client.complete(ModelRequest(messages=[Message(role="user", content="hi")]))

        assert exc_info.value.kind == ProviderErrorKind.CREDENTIAL
        assert exc_info.value.is_credential_error
        assert exc_info.value.upstream_status == 401

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        client = OpenAIClient(
            "sk", "gpt-4o", "https://api.openai.test/v1",
            transport=httpx.MockTransport(lambda r: httpx.Response(503, text="upstream overloaded")),
        )

        with pytest.raises(ProviderError) as exc_info:
            await client.complete(ModelRequest(messages=[Message(role="user", content="hi")]))

        assert exc_info.value.kind == ProviderErrorKind.TRANSIENT
        assert "upstream overloaded" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_stream_assembles_tool_calls(self):
        chunks = [
            {"choices": [{"delta": {"content": "Let me "}}]},
            {"choices": [{"delta": {"content": "check."}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "call_9", "function": {"name": "jira_fetchTickets", "arguments": "{\"sta"}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "tus\": \"open\"}"}}]}, "finish_reason": "tool_calls"}]},
            {"choices": [], "usage": {"prompt_tokens": 50, "completion_tokens": 9}},
        ]
        body = "".join(f"data: {json.dumps(chunk)}\n\n" for chunk in chunks) + "data: [DONE]\n\n"
        client = OpenAIClient(
            "sk", "gpt-4o", "https://api.openai.test/v1",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text=body)),
        )

        events = [event async for event in client.stream(ModelRequest(messages=[Message(role="user", content="hi")]))]

        assert "".join(e.text for e in events if e.type == "text_delta") == "Let me check."
        tool_calls = [e.tool_call for e in events if e.type == "tool_call"]
        assert tool_calls[0].id == "call_9"
        assert json.loads(tool_calls[0].arguments) == {"status": "open"}
        usage = [e.usage for e in events if e.type == "usage"][0]
        assert (usage.input_tokens, usage.output_tokens) == (50, 9)
        assert events[-1].type == "done"


class TestAnthropicClient:

    @pytest.mark.asyncio
    async def test_system_messages_are_lifted(self):
        captured = []

        def handler(request):
            return httpx.Response(200, json={
                "content": [
                    {"type": "text", "text": "Checking."},
                    {"type": "tool_use", "id": "toolu_1", "name": "jira_fetchTickets", "input": {"status": "open"}},
                ],
                "usage": {"input_tokens": 80, "output_tokens": 20},
                "stop_reason": "tool_use",
            })

        client = AnthropicClient(
            "sk-ant", "claude-sonnet-4-5-20250929", "https://api.anthropic.test/v1",
            transport=_transport(handler, captured), api_version="2023-06-01",
        )
        response = await client.complete(ModelRequest(
            messages=[Message(role="system", content="Be brief"), Message(role="user", content="tickets?")],
            tools=[TOOL],
        ))

        assert response.text == "Checking."
        assert response.tool_calls[0].arguments == {"status": "open"}
        assert response.usage.input_tokens == 80

        request = captured[0]
        assert str(request.url) == "https://api.anthropic.test/v1/messages"
        assert request.headers["x-api-key"] == "sk-ant"
        assert request.headers["anthropic-version"] == "2023-06-01"
        body = json.loads(request.content)
        assert body["system"] == "Be brief"
        assert body["messages"] == [{"role": "user", "content": "tickets?"}]
        assert body["tools"][0]["input_schema"]["properties"]["status"]["type"] == "string"

    @pytest.mark.asyncio
    async def test_tool_results_become_user_blocks(self):
        captured = []
        client = AnthropicClient(
            "sk-ant", "claude-haiku-4-5-20251001", "https://api.anthropic.test/v1",
            transport=_transport(lambda r: httpx.Response(200, json={"content": [], "usage": {}}), captured),
        )

        await client.complete(ModelRequest(messages=[
            Message(role="user", content="hi"),
            Message(role="assistant", tool_calls=[ToolCall(id="toolu_1", name="jira_fetchTickets", arguments="{\"a\": 1}")]),
            Message(role="tool", tool_results=[ToolCallResult(tool_call_id="toolu_1", name="jira_fetchTickets", result="Error: boom", is_error=True)]),
        ]))

        messages = json.loads(captured[0].content)["messages"]
        assert messages[1]["content"][0] == {"type": "tool_use", "id": "toolu_1", "name": "jira_fetchTickets", "input": {"a": 1}}
        assert messages[2] == {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "Error: boom", "is_error": True}],
        }

    @pytest.mark.asyncio
    async def test_invalid_key_message(self):
        def handler(request):
            return httpx.Response(401, json={"type": "error", "error": {"type": "authentication_error", "message": "invalid x-api-key"}})

        client = AnthropicClient("bad", "claude-haiku-4-5-20251001", "https://api.anthropic.test/v1", transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderError) as exc_info:
            await client.complete(ModelRequest(messages=[Message(role="user", content="hi")]))

        assert exc_info.value.is_credential_error
        assert exc_info.value.message == "anthropic API error (401): invalid x-api-key"

    @pytest.mark.asyncio
    async def test_stream_events(self):
        events = [
            {"type": "message_start", "message": {"usage": {"input_tokens": 40}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "toolu_2", "name": "jira_fetchTickets"}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": "{\"status\":"}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": " \"open\"}"}},
            {"type": "content_block_stop", "index": 1},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 12}},
            {"type": "message_stop"},
        ]
        body = "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events)
        client = AnthropicClient(
            "sk-ant", "claude-haiku-4-5-20251001", "https://api.anthropic.test/v1",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text=body)),
        )

        stream = [event async for event in client.stream(ModelRequest(messages=[Message(role="user", content="hi")]))]

        assert [e.text for e in stream if e.type == "text_delta"] == ["Hello"]
        tool_call = [e.tool_call for e in stream if e.type == "tool_call"][0]
        assert tool_call.arguments == {"status": "open"}
        usage = [e.usage for e in stream if e.type == "usage"][0]
        assert (usage.input_tokens, usage.output_tokens) == (40, 12)


class TestGoogleClient:

    @pytest.mark.asyncio
    async def test_generate_content(self):
        captured = []

        def handler(request):
            return httpx.Response(200, json={
                "candidates": [{
                    "content": {"parts": [
                        {"text": "Here you go"},
                        {"functionCall": {"name": "jira_fetchTickets", "args": {"status": "open"}}},
                    ]},
                    "finishReason": "STOP",
                }],
                "usageMetadata": {"promptTokenCount": 33, "candidatesTokenCount": 7},
            })

        client = GoogleClient(
            "g-key", "models/gemini-2.5-flash", "https://generativelanguage.test/v1beta",
            transport=_transport(handler, captured),
        )
        response = await client.complete(ModelRequest(
            messages=[Message(role="user", content="tickets?")],
            system="Be brief",
            tools=[TOOL],
            json_mode=True,
        ))

        assert response.text == "Here you go"
        assert response.tool_calls[0].arguments == {"status": "open"}
        assert (response.usage.input_tokens, response.usage.output_tokens) == (33, 7)

        request = captured[0]
        assert str(request.url) == "https://generativelanguage.test/v1beta/models/gemini-2.5-flash:generateContent"
        assert request.headers["x-goog-api-key"] == "g-key"
        body = json.loads(request.content)
        assert body["systemInstruction"] == {"parts": [{"text": "Be brief"}]}
        assert body["contents"] == [{"role": "user", "parts": [{"text": "tickets?"}]}]
        assert body["generationConfig"]["responseMimeType"] == "application/json"
        assert body["tools"][0]["functionDeclarations"][0]["name"] == "jira_fetchTickets"

    @pytest.mark.asyncio
    async def test_blocked_prompt(self):
        client = GoogleClient(
            "g-key", "models/gemini-2.5-flash", "https://generativelanguage.test/v1beta",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})),
        )

        with pytest.raises(ProviderError) as exc_info:
            await client.complete(ModelRequest(messages=[Message(role="user", content="hi")]))

        assert exc_info.value.kind == ProviderErrorKind.CONTENT_POLICY

    @pytest.mark.asyncio
    async def test_stream_replays_response(self):
        client = GoogleClient(
            "g-key", "models/gemini-2.5-flash", "https://generativelanguage.test/v1beta",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={
                "candidates": [{"content": {"parts": [{"text": "done"}]}}],
            })),
        )

        events = [event async for event in client.stream(ModelRequest(messages=[Message(role="user", content="hi")]))]

        assert [event.type for event in events] == ["text_delta", "usage", "done"]
