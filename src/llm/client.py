"""HTTP clients for the supported model vendors.

Each client speaks one vendor's native REST API over httpx and translates
between it and the provider-neutral ModelRequest/ModelResponse models.
"""

import base64
import json
import logging
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from core.exceptions import ProviderError, ProviderErrorKind, classify_provider_error
from .models import (
    ImagePart, FilePart, TextPart, Message, ModelProvider, ModelRequest,
    ModelResponse, StreamEvent, ToolCall, Usage,
)

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str:
    """Pull the vendor's error message out of a failed response."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or json.dumps(error)
    if isinstance(error, str):
        return error
    return response.text[:500]


def _arguments_as_dict(arguments: Any) -> Dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    try:
        parsed = json.loads(arguments or "{}")
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ProviderClient:
    """Base class for vendor clients.

    Subclasses implement `complete`; `stream` defaults to replaying a
    completed response as stream events.
    """

    provider: ModelProvider

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        options: Optional[Dict[str, Any]] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.options = dict(options or {})
        self.timeout = timeout
        self._transport = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _raise_for_response(self, status_code: int, message: str) -> None:
        kind = classify_provider_error(message, status_code)
        logger.error(f"{self.provider.value} error for model {self.model}: {status_code} - {message}")
        raise ProviderError(
            f"{self.provider.value} API error ({status_code}): {message}",
            provider=self.provider.value,
            model=self.model,
            kind=kind,
            status_code=status_code,
        )

    async def _post_json(self, url: str, headers: Dict[str, str], payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self._http() as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            raise ProviderError(
                f"{self.provider.value} request timed out: {e}",
                provider=self.provider.value,
                model=self.model,
                kind=ProviderErrorKind.TIMEOUT,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(
                f"{self.provider.value} request failed: {e}",
                provider=self.provider.value,
                model=self.model,
            ) from e

        if response.status_code != 200:
            self._raise_for_response(response.status_code, _error_message(response))
        return response.json()

    async def complete(self, request: ModelRequest) -> ModelResponse:
        raise NotImplementedError

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        response = await self.complete(request)
        if response.text:
            yield StreamEvent(type="text_delta", text=response.text)
        for tool_call in response.tool_calls:
            yield StreamEvent(type="tool_call", tool_call=tool_call)
        yield StreamEvent(type="usage", usage=response.usage)
        yield StreamEvent(type="done", finish_reason=response.finish_reason)


class OpenAIClient(ProviderClient):
    """OpenAI chat completions API."""

    provider = ModelProvider.OPENAI

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _encode_content(self, message: Message) -> Any:
        if isinstance(message.content, str):
            return message.content
        content = []
        for part in message.content:
            if isinstance(part, TextPart):
                content.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                content.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{part.mime_type};base64,{part.to_base64()}"},
                })
            elif isinstance(part, FilePart):
                encoded = base64.b64encode(part.data).decode("ascii")
                content.append({
                    "type": "file",
                    "file": {
                        "filename": part.file_name or "attachment",
                        "file_data": f"data:{part.mime_type};base64,{encoded}",
                    },
                })
        return content

    def _encode_messages(self, request: ModelRequest) -> List[Dict[str, Any]]:
        api_messages: List[Dict[str, Any]] = []
        if request.system:
            api_messages.append({"role": "system", "content": request.system})

        for msg in request.messages:
            if msg.role == "tool":
                for result in msg.tool_results:
                    api_messages.append({
                        "role": "tool",
                        "tool_call_id": result.tool_call_id,
                        "content": result.content_text(),
                    })
            elif msg.role == "assistant" and msg.tool_calls:
                api_messages.append({
                    "role": "assistant",
                    "content": msg.text() or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": tc.arguments if isinstance(tc.arguments, str) else json.dumps(tc.arguments),
                            },
                        }
                        for tc in msg.tool_calls
                    ],
                })
            else:
                api_messages.append({"role": msg.role, "content": self._encode_content(msg)})
        return api_messages

    def _payload(self, request: ModelRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": self._encode_messages(request),
            "max_completion_tokens": request.max_tokens,
        }
        if request.tools:
            payload["tools"] = [tool.to_openai_format() for tool in request.tools]
            payload["tool_choice"] = "auto"
        if request.temperature is not None and "reasoning_effort" not in self.options:
            payload["temperature"] = request.temperature
        if "reasoning_effort" in self.options:
            payload["reasoning_effort"] = self.options["reasoning_effort"]
        if request.json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    async def complete(self, request: ModelRequest) -> ModelResponse:
        result = await self._post_json(
            f"{self.base_url}/chat/completions", self._headers(), self._payload(request)
        )

        choice = (result.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        tool_calls = [
            ToolCall(
                id=tc.get("id") or str(uuid.uuid4()),
                name=tc["function"]["name"],
                arguments=tc["function"].get("arguments") or "{}",
            )
            for tc in message.get("tool_calls") or []
        ]
        usage = result.get("usage") or {}
        return ModelResponse(
            text=message.get("content") or "",
            tool_calls=tool_calls,
            usage=Usage(
                input_tokens=usage.get("prompt_tokens", 0),
                output_tokens=usage.get("completion_tokens", 0),
            ),
            finish_reason=choice.get("finish_reason"),
        )

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        payload = self._payload(request)
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}

        pending: Dict[int, Dict[str, str]] = {}
        usage = Usage()
        finish_reason = None

        async with self._http() as client:
            async with client.stream(
                "POST", f"{self.base_url}/chat/completions", headers=self._headers(), json=payload
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    self._raise_for_response(response.status_code, _error_message(response))

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    chunk = json.loads(data)
                    if chunk.get("usage"):
                        usage = Usage(
                            input_tokens=chunk["usage"].get("prompt_tokens", 0),
                            output_tokens=chunk["usage"].get("completion_tokens", 0),
                        )
                    for choice in chunk.get("choices") or []:
                        delta = choice.get("delta") or {}
                        if delta.get("content"):
                            yield StreamEvent(type="text_delta", text=delta["content"])
                        for fragment in delta.get("tool_calls") or []:
                            slot = pending.setdefault(fragment.get("index", 0), {"id": "", "name": "", "arguments": ""})
                            if fragment.get("id"):
                                slot["id"] = fragment["id"]
                            function = fragment.get("function") or {}
                            slot["name"] += function.get("name") or ""
                            slot["arguments"] += function.get("arguments") or ""
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]

        for index in sorted(pending):
            slot = pending[index]
            yield StreamEvent(
                type="tool_call",
                tool_call=ToolCall(id=slot["id"] or str(uuid.uuid4()), name=slot["name"], arguments=slot["arguments"] or "{}"),
            )
        yield StreamEvent(type="usage", usage=usage)
        yield StreamEvent(type="done", finish_reason=finish_reason)


class AnthropicClient(ProviderClient):
    """Anthropic messages API.

    System-role messages in the transcript are lifted into the top-level
    `system` field, which is the only place the API accepts them.
    """

    provider = ModelProvider.ANTHROPIC

    def __init__(self, *args, api_version: str = "2023-06-01", **kwargs):
        super().__init__(*args, **kwargs)
        self.api_version = api_version

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "content-type": "application/json",
        }

    def _encode_content(self, message: Message) -> Any:
        if isinstance(message.content, str):
            return message.content
        content = []
        for part in message.content:
            if isinstance(part, TextPart):
                content.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                content.append({
                    "type": "image",
                    "source": {"type": "base64", "media_type": part.mime_type, "data": part.to_base64()},
                })
            elif isinstance(part, FilePart):
                content.append({
                    "type": "document",
                    "source": {
                        "type": "base64",
                        "media_type": part.mime_type,
                        "data": base64.b64encode(part.data).decode("ascii"),
                    },
                })
        return content

    def _payload(self, request: ModelRequest) -> Dict[str, Any]:
        system_parts = [request.system] if request.system else []
        api_messages: List[Dict[str, Any]] = []

        for msg in request.messages:
            if msg.role == "system":
                system_parts.append(msg.text())
            elif msg.role == "tool":
                api_messages.append({
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": result.tool_call_id,
                            "content": result.content_text(),
                            "is_error": result.is_error,
                        }
                        for result in msg.tool_results
                    ],
                })
            elif msg.role == "assistant" and msg.tool_calls:
                content = []
                if msg.text():
                    content.append({"type": "text", "text": msg.text()})
                for tc in msg.tool_calls:
                    content.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": _arguments_as_dict(tc.arguments),
                    })
                api_messages.append({"role": "assistant", "content": content})
            else:
                api_messages.append({"role": msg.role, "content": self._encode_content(msg)})

        if request.json_mode:
            system_parts.append("Respond only with a single valid JSON object.")

        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": request.max_tokens,
            "messages": api_messages,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if request.tools:
            payload["tools"] = [tool.to_anthropic_format() for tool in request.tools]
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    async def complete(self, request: ModelRequest) -> ModelResponse:
        result = await self._post_json(f"{self.base_url}/messages", self._headers(), self._payload(request))

        tool_calls = []
        text_response = ""
        for content_block in result.get("content", []):
            if content_block.get("type") == "tool_use":
                tool_calls.append(ToolCall(
                    name=content_block.get("name"),
                    arguments=content_block.get("input", {}),
                    id=content_block.get("id", str(uuid.uuid4()))
                ))
            elif content_block.get("type") == "text":
                text_response += content_block.get("text", "")

        usage = result.get("usage", {})
        return ModelResponse(
            text=text_response,
            tool_calls=tool_calls,
            usage=Usage(
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
            ),
            finish_reason=result.get("stop_reason"),
        )

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        payload = self._payload(request)
        payload["stream"] = True

        blocks: Dict[int, Dict[str, str]] = {}
        input_tokens = 0
        output_tokens = 0
        finish_reason = None

        async with self._http() as client:
            async with client.stream(
                "POST", f"{self.base_url}/messages", headers=self._headers(), json=payload
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    self._raise_for_response(response.status_code, _error_message(response))

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    event = json.loads(line[len("data:"):].strip())
                    event_type = event.get("type")

                    if event_type == "message_start":
                        input_tokens = event.get("message", {}).get("usage", {}).get("input_tokens", 0)
                    elif event_type == "content_block_start":
                        block = event.get("content_block", {})
                        if block.get("type") == "tool_use":
                            blocks[event.get("index", 0)] = {"id": block.get("id", ""), "name": block.get("name", ""), "json": ""}
                    elif event_type == "content_block_delta":
                        delta = event.get("delta", {})
                        if delta.get("type") == "text_delta":
                            yield StreamEvent(type="text_delta", text=delta.get("text", ""))
                        elif delta.get("type") == "input_json_delta":
                            slot = blocks.get(event.get("index", 0))
                            if slot is not None:
                                slot["json"] += delta.get("partial_json", "")
                    elif event_type == "content_block_stop":
                        slot = blocks.pop(event.get("index", 0), None)
                        if slot is not None:
                            yield StreamEvent(
                                type="tool_call",
                                tool_call=ToolCall(
                                    id=slot["id"] or str(uuid.uuid4()),
                                    name=slot["name"],
                                    arguments=_arguments_as_dict(slot["json"]),
                                ),
                            )
                    elif event_type == "message_delta":
                        output_tokens = event.get("usage", {}).get("output_tokens", output_tokens)
                        finish_reason = event.get("delta", {}).get("stop_reason") or finish_reason
                    elif event_type == "error":
                        message = event.get("error", {}).get("message", "stream error")
                        self._raise_for_response(response.status_code, message)

        yield StreamEvent(type="usage", usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens))
        yield StreamEvent(type="done", finish_reason=finish_reason)


class GoogleClient(ProviderClient):
    """Google Gemini generateContent API. Streaming replays the full response."""

    provider = ModelProvider.GOOGLE

    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    def _payload(self, request: ModelRequest) -> Dict[str, Any]:
        system_parts = [request.system] if request.system else []
        contents: List[Dict[str, Any]] = []

        for msg in request.messages:
            if msg.role == "system":
                system_parts.append(msg.text())
                continue
            if msg.role == "tool":
                contents.append({
                    "role": "user",
                    "parts": [
                        {"functionResponse": {"name": result.name, "response": {"content": result.result}}}
                        for result in msg.tool_results
                    ],
                })
                continue

            parts: List[Dict[str, Any]] = []
            for part in msg.parts():
                if isinstance(part, TextPart):
                    parts.append({"text": part.text})
                elif isinstance(part, ImagePart):
                    parts.append({"inline_data": {"mime_type": part.mime_type, "data": part.to_base64()}})
                elif isinstance(part, FilePart):
                    parts.append({
                        "inline_data": {
                            "mime_type": part.mime_type,
                            "data": base64.b64encode(part.data).decode("ascii"),
                        }
                    })
            for tc in msg.tool_calls:
                parts.append({"functionCall": {"name": tc.name, "args": _arguments_as_dict(tc.arguments)}})
            contents.append({"role": "model" if msg.role == "assistant" else "user", "parts": parts})

        generation_config: Dict[str, Any] = {"maxOutputTokens": request.max_tokens}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.json_mode:
            generation_config["responseMimeType"] = "application/json"

        payload: Dict[str, Any] = {"contents": contents, "generationConfig": generation_config}
        if system_parts:
            payload["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}
        if request.tools:
            payload["tools"] = [{"functionDeclarations": [tool.to_gemini_format() for tool in request.tools]}]
        return payload

    async def complete(self, request: ModelRequest) -> ModelResponse:
        result = await self._post_json(
            f"{self.base_url}/{self.model}:generateContent", self._headers(), self._payload(request)
        )

        candidates = result.get("candidates") or []
        if not candidates:
            feedback = result.get("promptFeedback", {})
            reason = feedback.get("blockReason")
            if reason:
                raise ProviderError(
                    f"google blocked the prompt: {reason}",
                    provider=self.provider.value,
                    model=self.model,
                    kind=ProviderErrorKind.CONTENT_POLICY,
                )

        candidate = candidates[0] if candidates else {}
        text_response = ""
        tool_calls = []
        for part in (candidate.get("content") or {}).get("parts", []):
            if "text" in part:
                text_response += part["text"]
            elif "functionCall" in part:
                call = part["functionCall"]
                tool_calls.append(ToolCall(
                    id=str(uuid.uuid4()),
                    name=call.get("name", ""),
                    arguments=call.get("args") or {},
                ))

        usage = result.get("usageMetadata") or {}
        return ModelResponse(
            text=text_response,
            tool_calls=tool_calls,
            usage=Usage(
                input_tokens=usage.get("promptTokenCount", 0),
                output_tokens=usage.get("candidatesTokenCount", 0),
            ),
            finish_reason=candidate.get("finishReason"),
        )
