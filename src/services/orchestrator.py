"""Orchestration loop for agent conversations.

One call to `run` drives a full conversational turn:

    validate -> ingest attachments -> persist user turn -> tool set (cached)
    -> resolve model -> trim history -> model/tool steps (bounded)
    -> clean text -> persist assistant turn -> record cost -> return

Batch turns return an AssistantReply once everything is persisted. Streaming
turns return a StreamHandle at once; a background task persists the turn
and records cost when the stream finishes.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict

from core.config import Settings, get_settings
from core.context import ExecutionContext, is_persisted_session_id
from core.exceptions import (
    AuthenticationError, CapacityError, NotFoundError, ProviderError, ProviderErrorKind, ValidationError,
)
from llm.cost_tracking import CostAccountant, RequestType, elapsed_ms
from llm.models import (
    Message, ModelProvider, ModelRequest, OrchestrationMode, ToolCall, ToolCallResult, Usage,
)
from llm.providers import ModelHandle, ModelResolver
from llm.token_window import trim
from .action_executor import ActionExecutor
from .action_registry import ActionRegistry, ToolSet, ToolSetCache
from .attachments import Attachment, AttachmentIngestor
from .collaborators import AgentProfile, CredentialStore, SessionStore
from .text_processing import check_json_schema, clean_action_annotations, extract_json_object

logger = logging.getLogger(__name__)

CAPACITY_MESSAGE = (
    "Your message is too large to process. Please shorten it or split it into smaller parts."
)
TIMEOUT_MESSAGE = "The assistant took too long to respond. Please try again."
EMPTY_RESPONSE_MESSAGE = (
    "The model returned an empty response. Please check the agent's model configuration and API key."
)
STRUCTURED_FORMATS = ("json_object", "json_schema")


def invalid_key_message(provider: str) -> str:
    return f"Invalid {provider} API key. Please update your API key in settings."


def missing_key_message(provider: str) -> str:
    return f"{provider} API key not found. Please add your API key in settings."


def user_facing_error(error: BaseException, provider: Optional[str] = None) -> str:
    """Assistant-readable text for a failed turn."""
    if isinstance(error, ProviderError):
        provider = provider or error.provider
        if error.is_credential_error:
            return invalid_key_message(provider)
        if error.kind == ProviderErrorKind.TIMEOUT:
            return TIMEOUT_MESSAGE
    return f"Sorry, something went wrong while generating a response: {getattr(error, 'message', None) or error}"


# =============================================================================
# Turn planning
# =============================================================================

class SystemPromptPlacement(str, Enum):
    INLINE = "inline"      # system message at the head of the message list
    SEPARATE = "separate"  # dedicated system field on the request


@dataclass(frozen=True)
class TurnPlan:
    """Per-turn assembly choices, fixed before the first step."""
    provider: ModelProvider
    mode: OrchestrationMode
    system_placement: SystemPromptPlacement
    stream: bool


def plan_turn(provider: ModelProvider, mode: OrchestrationMode) -> TurnPlan:
    placement = SystemPromptPlacement.INLINE if provider == ModelProvider.ANTHROPIC else SystemPromptPlacement.SEPARATE
    return TurnPlan(
        provider=provider,
        mode=mode,
        system_placement=placement,
        stream=mode == OrchestrationMode.STREAMING,
    )


def assemble_request(
    plan: TurnPlan,
    system_prompt: str,
    history: List[Message],
    tool_set: ToolSet,
    max_tokens: int,
    json_mode: bool = False,
) -> ModelRequest:
    messages = list(history)
    system = None
    if system_prompt:
        if plan.system_placement == SystemPromptPlacement.INLINE:
            messages.insert(0, Message(role="system", content=system_prompt))
        else:
            system = system_prompt
    return ModelRequest(
        messages=messages,
        system=system,
        tools=list(tool_set.values()),
        max_tokens=max_tokens,
        json_mode=json_mode,
    )


def structured_output(response_format: Optional[Dict[str, Any]]) -> Tuple[bool, Optional[Dict[str, Any]]]:
    """(json_mode, schema) requested by a response format.

    `json_object` asks for any JSON object; `json_schema` additionally
    carries a Draft 7 schema the object must satisfy.
    """
    if not response_format or response_format.get("type") not in STRUCTURED_FORMATS:
        return False, None
    schema = response_format.get("schema") if response_format["type"] == "json_schema" else None
    if schema is not None:
        check_json_schema(schema)
    return True, schema


def schema_instructions(schema: Dict[str, Any]) -> str:
    return f"Respond only with a JSON object that matches this JSON Schema:\n{json.dumps(schema)}"


# =============================================================================
# Results
# =============================================================================

class AssistantReply(BaseModel):
    """Assistant-shaped response returned to conversational callers."""
    model_config = ConfigDict(protected_namespaces=())

    id: str
    role: str = "assistant"
    content: List[Dict[str, Any]]
    message_type: str = "text"
    tool_calls: List[ToolCall] = []
    tool_results: List[ToolCallResult] = []
    data: Optional[Dict[str, Any]] = None
    usage: Usage = Usage()

    @property
    def text(self) -> str:
        return "".join(part.get("text", {}).get("value", "") for part in self.content)


def new_reply_id() -> str:
    return f"msg_{uuid.uuid4().hex[:24]}"


def build_reply(
    text: str,
    message_type: str = "text",
    tool_calls: Optional[List[ToolCall]] = None,
    tool_results: Optional[List[ToolCallResult]] = None,
    usage: Optional[Usage] = None,
    data: Optional[Dict[str, Any]] = None,
    reply_id: Optional[str] = None,
) -> AssistantReply:
    return AssistantReply(
        id=reply_id or new_reply_id(),
        content=[{"type": "text", "text": {"value": text}}],
        message_type=message_type,
        tool_calls=tool_calls or [],
        tool_results=tool_results or [],
        usage=usage or Usage(),
        data=data,
    )


@dataclass
class LoopOutcome:
    """Accumulated state of the model/tool step loop."""
    texts: List[str] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[ToolCallResult] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    steps: int = 0

    @property
    def text(self) -> str:
        return "\n\n".join(t for t in self.texts if t.strip())

    @property
    def has_tool_activity(self) -> bool:
        return bool(self.tool_calls or self.tool_results)


class StreamHandle:
    """Open stream of assistant text plus futures for the final turn.

    Iterate the handle for text chunks. `text`, `tool_calls`,
    `tool_results` and `usage` resolve when the model is done; on failure
    they carry the exception and the iterator ends with a readable error.
    """

    def __init__(self, reply_id: Optional[str] = None):
        loop = asyncio.get_running_loop()
        self.id = reply_id or new_reply_id()
        self._chunks: asyncio.Queue = asyncio.Queue()
        self.text: asyncio.Future = loop.create_future()
        self.tool_calls: asyncio.Future = loop.create_future()
        self.tool_results: asyncio.Future = loop.create_future()
        self.usage: asyncio.Future = loop.create_future()

    @classmethod
    def completed(cls, text: str) -> "StreamHandle":
        handle = cls()
        handle.push(text)
        handle.resolve(text, [], [], Usage())
        return handle

    def push(self, chunk: str) -> None:
        if chunk:
            self._chunks.put_nowait(chunk)

    def resolve(self, text: str, tool_calls: List[ToolCall], tool_results: List[ToolCallResult], usage: Usage) -> None:
        self.text.set_result(text)
        self.tool_calls.set_result(tool_calls)
        self.tool_results.set_result(tool_results)
        self.usage.set_result(usage)
        self._chunks.put_nowait(None)

    def fail(self, error: BaseException, user_message: str) -> None:
        self.push(user_message)
        for future in (self.text, self.tool_calls, self.tool_results, self.usage):
            if not future.done():
                future.set_exception(error)
        self._chunks.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            chunk = await self._chunks.get()
            if chunk is None:
                return
            yield chunk


# =============================================================================
# Orchestrator
# =============================================================================

class Orchestrator:
    """Drives conversational turns between a model and the action executor."""

    def __init__(
        self,
        registry: ActionRegistry,
        executor: ActionExecutor,
        resolver: ModelResolver,
        cost_accountant: CostAccountant,
        session_store: SessionStore,
        credentials: CredentialStore,
        ingestor: AttachmentIngestor,
        tool_set_cache: Optional[ToolSetCache] = None,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.executor = executor
        self.resolver = resolver
        self.cost_accountant = cost_accountant
        self.session_store = session_store
        self.credentials = credentials
        self.ingestor = ingestor
        self.settings = settings or get_settings()
        self.tool_set_cache = tool_set_cache or ToolSetCache(self.settings.TOOL_SET_CACHE_MAX_ENTRIES)
        self._background: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Persistence helpers
    # -------------------------------------------------------------------------

    async def _persist(self, context: ExecutionContext, message: Message) -> None:
        if context.is_stateless:
            return
        await self.session_store.append_message(context.session_id, message)

    async def _store_system_message(self, context: ExecutionContext, text: str) -> None:
        """Record an error for audit; a storage failure is only logged."""
        if context.is_stateless:
            return
        try:
            await self.session_store.append_message(
                context.session_id, Message(role="system", content=text, message_type="error")
            )
        except Exception as e:
            logger.error(f"Could not store system message in session {context.session_id}: {e}")

    async def _history(self, context: ExecutionContext, user_message: Message) -> List[Message]:
        """Conversation history as the model should see it."""
        if context.is_stateless:
            return [user_message]

        history = []
        for message in await self.session_store.list_messages(context.session_id):
            if message.role == "user":
                history.append(message)
            elif message.role == "assistant" and message.text().strip():
                # Tool payloads of past turns are not replayed
                history.append(Message(role="assistant", content=message.text()))
        return history

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _run_tools(
        self, tool_calls: List[ToolCall], context: ExecutionContext, tool_set: ToolSet
    ) -> List[ToolCallResult]:
        outcomes = await asyncio.gather(
            *(self.executor.execute(call, context, tool_set) for call in tool_calls)
        )
        return [
            ToolCallResult(
                tool_call_id=call.id,
                name=call.name,
                result=outcome.result,
                is_error=not outcome.success,
            )
            for call, outcome in zip(tool_calls, outcomes)
        ]

    def _next_transcript(
        self, request: ModelRequest, text: str, tool_calls: List[ToolCall], results: List[ToolCallResult]
    ) -> ModelRequest:
        messages = list(request.messages)
        messages.append(Message(role="assistant", content=text, tool_calls=tool_calls))
        messages.append(Message(role="tool", tool_results=results))
        return request.model_copy(update={"messages": messages})

    async def _drive(
        self, handle: ModelHandle, request: ModelRequest, context: ExecutionContext, tool_set: ToolSet
    ) -> LoopOutcome:
        """Batch step loop, bounded by ORCHESTRATION_MAX_STEPS model calls."""
        outcome = LoopOutcome()
        for _ in range(self.settings.ORCHESTRATION_MAX_STEPS):
            response = await handle.client.complete(request)
            outcome.steps += 1
            outcome.usage = outcome.usage + response.usage
            if response.text:
                outcome.texts.append(response.text)
            if not response.has_tool_calls():
                return outcome

            results = await self._run_tools(response.tool_calls, context, tool_set)
            outcome.tool_calls.extend(response.tool_calls)
            outcome.tool_results.extend(results)
            request = self._next_transcript(request, response.text, response.tool_calls, results)

        logger.info(
            f"Step bound of {self.settings.ORCHESTRATION_MAX_STEPS} reached in session {context.session_id}"
        )
        return outcome

    async def _drive_stream(
        self,
        handle: ModelHandle,
        request: ModelRequest,
        context: ExecutionContext,
        tool_set: ToolSet,
        stream_handle: StreamHandle,
    ) -> None:
        """Streaming step loop; always resolves or fails `stream_handle`."""
        outcome = LoopOutcome()
        try:
            for _ in range(self.settings.ORCHESTRATION_MAX_STEPS):
                step_text = ""
                step_calls: List[ToolCall] = []
                async for event in handle.client.stream(request):
                    if event.type == "text_delta":
                        step_text += event.text
                        stream_handle.push(event.text)
                    elif event.type == "tool_call" and event.tool_call is not None:
                        step_calls.append(event.tool_call)
                    elif event.type == "usage" and event.usage is not None:
                        outcome.usage = outcome.usage + event.usage
                outcome.steps += 1
                if step_text:
                    outcome.texts.append(step_text)
                if not step_calls:
                    break

                results = await self._run_tools(step_calls, context, tool_set)
                outcome.tool_calls.extend(step_calls)
                outcome.tool_results.extend(results)
                request = self._next_transcript(request, step_text, step_calls, results)

            stream_handle.resolve(outcome.text, outcome.tool_calls, outcome.tool_results, outcome.usage)
        except Exception as e:
            logger.error(
                f"Stream failed in session {context.session_id} ({handle.provider.value}/{handle.model}): {e}"
            )
            stream_handle.fail(e, user_facing_error(e, handle.provider.value))

    # -------------------------------------------------------------------------
    # Turn
    # -------------------------------------------------------------------------

    async def _validate(self, agent: AgentProfile, context: ExecutionContext) -> None:
        if agent is None:
            raise NotFoundError("Agent not found")
        if agent.tenant_id != context.tenant_id:
            raise NotFoundError(f"Agent {agent.id} not found")
        if context.agent_id and context.agent_id != agent.id:
            raise ValidationError(f"Context is bound to agent {context.agent_id}, not {agent.id}")
        if context.is_stateless:
            return
        if not is_persisted_session_id(context.session_id):
            raise NotFoundError(f"Session {context.session_id} not found")
        session = await self.session_store.get_context_for_session(context.session_id)
        if session.tenant_id != context.tenant_id or session.agent_id != agent.id:
            logger.warning(
                f"Rejected turn on session {context.session_id} for tenant {context.tenant_id}, agent {agent.id}"
            )
            raise NotFoundError(f"Session {context.session_id} not found")

    async def _resolve_model(self, agent: AgentProfile, context: ExecutionContext) -> ModelHandle:
        provider_key = agent.model_provider or self.settings.DEFAULT_LLM_PROVIDER
        model_id = agent.model_id or self.settings.DEFAULT_LLM_MODEL
        try:
            provider = self.resolver.lookup(provider_key, model_id).provider.value
        except ValueError as e:
            raise ValidationError(str(e), details={"provider": provider_key, "model": model_id})

        credential = await self.credentials.get_api_key(context.tenant_id, provider)
        if not credential:
            message = missing_key_message(provider)
            await self._store_system_message(context, message)
            raise AuthenticationError(message, details={"provider": provider})
        return self.resolver.resolve(provider_key, model_id, credential)

    async def run(
        self,
        agent: AgentProfile,
        context: ExecutionContext,
        user_input: str,
        attachments: Optional[List[Attachment]] = None,
        mode: OrchestrationMode = OrchestrationMode.BATCH,
        response_format: Optional[Dict[str, Any]] = None,
        system_prompt_override: Optional[str] = None,
    ) -> Union[AssistantReply, StreamHandle]:
        """Run one conversational turn.

        Raises:
            AuthenticationError: missing or rejected provider credential
            CapacityError: the newest message alone exceeds the token budget
            ProviderError: any other model vendor failure (including timeout)
        """
        started = time.monotonic()
        await self._validate(agent, context)
        json_mode, response_schema = structured_output(response_format)
        if context.agent_id is None:
            context = context.model_copy(update={"agent_id": agent.id})

        ingested = await self.ingestor.ingest(attachments)
        if ingested.short_circuit:
            await self._persist(context, Message(role="user", content=user_input))
            await self._persist(context, Message(role="assistant", content=ingested.acknowledgement))
            if mode == OrchestrationMode.STREAMING:
                return StreamHandle.completed(ingested.acknowledgement)
            return build_reply(ingested.acknowledgement)

        user_message = Message(
            role="user",
            content=ingested.user_content(user_input) if attachments else user_input,
        )
        await self._persist(context, user_message)

        tool_set = await self.tool_set_cache.get_or_build(self.registry, context, agent.allowed_action_ids)
        handle = await self._resolve_model(agent, context)

        max_prompt_tokens = agent.max_tokens or self.settings.DEFAULT_MAX_PROMPT_TOKENS
        history, tokens_used = trim(await self._history(context, user_message), max_prompt_tokens)
        if not history:
            await self._store_system_message(context, CAPACITY_MESSAGE)
            raise CapacityError(CAPACITY_MESSAGE, details={"max_tokens": max_prompt_tokens})

        plan = plan_turn(handle.provider, mode)
        prompt = system_prompt_override if system_prompt_override is not None else agent.prompt_text
        if prompt:
            prompt = await self.executor.renderer.render(prompt, context.session_id)
        if response_schema:
            prompt = "\n\n".join(p for p in (prompt, schema_instructions(response_schema)) if p)
        request = assemble_request(
            plan, prompt, history, tool_set, self.settings.DEFAULT_MAX_OUTPUT_TOKENS, json_mode
        )
        logger.debug(
            f"Turn in session {context.session_id}: {handle.provider.value}/{handle.model}, "
            f"{len(history)} messages (~{tokens_used} tokens), {len(tool_set)} tools"
        )

        if plan.stream:
            stream_handle = StreamHandle()
            self._spawn(self._drive_stream(handle, request, context, tool_set, stream_handle))
            self._spawn(self._finalize_stream(stream_handle, handle, context, json_mode, response_schema, started))
            return stream_handle

        try:
            outcome = await asyncio.wait_for(
                self._drive(handle, request, context, tool_set),
                timeout=self.settings.ORCHESTRATION_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error(f"Turn timed out in session {context.session_id} ({handle.provider.value}/{handle.model})")
            await self._store_system_message(context, TIMEOUT_MESSAGE)
            raise ProviderError(
                TIMEOUT_MESSAGE, provider=handle.provider.value, model=handle.model, kind=ProviderErrorKind.TIMEOUT
            )
        except ProviderError as e:
            raise await self._provider_failure(e, handle, context)

        return await self._complete_turn(
            context, handle, outcome, json_mode, started, RequestType.NON_STREAMING, response_schema=response_schema
        )

    async def _provider_failure(
        self, error: ProviderError, handle: ModelHandle, context: ExecutionContext
    ) -> BaseException:
        """Exception to raise for a provider failure; credential failures become AuthenticationError."""
        provider = handle.provider.value
        if error.is_credential_error:
            message = invalid_key_message(provider)
            await self._store_system_message(context, message)
            logger.warning(f"Credential rejected by {provider} for tenant {context.tenant_id}")
            return AuthenticationError(message, details={"provider": provider, "model": handle.model})
        logger.error(
            f"Provider error in session {context.session_id} ({provider}/{handle.model}): {error.message}"
        )
        return error

    async def _complete_turn(
        self,
        context: ExecutionContext,
        handle: ModelHandle,
        outcome: LoopOutcome,
        json_mode: bool,
        started: float,
        request_type: RequestType,
        reply_id: Optional[str] = None,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> AssistantReply:
        """Price, post-process and persist a finished turn."""
        text = clean_action_annotations(outcome.text)
        # One cost record per turn, whatever the reply turns out to be
        await self._record_cost(context, handle, outcome, started, request_type)

        if not text and not outcome.has_tool_activity:
            logger.error(
                f"Empty response with no tool activity in session {context.session_id} "
                f"({handle.provider.value}/{handle.model})"
            )
            await self._store_system_message(context, EMPTY_RESPONSE_MESSAGE)
            return build_reply(EMPTY_RESPONSE_MESSAGE, message_type="error", usage=outcome.usage, reply_id=reply_id)

        data = None
        if json_mode:
            try:
                data = extract_json_object(text, response_schema)
            except ValidationError as e:
                logger.error(
                    f"Structured output rejected in session {context.session_id} "
                    f"({handle.provider.value}/{handle.model}): {e.message}"
                )
                await self._store_system_message(context, e.message)
                return build_reply(e.message, message_type="error", usage=outcome.usage, reply_id=reply_id)
            text = json.dumps(data)
            message_type = "json"
        elif outcome.tool_results:
            message_type = "tool_results"
        elif outcome.tool_calls:
            message_type = "tool_calls"
        else:
            message_type = "text"

        await self._persist(context, Message(
            role="assistant",
            content=text,
            tool_calls=outcome.tool_calls,
            tool_results=outcome.tool_results,
            message_type=message_type,
        ))

        return build_reply(
            text,
            message_type=message_type,
            tool_calls=outcome.tool_calls,
            tool_results=outcome.tool_results,
            usage=outcome.usage,
            data=data,
            reply_id=reply_id,
        )

    async def _record_cost(
        self,
        context: ExecutionContext,
        handle: ModelHandle,
        outcome: LoopOutcome,
        started: float,
        request_type: RequestType,
    ) -> None:
        await self.cost_accountant.record(
            tenant_id=context.tenant_id,
            agent_id=context.agent_id,
            session_id=None if context.is_stateless else context.session_id,
            user_id=context.user_id,
            provider=handle.provider.value,
            model=handle.model,
            input_tokens=outcome.usage.input_tokens,
            output_tokens=outcome.usage.output_tokens,
            duration_ms=elapsed_ms(started),
            tool_call_count=len(outcome.tool_calls),
            request_type=RequestType.STATELESS if context.is_stateless else request_type,
        )

    async def _finalize_stream(
        self,
        stream_handle: StreamHandle,
        handle: ModelHandle,
        context: ExecutionContext,
        json_mode: bool,
        response_schema: Optional[Dict[str, Any]],
        started: float,
    ) -> None:
        """Persist and price a streamed turn once its futures settle."""
        try:
            settled = await asyncio.gather(
                stream_handle.text, stream_handle.tool_calls, stream_handle.tool_results, stream_handle.usage,
                return_exceptions=True,
            )
            failures = [item for item in settled if isinstance(item, BaseException)]
            if failures:
                raise failures[0]
            text, tool_calls, tool_results, usage = settled
            outcome = LoopOutcome(texts=[text], tool_calls=tool_calls, tool_results=tool_results, usage=usage)
            await self._complete_turn(
                context, handle, outcome, json_mode, started, RequestType.STREAMING,
                reply_id=stream_handle.id, response_schema=response_schema,
            )
        except ProviderError as e:
            failure = await self._provider_failure(e, handle, context)
            if not isinstance(failure, AuthenticationError):
                await self._store_system_message(context, user_facing_error(e, handle.provider.value))
        except Exception as e:
            logger.error(f"Could not finalize streamed turn in session {context.session_id}: {e}")
            await self._store_system_message(context, user_facing_error(e, handle.provider.value))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for background stream tasks to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def run_for_session(
        self,
        session_id: str,
        user_input: str,
        tenant_id: Optional[str] = None,
        attachments: Optional[List[Attachment]] = None,
        mode: OrchestrationMode = OrchestrationMode.BATCH,
        response_format: Optional[Dict[str, Any]] = None,
        system_prompt_override: Optional[str] = None,
    ) -> Union[AssistantReply, StreamHandle]:
        """Run a turn for a persisted session, deriving agent and context from it."""
        session = await self.session_store.get_context_for_session(session_id)
        if tenant_id and session.tenant_id != tenant_id:
            raise NotFoundError(f"Session {session_id} not found")

        agent = AgentProfile(
            id=session.agent_id,
            name=session.agent_id,
            tenant_id=session.tenant_id,
            model_provider=session.model_provider,
            model_id=session.model_id,
            prompt_text=session.prompt_text,
            allowed_action_ids=session.allowed_action_ids,
            max_tokens=session.max_tokens,
            language=session.language,
        )
        context = ExecutionContext(
            tenant_id=session.tenant_id,
            session_id=session_id,
            user_id=session.user_id,
            agent_id=session.agent_id,
            language=session.language,
        )
        return await self.run(
            agent, context, user_input,
            attachments=attachments,
            mode=mode,
            response_format=response_format,
            system_prompt_override=system_prompt_override,
        )
