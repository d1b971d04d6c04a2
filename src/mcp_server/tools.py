"""MCP tools: declared input schemas plus thin adapters over the services."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from jsonschema import Draft7Validator

from core.context import ExecutionContext, is_persisted_session_id
from core.exceptions import AuthenticationError, CapacityError, NotFoundError, ProviderError, ValidationError
from core.security import Principal
from llm.models import OrchestrationMode, ToolCall
from llm.providers import list_models as available_models
from services.action_registry import sanitize_function_name
from services.attachments import Attachment
from services.collaborators import AgentProfile
from services.container import ServiceContainer
from services.orchestrator import user_facing_error

logger = logging.getLogger(__name__)


@dataclass
class MCPToolContext:
    principal: Optional[Principal]
    services: ServiceContainer

    @property
    def tenant_id(self) -> str:
        return self.principal.tenant_id

    @property
    def user_id(self) -> str:
        return self.principal.user_id


ToolHandler = Callable[[Dict[str, Any], MCPToolContext], Awaitable[Dict[str, Any]]]


@dataclass
class MCPTool:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: ToolHandler
    requires_auth: bool = True
    validator: Draft7Validator = field(init=False, repr=False)

    def __post_init__(self):
        Draft7Validator.check_schema(self.input_schema)
        self.validator = Draft7Validator(self.input_schema)

    def argument_errors(self, arguments: Dict[str, Any]) -> List[str]:
        return [
            f"{'.'.join(str(p) for p in error.absolute_path) or 'arguments'}: {error.message}"
            for error in sorted(self.validator.iter_errors(arguments), key=lambda e: list(e.absolute_path))
        ]

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


def text_content(payload: Any, is_error: bool = False, **extra) -> Dict[str, Any]:
    """Wrap a payload in the MCP content envelope."""
    text = payload if isinstance(payload, str) else json.dumps(payload, indent=2, default=str)
    result = {"content": [{"type": "text", "text": text}], **extra}
    if is_error:
        result["isError"] = True
    return result


def _agent_summary(agent: AgentProfile) -> Dict[str, Any]:
    return {
        "id": agent.id,
        "name": agent.name,
        "description": agent.description,
        "team_id": agent.team_id,
        "model_provider": agent.model_provider,
        "model_id": agent.model_id,
    }


async def _require_agent(ctx: MCPToolContext, agent_id: str) -> AgentProfile:
    agent = await ctx.services.agents.get_agent(ctx.tenant_id, agent_id)
    if agent is None:
        raise NotFoundError(f"Agent not found: {agent_id}")
    return agent


# =============================================================================
# Handlers
# =============================================================================

async def execute(args: Dict[str, Any], ctx: MCPToolContext) -> Dict[str, Any]:
    agent = await _require_agent(ctx, args["agent_id"])
    if args.get("session_id"):
        if not is_persisted_session_id(args["session_id"]):
            raise ValidationError(f"Invalid session id: {args['session_id']}")
        context = ExecutionContext(
            tenant_id=ctx.tenant_id,
            session_id=args["session_id"],
            user_id=ctx.user_id,
            agent_id=agent.id,
            language=agent.language,
        )
    else:
        context = ExecutionContext.stateless(ctx.tenant_id, ctx.user_id, agent.id, agent.language)

    attachments = [
        Attachment(
            file_name=item.get("file_name") or "attachment",
            mime_type=item["mime_type"],
            url=item.get("url"),
            data=item.get("data"),
        )
        for item in args.get("attachments") or []
    ]

    try:
        reply = await ctx.services.orchestrator.run(
            agent,
            context,
            args["user_input"],
            attachments=attachments,
            mode=OrchestrationMode.BATCH,
            response_format=args.get("response_format"),
            system_prompt_override=args.get("system_prompt_override"),
        )
    except (AuthenticationError, CapacityError) as e:
        return text_content(e.message, is_error=True)
    except ProviderError as e:
        return text_content(user_facing_error(e), is_error=True)

    extra: Dict[str, Any] = {"messageType": reply.message_type}
    if args.get("include_tool_calls", True) and reply.tool_calls:
        results = {r.tool_call_id: r for r in reply.tool_results}
        extra["toolCalls"] = [
            {
                "toolCallId": call.id,
                "toolName": call.name,
                "args": call.arguments,
                "result": results[call.id].result if call.id in results else None,
                "isError": results[call.id].is_error if call.id in results else False,
            }
            for call in reply.tool_calls
        ]
    return text_content(reply.text, is_error=reply.message_type == "error", **extra)


async def list_agents(args: Dict[str, Any], ctx: MCPToolContext) -> Dict[str, Any]:
    agents = await ctx.services.agents.list_agents(ctx.tenant_id, args.get("team_id"))
    return text_content({"agents": [_agent_summary(a) for a in agents], "count": len(agents)})


async def get_agent_info(args: Dict[str, Any], ctx: MCPToolContext) -> Dict[str, Any]:
    agent = await _require_agent(ctx, args["agent_id"])
    return text_content({
        **_agent_summary(agent),
        "prompt_text": agent.prompt_text,
        "allowed_action_ids": agent.allowed_action_ids,
        "max_tokens": agent.max_tokens,
        "language": agent.language,
    })


async def list_teams(args: Dict[str, Any], ctx: MCPToolContext) -> Dict[str, Any]:
    teams = await ctx.services.agents.list_teams(ctx.tenant_id)
    return text_content({"teams": [t.model_dump() for t in teams], "count": len(teams)})


async def get_team(args: Dict[str, Any], ctx: MCPToolContext) -> Dict[str, Any]:
    team = await ctx.services.agents.get_team(ctx.tenant_id, args["team_id"])
    if team is None:
        raise NotFoundError(f"Team not found: {args['team_id']}")
    agents = await ctx.services.agents.list_agents(ctx.tenant_id, team.id)
    return text_content({**team.model_dump(), "agents": [_agent_summary(a) for a in agents]})


async def list_integrations(args: Dict[str, Any], ctx: MCPToolContext) -> Dict[str, Any]:
    context = ExecutionContext.stateless(ctx.tenant_id, ctx.user_id)
    actions = await ctx.services.registry.list_actions(context)
    integrations = [
        {
            "key": bundle.key,
            "name": bundle.display_name,
            "description": bundle.description,
            "actions": actions.get(bundle.key, []),
        }
        for bundle in ctx.services.bundles.list_bundles()
    ]
    return text_content({"integrations": integrations, "count": len(integrations)})


async def trigger_integration_action(args: Dict[str, Any], ctx: MCPToolContext) -> Dict[str, Any]:
    function_name = sanitize_function_name(args["action_id"])
    context = ExecutionContext.stateless(ctx.tenant_id, ctx.user_id)
    tool_set = await ctx.services.registry.build_tool_set(context, [function_name])
    if function_name not in tool_set:
        raise NotFoundError(f"Integration action not found: {args['action_id']}")

    outcome = await ctx.services.executor.execute(
        ToolCall(name=function_name, arguments=args.get("arguments") or {}),
        context,
        tool_set,
    )
    return text_content(outcome.result, is_error=not outcome.success)


async def list_models(args: Dict[str, Any], ctx: MCPToolContext) -> Dict[str, Any]:
    try:
        models = available_models(args.get("provider"))
    except ValueError as e:
        raise ValidationError(str(e))
    return text_content({"models": models, "count": len(models)})


async def get_cost_summary(args: Dict[str, Any], ctx: MCPToolContext) -> Dict[str, Any]:
    ledger = ctx.services.cost_ledger
    if not hasattr(ledger, "summarize"):
        raise ValidationError("Cost summaries are not available for this ledger")
    return text_content(await ledger.summarize(ctx.tenant_id, args.get("days") or 30))


async def list_workspace_items(args: Dict[str, Any], ctx: MCPToolContext) -> Dict[str, Any]:
    items = await ctx.services.workspace.list_items(ctx.tenant_id, args.get("agent_id"))
    return text_content({
        "items": [
            {"id": i.id, "name": i.name, "agent_id": i.agent_id, "mime_type": i.mime_type}
            for i in items
        ],
        "count": len(items),
    })


async def get_workspace_item(args: Dict[str, Any], ctx: MCPToolContext) -> Dict[str, Any]:
    item = await ctx.services.workspace.get_item(ctx.tenant_id, args["item_id"])
    if item is None:
        raise NotFoundError(f"Workspace item not found: {args['item_id']}")
    return text_content(item.model_dump())


# =============================================================================
# Declarations
# =============================================================================

def _object(properties: Dict[str, Any], required: Optional[List[str]] = None) -> Dict[str, Any]:
    schema = {"type": "object", "properties": properties, "additionalProperties": False}
    if required:
        schema["required"] = required
    return schema


ATTACHMENT_SCHEMA = _object(
    {
        "mime_type": {"type": "string", "description": "MIME type, e.g. image/png"},
        "file_name": {"type": "string"},
        "url": {"type": "string", "description": "URL of the attachment"},
        "data": {"type": "string", "description": "Base64-encoded content"},
    },
    ["mime_type"],
)


def build_tools() -> List[MCPTool]:
    return [
        MCPTool(
            "execute",
            "Execute an agent with a user prompt and return its reply.",
            _object(
                {
                    "agent_id": {"type": "string", "description": "The agent to execute"},
                    "user_input": {"type": "string", "description": "Message to send to the agent"},
                    "session_id": {"type": "string", "description": "Persisted session to continue"},
                    "system_prompt_override": {"type": "string"},
                    "attachments": {"type": "array", "items": ATTACHMENT_SCHEMA},
                    "response_format": _object(
                        {
                            "type": {"type": "string", "enum": ["json_object", "json_schema"]},
                            "schema": {"type": "object", "description": "JSON Schema the reply must match"},
                        },
                        ["type"],
                    ),
                    "include_tool_calls": {"type": "boolean", "default": True},
                },
                ["agent_id", "user_input"],
            ),
            execute,
        ),
        MCPTool(
            "list_agents",
            "List the agents of your organization, optionally filtered by team.",
            _object({"team_id": {"type": "string"}}),
            list_agents,
        ),
        MCPTool(
            "get_agent_info",
            "Get the configuration of one agent.",
            _object({"agent_id": {"type": "string"}}, ["agent_id"]),
            get_agent_info,
        ),
        MCPTool("list_teams", "List the teams of your organization.", _object({}), list_teams),
        MCPTool(
            "get_team",
            "Get one team and its agents.",
            _object({"team_id": {"type": "string"}}, ["team_id"]),
            get_team,
        ),
        MCPTool(
            "list_integrations",
            "List integration bundles and the actions they provide.",
            _object({}),
            list_integrations,
        ),
        MCPTool(
            "trigger_integration_action",
            "Run one integration action directly, e.g. Debug_echo.",
            _object(
                {
                    "action_id": {"type": "string", "description": "Qualified (Bundle.action) or function name"},
                    "arguments": {"type": "object"},
                },
                ["action_id"],
            ),
            trigger_integration_action,
        ),
        MCPTool(
            "list_models",
            "List the models agents can be configured with.",
            _object({"provider": {"type": "string", "enum": ["openai", "anthropic", "google", "gemini"]}}),
            list_models,
            requires_auth=False,
        ),
        MCPTool(
            "get_cost_summary",
            "Summarize model usage cost over recent days.",
            _object({"days": {"type": "integer", "minimum": 1, "maximum": 365}}),
            get_cost_summary,
        ),
        MCPTool(
            "list_workspace_items",
            "List workspace items, optionally for one agent.",
            _object({"agent_id": {"type": "string"}}),
            list_workspace_items,
        ),
        MCPTool(
            "get_workspace_item",
            "Get one workspace item with its content.",
            _object({"item_id": {"type": "string"}}, ["item_id"]),
            get_workspace_item,
        ),
    ]
