"""Debug bundle: actions for exercising the tool-calling path."""

from typing import Any, Dict

from core.context import ExecutionContext
from llm.models import ActionResult
from services.action_registry import ActionSpec


async def echo(arguments: Dict[str, Any], context: ExecutionContext) -> ActionResult:
    return ActionResult.ok({"echo": arguments.get("text", ""), "session_id": context.session_id})


async def fail(arguments: Dict[str, Any], context: ExecutionContext) -> ActionResult:
    return ActionResult.fail(arguments.get("reason") or "Requested failure")


def debug_bundle_factory(context: ExecutionContext) -> Dict[str, ActionSpec]:
    return {
        "echo": ActionSpec(
            handler=echo,
            description="Return the given text unchanged.",
            parameters={
                "type": "object",
                "properties": {"text": {"type": "string"}},
                "required": ["text"],
            },
            icon="message",
        ),
        "fail": ActionSpec(
            handler=fail,
            description="Always fail with the given reason.",
            parameters={
                "type": "object",
                "properties": {"reason": {"type": "string"}},
            },
            icon="error",
        ),
    }
