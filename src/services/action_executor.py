"""Action executor.

Turns one structured function call from a model into a validated,
context-bound action invocation and reports its lifecycle on the status
channel. `execute` never raises: every failure comes back as an
error-carrying string payload the model can read.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from core.context import ExecutionContext, STATELESS_SESSION_ID, is_persisted_session_id
from core.events import ExecutionRecord, ExecutionStatus, StatusChannel
from core.exceptions import NotFoundError, ValidationError
from llm.models import ActionResult, ToolCall, ToolDefinition
from .action_registry import ActionRegistry, ToolSet
from .collaborators import ActionMetadata, ActionMetadataLookup, SessionStore, TemplateRenderer

logger = logging.getLogger(__name__)

FILE_SEARCH_NOTIFICATION_ID = "file_search_notification"
FILE_SEARCH_SERVICE_NAME = "File Search Notification"
SUCCESS_MESSAGE = {"message": "Action completed successfully"}


class ExecutionOutcome(BaseModel):
    """Value returned for every call: the payload for the model, plus error detail on failure."""

    result: Any = None
    error: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.error is None


def extract_error_details(error: BaseException) -> Dict[str, Any]:
    """Normalize any exception into a {name, message, details} block."""
    message = getattr(error, "message", None) or str(error) or type(error).__name__
    details = getattr(error, "details", None)
    return {
        "name": type(error).__name__,
        "message": message,
        "details": details if isinstance(details, dict) else None,
    }


def parse_arguments(arguments: Any) -> Dict[str, Any]:
    """Decode the model's argument payload into a dict."""
    if isinstance(arguments, dict):
        return arguments
    if arguments is None or (isinstance(arguments, str) and not arguments.strip()):
        return {}
    try:
        parsed = json.loads(arguments)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Could not parse function arguments: {e}")
    if not isinstance(parsed, dict):
        raise ValidationError("Function arguments must be a JSON object")
    return parsed


def is_file_search_action(function_name: str, definition: Optional[ToolDefinition], metadata: Optional[ActionMetadata]) -> bool:
    if function_name == "file_search" or (definition is not None and definition.action_name == "file_search"):
        return True
    text = " ".join(filter(None, [
        metadata.title if metadata else None,
        metadata.description if metadata else None,
    ])).lower()
    return "file search" in text


class ActionExecutor:
    """Resolve, interpolate, invoke and report one function call."""

    def __init__(
        self,
        registry: ActionRegistry,
        metadata: ActionMetadataLookup,
        renderer: TemplateRenderer,
        status_channel: StatusChannel,
        session_store: Optional[SessionStore] = None,
    ):
        self.registry = registry
        self.metadata = metadata
        self.renderer = renderer
        self.status_channel = status_channel
        self.session_store = session_store

    async def interpolate(self, value: Any, session_id: str) -> Any:
        """Render session placeholders in every string of an argument tree.

        Lists pass through untouched; dicts are walked recursively.
        """
        if isinstance(value, str):
            return await self.renderer.render(value, session_id)
        if isinstance(value, list):
            return value
        if isinstance(value, dict):
            return {key: await self.interpolate(item, session_id) for key, item in value.items()}
        return value

    async def _invoke(self, definition: ToolDefinition, arguments: Dict[str, Any], context: ExecutionContext) -> ActionResult:
        if definition.validator is not None:
            try:
                arguments = definition.validator.validate(arguments)
            except ValidationError as e:
                return ActionResult.fail(e.message, e.details)

        result = await definition.handler(arguments, context)
        if isinstance(result, ActionResult):
            return result
        if isinstance(result, dict) and "success" in result:
            return ActionResult.model_validate(result)
        return ActionResult.ok(result)

    async def _notify_file_search(self, context: ExecutionContext, record: ExecutionRecord) -> ExecutionRecord:
        notification = ExecutionRecord(
            action_id=FILE_SEARCH_NOTIFICATION_ID,
            original_action_id=record.action_id,
            service_name=FILE_SEARCH_SERVICE_NAME,
            title="File Search In Progress",
            description="Searching your files",
            icon="search",
            input=record.input,
            language=record.language,
        )
        await self.status_channel.publish(context.session_id, notification)
        return notification

    async def _finish_file_search(self, context: ExecutionContext, notification: ExecutionRecord) -> None:
        notification.title = "File Search Completed"
        notification.description = "File search finished"
        notification.transition(ExecutionStatus.COMPLETED)
        await self.status_channel.publish(context.session_id, notification)

    async def execute(self, call: ToolCall, context: ExecutionContext, tool_set: Optional[ToolSet]) -> ExecutionOutcome:
        """Execute one function call. Never raises."""
        qualified_id = call.name
        metadata: Optional[ActionMetadata] = None
        record: Optional[ExecutionRecord] = None
        arguments: Dict[str, Any] = {}

        try:
            qualified_id = self.registry.to_qualified_id(call.name, tool_set)
            definition = tool_set.get(call.name) if tool_set else None
            metadata = await self.metadata.describe_action(qualified_id, context.language)
            if definition is None or metadata is None:
                raise NotFoundError(f"Action {qualified_id} not found", details={"action_id": qualified_id})

            arguments = await self.interpolate(parse_arguments(call.arguments), context.session_id)

            record = ExecutionRecord(
                action_id=qualified_id,
                original_action_id=call.name,
                service_name=metadata.service_name,
                title=metadata.title,
                description=metadata.description,
                icon=metadata.icon,
                input=arguments,
                language=context.language,
            )
            if not context.is_stateless:
                await self.status_channel.publish(context.session_id, record)

            notification = None
            if is_file_search_action(call.name, definition, metadata) and not context.is_stateless:
                notification = await self._notify_file_search(context, record)
            try:
                result = await self._invoke(definition, arguments, context)
            finally:
                if notification is not None:
                    await self._finish_file_search(context, notification)

            if not result.success:
                message = result.error or "Action failed"
                record.transition(ExecutionStatus.FAILED, error=message)
                await self.status_channel.publish(context.session_id, record)
                logger.warning(
                    f"Action {qualified_id} returned failure in session {context.session_id} "
                    f"(tenant {context.tenant_id}): {message}"
                )
                return ExecutionOutcome(
                    result=f"Error: {message}",
                    error={"name": "ActionFailed", "message": message, "details": result.details},
                )

            output = result.data if result.data not in (None, "", [], {}) else SUCCESS_MESSAGE
            record.transition(ExecutionStatus.COMPLETED, output=output)
            await self.status_channel.publish(context.session_id, record)
            return ExecutionOutcome(result=output)

        except Exception as e:
            error = extract_error_details(e)
            logger.error(
                f"Action {qualified_id} failed in session {context.session_id} "
                f"(tenant {context.tenant_id}): {error['name']} - {error['message']}"
            )
            await self._report_failure(context, call, qualified_id, metadata, record, arguments, error)
            return ExecutionOutcome(result=f"Error: {error['name']} - {error['message']}", error=error)

    async def _report_failure(
        self,
        context: ExecutionContext,
        call: ToolCall,
        qualified_id: str,
        metadata: Optional[ActionMetadata],
        record: Optional[ExecutionRecord],
        arguments: Dict[str, Any],
        error: Dict[str, Any],
    ) -> None:
        try:
            if record is None:
                record = ExecutionRecord(
                    action_id=qualified_id,
                    original_action_id=call.name,
                    service_name=metadata.service_name if metadata else "Unknown Service",
                    title=metadata.title if metadata else call.name,
                    description=metadata.description if metadata else "",
                    icon=metadata.icon if metadata else "error",
                    input=arguments,
                    language=context.language,
                )
            if not record.status.is_terminal:
                record.transition(ExecutionStatus.FAILED, error=error["message"])
                await self.status_channel.publish(context.session_id, record)
        except Exception as e:
            logger.error(f"Could not report failure of {qualified_id}: {e}")

    async def execute_for_session(
        self,
        call: ToolCall,
        session_id: str,
        tenant_id: str,
        allowed_action_ids: Optional[List[str]] = None,
    ) -> ExecutionOutcome:
        """Execute a call with the context derived from session state.

        Persisted sessions supply their own allow-list; the stateless
        sentinel uses `allowed_action_ids`.
        """
        if session_id != STATELESS_SESSION_ID and not is_persisted_session_id(session_id):
            return ExecutionOutcome(
                result="Error: AuthenticationError - Invalid session id",
                error={"name": "AuthenticationError", "message": "Invalid session id", "details": None},
            )

        try:
            if session_id == STATELESS_SESSION_ID:
                context = ExecutionContext.stateless(tenant_id)
                allowed = list(allowed_action_ids or [])
            else:
                if self.session_store is None:
                    raise NotFoundError("No session store configured")
                session = await self.session_store.get_context_for_session(session_id)
                if session.tenant_id != tenant_id:
                    raise NotFoundError(f"Session {session_id} not found")
                context = ExecutionContext(
                    tenant_id=session.tenant_id,
                    session_id=session_id,
                    user_id=session.user_id,
                    agent_id=session.agent_id,
                    language=session.language,
                )
                allowed = session.allowed_action_ids
            tool_set = await self.registry.build_tool_set(context, allowed)
        except Exception as e:
            error = extract_error_details(e)
            logger.error(f"Could not resolve context for session {session_id}: {error['message']}")
            return ExecutionOutcome(result=f"Error: {error['name']} - {error['message']}", error=error)

        return await self.execute(call, context, tool_set)
