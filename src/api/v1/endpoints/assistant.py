"""Conversational turn endpoints."""

import logging
from typing import Union

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from core.context import ExecutionContext
from core.dependencies import get_services
from core.exceptions import AuthenticationError, CapacityError, NotFoundError, ProviderError, ValidationError
from core.security import Principal, get_current_principal
from llm.models import OrchestrationMode
from schemas.assistant import ExecuteRequest
from services.container import ServiceContainer
from services.orchestrator import AssistantReply, StreamHandle, build_reply, user_facing_error

logger = logging.getLogger(__name__)

router = APIRouter()


async def _respond(turn, request: ExecuteRequest, target: str) -> Union[AssistantReply, StreamingResponse]:
    """Await a turn and render it; failures become assistant-shaped error replies.

    Only an unknown agent or session surfaces as an HTTP error.
    """
    try:
        result = await turn
    except NotFoundError:
        raise
    except (AuthenticationError, CapacityError, ValidationError) as e:
        return build_reply(e.message, message_type="error")
    except ProviderError as e:
        return build_reply(user_facing_error(e), message_type="error")
    except Exception as e:
        logger.error(f"Turn for {target} failed: {e}", exc_info=True)
        return build_reply(user_facing_error(e), message_type="error")

    if isinstance(result, StreamHandle):
        return StreamingResponse(
            result.__aiter__(),
            media_type="text/plain",
            headers={"X-Message-Id": result.id},
        )
    return result


def _options(request: ExecuteRequest) -> dict:
    return {
        "attachments": request.attachments,
        "mode": OrchestrationMode.STREAMING if request.stream else OrchestrationMode.BATCH,
        "response_format": request.response_format.model_dump(by_alias=True) if request.response_format else None,
        "system_prompt_override": request.system_prompt_override,
    }


@router.post("/agents/{agent_id}/execute", response_model=AssistantReply)
async def execute_agent(
    agent_id: str,
    request: ExecuteRequest,
    principal: Principal = Depends(get_current_principal),
    services: ServiceContainer = Depends(get_services),
):
    """Run a stateless turn against an agent; nothing is persisted."""
    agent = await services.agents.get_agent(principal.tenant_id, agent_id)
    if agent is None:
        raise NotFoundError(f"Agent {agent_id} not found")

    context = ExecutionContext.stateless(principal.tenant_id, principal.user_id, agent.id, agent.language)
    turn = services.orchestrator.run(agent, context, request.user_input, **_options(request))
    return await _respond(turn, request, f"agent {agent_id}")


@router.post("/sessions/{session_id}/messages", response_model=AssistantReply)
async def send_session_message(
    session_id: str,
    request: ExecuteRequest,
    principal: Principal = Depends(get_current_principal),
    services: ServiceContainer = Depends(get_services),
):
    """Run a turn in a persisted session."""
    turn = services.orchestrator.run_for_session(
        session_id, request.user_input, tenant_id=principal.tenant_id, **_options(request)
    )
    return await _respond(turn, request, f"session {session_id}")
