"""Knowledge bundle: search over the tenant's workspace items."""

import logging
from typing import Any, Dict

from core.context import ExecutionContext
from llm.models import ActionResult
from services.action_registry import ActionSpec
from services.collaborators import WorkspaceStore

logger = logging.getLogger(__name__)

SNIPPET_CHARS = 500


def knowledge_bundle_factory(workspace: WorkspaceStore):

    async def file_search(arguments: Dict[str, Any], context: ExecutionContext) -> ActionResult:
        query = arguments["query"].strip()
        if not query:
            return ActionResult.fail("Query must not be empty")

        items = await workspace.search(context.tenant_id, query, limit=arguments.get("limit") or 5)
        logger.debug(f"file_search '{query}' returned {len(items)} items for tenant {context.tenant_id}")
        return ActionResult.ok({
            "query": query,
            "results": [
                {
                    "id": item.id,
                    "name": item.name,
                    "mime_type": item.mime_type,
                    "snippet": item.content[:SNIPPET_CHARS],
                }
                for item in items
            ],
        })

    def factory(context: ExecutionContext) -> Dict[str, ActionSpec]:
        return {
            "file_search": ActionSpec(
                handler=file_search,
                description="Search the workspace files available to this agent.",
                parameters={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "description": "Search terms"},
                        "limit": {"type": "integer", "minimum": 1, "maximum": 20},
                    },
                    "required": ["query"],
                },
                title="File Search",
                icon="search",
            ),
        }

    return factory
