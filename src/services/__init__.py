"""Service layer: action registry, executor and orchestration loop."""

from .action_registry import ActionRegistry, BundleRegistry, IntegrationBundle, ActionSpec, ToolSetCache
from .action_executor import ActionExecutor, ExecutionOutcome
from .attachments import Attachment, AttachmentIngestor
from .orchestrator import Orchestrator, AssistantReply, StreamHandle, plan_turn

__all__ = [
    "ActionRegistry",
    "BundleRegistry",
    "IntegrationBundle",
    "ActionSpec",
    "ToolSetCache",
    "ActionExecutor",
    "ExecutionOutcome",
    "Attachment",
    "AttachmentIngestor",
    "Orchestrator",
    "AssistantReply",
    "StreamHandle",
    "plan_turn",
]
