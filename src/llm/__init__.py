"""
LLM module for provider-neutral model invocation.

Resolves logical model names to vendor clients, trims conversation history
to a token budget and prices token usage.
"""

from .models import (
    ModelProvider,
    OrchestrationMode,
    Message,
    TextPart,
    ImagePart,
    FilePart,
    ToolCall,
    ToolCallResult,
    ToolDefinition,
    ActionResult,
    Usage,
    ModelRequest,
    ModelResponse,
    StreamEvent,
)
from .providers import ModelResolver, ModelHandle, MODEL_CONFIGS, list_models
from .token_window import trim, estimate_message_tokens
from .cost_tracking import CostAccountant, CostRecord, InMemoryCostLedger, calculate_cost

__all__ = [
    # Models
    'ModelProvider',
    'OrchestrationMode',
    'Message',
    'TextPart',
    'ImagePart',
    'FilePart',
    'ToolCall',
    'ToolCallResult',
    'ToolDefinition',
    'ActionResult',
    'Usage',
    'ModelRequest',
    'ModelResponse',
    'StreamEvent',

    # Resolution
    'ModelResolver',
    'ModelHandle',
    'MODEL_CONFIGS',
    'list_models',

    # Budget and cost
    'trim',
    'estimate_message_tokens',
    'CostAccountant',
    'CostRecord',
    'InMemoryCostLedger',
    'calculate_cost',
]
