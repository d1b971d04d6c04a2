"""LLM module data models."""

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Dict, Any, Optional, Union, Literal, Callable, Awaitable, Annotated
from enum import Enum
import base64
import json


class ModelProvider(str, Enum):
    """LLM model providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


class OrchestrationMode(str, Enum):
    """How a conversational turn returns its answer."""
    BATCH = "batch"
    STREAMING = "streaming"


# =============================================================================
# Conversation messages
# =============================================================================

class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    data: bytes
    mime_type: str = "image/png"

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


class FilePart(BaseModel):
    type: Literal["file"] = "file"
    data: bytes
    mime_type: str
    file_name: Optional[str] = None


ContentPart = Annotated[Union[TextPart, ImagePart, FilePart], Field(discriminator="type")]


class ToolCall(BaseModel):
    """A tool call from the LLM.

    Represents a single tool invocation request from the LLM,
    including the tool name and its arguments.
    """
    model_config = ConfigDict(protected_namespaces=())

    name: str
    arguments: Union[Dict[str, Any], str] = {}  # raw JSON string when the provider sends one
    id: Optional[str] = None  # Unique ID for tracking

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "arguments": self.arguments,
            "id": self.id
        }


class ToolCallResult(BaseModel):
    """Output of one executed tool call, as fed back to the model."""
    tool_call_id: Optional[str] = None
    name: str
    result: Any = None
    is_error: bool = False

    def content_text(self) -> str:
        if isinstance(self.result, str):
            return self.result
        return json.dumps(self.result, default=str)


class Message(BaseModel):
    """A conversational turn.

    Persisted turns use the user/assistant/system roles; the `tool` role only
    appears inside the transcript of a running multi-step turn.
    """
    role: Literal["user", "assistant", "system", "tool"]
    content: Union[str, List[ContentPart]] = ""
    tool_calls: List[ToolCall] = []
    tool_results: List[ToolCallResult] = []
    message_type: str = "text"
    metadata: Dict[str, Any] = {}

    def text(self) -> str:
        """Concatenated text of the message content."""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if isinstance(part, TextPart))

    def parts(self) -> List[Any]:
        if isinstance(self.content, str):
            return [TextPart(text=self.content)] if self.content else []
        return list(self.content)


# =============================================================================
# Model invocation
# =============================================================================

class Usage(BaseModel):
    """Token usage of one or more model calls."""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class ModelRequest(BaseModel):
    """Provider-neutral request for one model step."""
    model_config = ConfigDict(protected_namespaces=())

    messages: List[Message]
    system: Optional[str] = None
    tools: List["ToolDefinition"] = []
    max_tokens: int = 4096
    temperature: Optional[float] = None
    json_mode: bool = False


class ModelResponse(BaseModel):
    """Provider-neutral response of one model step."""
    text: str = ""
    tool_calls: List[ToolCall] = []
    usage: Usage = Usage()
    finish_reason: Optional[str] = None

    def has_tool_calls(self) -> bool:
        """Check if response contains tool calls."""
        return len(self.tool_calls) > 0


class StreamEvent(BaseModel):
    """A single event decoded from a provider stream."""
    type: Literal["text_delta", "tool_call", "usage", "done"]
    text: str = ""
    tool_call: Optional[ToolCall] = None
    usage: Optional[Usage] = None
    finish_reason: Optional[str] = None


# =============================================================================
# Tool Calling Models
# =============================================================================

class ActionResult(BaseModel):
    """Outcome of an action invocation.

    Either success with a JSON-serializable payload or failure with a
    human-readable message and optional detail. Actions return this rather
    than raising.
    """
    success: bool
    data: Any = None
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, details: Optional[Dict[str, Any]] = None) -> "ActionResult":
        return cls(success=False, error=error, details=details)


ActionHandler = Callable[[Dict[str, Any], Any], Awaitable[ActionResult]]


class ToolDefinition(BaseModel):
    """Definition of a tool available to the LLM.

    `name` is the model-facing namespaced name (`bundle_action`) and
    `qualified_id` the registry id (`bundle.action`).
    """
    model_config = ConfigDict(protected_namespaces=(), arbitrary_types_allowed=True)

    name: str
    description: str
    parameters: Dict[str, Any] = {}  # JSON Schema for parameters
    qualified_id: str = ""
    bundle: str = ""
    action_name: str = ""
    title: Optional[str] = None
    icon: Optional[str] = None
    handler: Optional[Callable[..., Awaitable[ActionResult]]] = Field(default=None, exclude=True)
    validator: Optional[Any] = Field(default=None, exclude=True)

    def to_openai_format(self) -> Dict[str, Any]:
        """Convert to OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}}
            }
        }

    def to_anthropic_format(self) -> Dict[str, Any]:
        """Convert to Anthropic tool use format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters or {"type": "object", "properties": {}}
        }

    def to_gemini_format(self) -> Dict[str, Any]:
        """Convert to a Gemini function declaration."""
        declaration = {"name": self.name, "description": self.description}
        if self.parameters.get("properties"):
            declaration["parameters"] = self.parameters
        return declaration


ModelRequest.model_rebuild()
