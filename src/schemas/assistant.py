"""Assistant turn request schemas."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from services.attachments import Attachment


class ResponseFormat(BaseModel):
    """Structured reply request: any JSON object, or one matching `schema`."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["json_object", "json_schema"]
    json_schema: Optional[Dict[str, Any]] = Field(
        None, alias="schema", description="Draft 7 JSON Schema the reply must match (json_schema only)"
    )


class ExecuteRequest(BaseModel):
    """Body of an agent or session turn."""
    user_input: str = Field(..., description="The user message to send to the agent")
    attachments: List[Attachment] = Field(default_factory=list)
    response_format: Optional[ResponseFormat] = Field(
        None, description='Use {"type": "json_object"} or {"type": "json_schema", "schema": {...}} for a JSON reply'
    )
    system_prompt_override: Optional[str] = Field(None, description="Replaces the agent prompt for this turn")
    stream: bool = Field(False, description="Stream the reply as text/plain chunks")

    class Config:
        json_schema_extra = {
            "example": {
                "user_input": "Summarize my open tickets",
                "attachments": [],
                "stream": False,
            }
        }
