"""Compile declarative parameter schemas into pydantic validators.

Parameter blocks use the JSON-schema subset tools are described with:
string/number/integer/boolean/array/object properties, `required` lists,
`enum` and per-property descriptions. Each block is compiled once into a
pydantic model tree and reused for every call.
"""

import logging
import re
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, StrictStr, create_model,
)
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ValidationError

logger = logging.getLogger(__name__)

_SCALARS = {
    "string": StrictStr,
    "integer": StrictInt,
    "number": Union[StrictInt, StrictFloat],
    "boolean": StrictBool,
}


class ArgumentModel(BaseModel):
    """Base of compiled argument models; unknown keys are kept."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)


def _model_name(name: str) -> str:
    cleaned = re.sub(r"[^0-9a-zA-Z_]", "_", name) or "Arguments"
    return cleaned[0].upper() + cleaned[1:]


def _compile_type(schema: Any, name: str) -> Any:
    if not isinstance(schema, dict):
        return Any

    if schema.get("enum"):
        return Literal[tuple(schema["enum"])]

    schema_type = schema.get("type")
    if isinstance(schema_type, list):
        members = [t for t in schema_type if t != "null"]
        compiled = [_compile_type({**schema, "type": t}, name) for t in members]
        if not compiled:
            return Any
        union = compiled[0] if len(compiled) == 1 else Union[tuple(compiled)]
        return Optional[union] if "null" in schema_type else union

    if schema_type in _SCALARS:
        return _SCALARS[schema_type]
    if schema_type == "array":
        return List[_compile_type(schema.get("items", {}), f"{name}Item")]
    if schema_type == "object" or (schema_type is None and "properties" in schema):
        if schema.get("properties"):
            return compile_model(schema, name)
        return Dict[str, Any]
    return Any


def compile_model(schema: Dict[str, Any], name: str = "Arguments") -> type:
    """Build a pydantic model for an object schema, recursing into properties."""
    properties = schema.get("properties") or {}
    required = set(schema.get("required") or [])
    fields: Dict[str, Any] = {}

    for index, (prop_name, prop_schema) in enumerate(properties.items()):
        prop_type = _compile_type(prop_schema, f"{name}_{prop_name}")
        description = prop_schema.get("description") if isinstance(prop_schema, dict) else None
        # Field names are positional so property names never clash with BaseModel attributes
        field_name = f"field_{index}"
        if prop_name in required:
            fields[field_name] = (prop_type, Field(..., alias=prop_name, description=description))
        else:
            fields[field_name] = (Optional[prop_type], Field(None, alias=prop_name, description=description))

    return create_model(_model_name(name), __base__=ArgumentModel, **fields)


class CompiledSchema:
    """A validator compiled from one tool's parameter schema."""

    def __init__(self, schema: Optional[Dict[str, Any]], name: str = "Arguments"):
        self.name = name
        self.schema = schema or {"type": "object", "properties": {}}
        self.model = compile_model(self.schema, name)

    def validate(self, arguments: Any) -> Dict[str, Any]:
        """Validate arguments and return them as a plain dict.

        Raises:
            ValidationError: arguments do not match the schema
        """
        try:
            instance = self.model.model_validate(arguments)
        except PydanticValidationError as e:
            errors = e.errors(include_url=False, include_context=False, include_input=False)
            summary = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'arguments'}: {error['msg']}"
                for error in errors
            )
            raise ValidationError(
                f"Invalid arguments for {self.name}: {summary}",
                details={"errors": errors},
            )
        return instance.model_dump(by_alias=True, exclude_unset=True)


def compile_schema(schema: Optional[Dict[str, Any]], name: str = "Arguments") -> CompiledSchema:
    return CompiledSchema(schema, name)
