"""Post-processing of model output."""

import json
import logging
import re
from typing import Any, Dict, Optional

from json_repair import repair_json
from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from core.exceptions import ValidationError

logger = logging.getLogger(__name__)

_ACTION_ANNOTATION = re.compile(r"\[Action:[^\]]*\]", re.IGNORECASE)
_ACTION_BRACKET = re.compile(r"\[[^\]\n]*\baction\b[^\]\n]*\]", re.IGNORECASE)
_SPACES = re.compile(r"[ \t]{2,}")
_BLANK_LINES = re.compile(r"\n{3,}")
_JSON_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def clean_action_annotations(text: str) -> str:
    """Remove `[Action: ...]` style annotations models echo from tool transcripts."""
    if not text:
        return ""
    cleaned = _ACTION_ANNOTATION.sub("", text)
    cleaned = _ACTION_BRACKET.sub("", cleaned)
    cleaned = _SPACES.sub(" ", cleaned)
    cleaned = _BLANK_LINES.sub("\n\n", cleaned)
    return cleaned.strip()


def check_json_schema(schema: Any) -> None:
    """Reject a caller-supplied response schema that is not valid Draft 7.

    Raises:
        ValidationError: the schema is not an object or not a valid schema
    """
    if not isinstance(schema, dict):
        raise ValidationError("Response schema must be a JSON object")
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        raise ValidationError(f"Invalid response schema: {e.message}")


def extract_json_object(text: str, schema: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Parse a JSON object out of model text, repairing it when needed.

    With a schema, the object must also validate against it.

    Raises:
        ValidationError: no JSON object could be recovered, or it fails the schema
    """
    body = (text or "").strip()
    fenced = _JSON_FENCE.search(body)
    if fenced:
        body = fenced.group(1).strip()
    else:
        start, end = body.find("{"), body.rfind("}")
        if start != -1 and end > start:
            body = body[start:end + 1]

    try:
        parsed = json.loads(body)
    except ValueError:
        parsed = repair_json(body, return_objects=True)
        logger.debug("Structured output needed JSON repair")

    if not isinstance(parsed, dict):
        raise ValidationError("Model response did not contain a JSON object", details={"response": text[:500]})

    if schema:
        errors = [
            f"{'.'.join(str(p) for p in error.absolute_path) or 'response'}: {error.message}"
            for error in Draft7Validator(schema).iter_errors(parsed)
        ]
        if errors:
            raise ValidationError(
                f"Model response does not match the requested schema: {'; '.join(errors)}",
                details={"errors": errors},
            )
    return parsed
