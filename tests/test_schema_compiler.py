"""Tests for parameter schema compilation."""

import pytest

from core.exceptions import ValidationError
from services.schema_compiler import compile_schema


TICKET_SCHEMA = {
    "type": "object",
    "properties": {
        "status": {"type": "string", "enum": ["open", "closed"]},
        "limit": {"type": "integer"},
        "score": {"type": "number"},
        "urgent": {"type": "boolean"},
        "labels": {"type": "array", "items": {"type": "string"}},
        "assignee": {
            "type": "object",
            "properties": {"name": {"type": "string"}},
            "required": ["name"],
        },
        "extra": {"type": "object"},
    },
    "required": ["status"],
}


class TestCompiledSchema:

    def test_valid_arguments_round_trip(self):
        validator = compile_schema(TICKET_SCHEMA, "jira_fetchTickets")
        arguments = {
            "status": "open",
            "limit": 5,
            "score": 0.5,
            "urgent": True,
            "labels": ["ops"],
            "assignee": {"name": "sam"},
            "extra": {"anything": [1, 2]},
        }

        assert validator.validate(arguments) == arguments

    def test_optional_properties_stay_absent(self):
        validator = compile_schema(TICKET_SCHEMA)

        assert validator.validate({"status": "closed"}) == {"status": "closed"}

    def test_unknown_properties_are_kept(self):
        validator = compile_schema(TICKET_SCHEMA)

        assert validator.validate({"status": "open", "verbose": True}) == {"status": "open", "verbose": True}

    def test_missing_required_property(self):
        validator = compile_schema(TICKET_SCHEMA, "jira_fetchTickets")

        with pytest.raises(ValidationError) as exc_info:
            validator.validate({"limit": 3})

        assert "jira_fetchTickets" in exc_info.value.message
        assert exc_info.value.details["errors"]

    def test_enum_is_enforced(self):
        with pytest.raises(ValidationError):
            compile_schema(TICKET_SCHEMA).validate({"status": "pending"})

    def test_scalars_are_strict(self):
        validator = compile_schema(TICKET_SCHEMA)

        with pytest.raises(ValidationError):
            validator.validate({"status": "open", "limit": "5"})
        with pytest.raises(ValidationError):
            validator.validate({"status": "open", "urgent": "yes"})

    def test_nested_required_property(self):
        with pytest.raises(ValidationError):
            compile_schema(TICKET_SCHEMA).validate({"status": "open", "assignee": {}})

    def test_property_names_may_shadow_model_attributes(self):
        validator = compile_schema({
            "type": "object",
            "properties": {"schema": {"type": "string"}, "copy": {"type": "integer"}},
        })

        assert validator.validate({"schema": "v1", "copy": 2}) == {"schema": "v1", "copy": 2}

    def test_missing_schema_accepts_any_object(self):
        assert compile_schema(None).validate({"free": "form"}) == {"free": "form"}
