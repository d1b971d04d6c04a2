"""Tests for model output post-processing."""

import pytest

from core.exceptions import ValidationError
from services.text_processing import check_json_schema, clean_action_annotations, extract_json_object


class TestCleanActionAnnotations:

    def test_removes_annotations(self):
        text = "Here are your tickets [Action: jira_fetchTickets] for today."

        assert clean_action_annotations(text) == "Here are your tickets for today."

    def test_collapses_blank_lines(self):
        assert clean_action_annotations("One\n\n\n\nTwo") == "One\n\nTwo"

    def test_empty(self):
        assert clean_action_annotations(None) == ""


class TestExtractJsonObject:

    def test_plain_object(self):
        assert extract_json_object('{"tickets": 2}') == {"tickets": 2}

    def test_fenced_object(self):
        assert extract_json_object('Result:\n```json\n{"ok": true}\n```') == {"ok": True}

    def test_object_inside_prose(self):
        assert extract_json_object('Sure! {"count": 3} Hope that helps.') == {"count": 3}

    def test_repairs_trailing_comma(self):
        assert extract_json_object('{"name": "ops", "count": 3,}') == {"name": "ops", "count": 3}

    def test_no_object(self):
        with pytest.raises(ValidationError):
            extract_json_object("I could not find anything.")


TICKET_SCHEMA = {
    "type": "object",
    "properties": {"open_tickets": {"type": "integer"}, "owner": {"type": "string"}},
    "required": ["open_tickets"],
}


class TestResponseSchema:

    def test_matching_object(self):
        assert extract_json_object('{"open_tickets": 4}', TICKET_SCHEMA) == {"open_tickets": 4}

    def test_mismatch_lists_every_error(self):
        with pytest.raises(ValidationError) as exc_info:
            extract_json_object('{"open_tickets": "four", "owner": 7}', TICKET_SCHEMA)

        errors = exc_info.value.details["errors"]
        assert len(errors) == 2
        assert any(error.startswith("open_tickets: ") for error in errors)
        assert exc_info.value.message.startswith("Model response does not match the requested schema: ")

    def test_missing_required_property(self):
        with pytest.raises(ValidationError) as exc_info:
            extract_json_object('{"owner": "ops"}', TICKET_SCHEMA)

        assert exc_info.value.details["errors"] == ["response: 'open_tickets' is a required property"]

    def test_invalid_schema(self):
        with pytest.raises(ValidationError, match="Invalid response schema"):
            check_json_schema({"type": "nonsense"})

    def test_schema_must_be_an_object(self):
        with pytest.raises(ValidationError, match="must be a JSON object"):
            check_json_schema(["open_tickets"])
