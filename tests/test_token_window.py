"""Tests for token window trimming."""

from llm.models import ImagePart, Message, TextPart, ToolCall
from llm.token_window import IMAGE_TOKENS, MESSAGE_OVERHEAD_TOKENS, estimate_message_tokens, trim


def _message(chars, role="user"):
    return Message(role=role, content="x" * chars)


class TestEstimate:

    def test_text_is_a_quarter_of_its_length(self):
        assert estimate_message_tokens(_message(400)) == 100 + MESSAGE_OVERHEAD_TOKENS

    def test_partial_tokens_round_up(self):
        assert estimate_message_tokens(_message(5)) == 2 + MESSAGE_OVERHEAD_TOKENS

    def test_images_use_fixed_estimate(self):
        message = Message(role="user", content=[TextPart(text="abcd"), ImagePart(data=b"\x89PNG")])

        assert estimate_message_tokens(message) == 1 + IMAGE_TOKENS + MESSAGE_OVERHEAD_TOKENS

    def test_tool_calls_count(self):
        message = Message(role="assistant", tool_calls=[ToolCall(name="jira_fetch", arguments={})])

        assert estimate_message_tokens(message) > MESSAGE_OVERHEAD_TOKENS


class TestTrim:

    def test_fitting_history_is_unchanged(self):
        messages = [_message(40), _message(40, "assistant"), _message(40)]

        kept, used = trim(messages, 1000)

        assert kept == messages
        assert used == 3 * (10 + MESSAGE_OVERHEAD_TOKENS)

    def test_oldest_messages_are_dropped_first(self):
        messages = [_message(400), _message(40, "assistant"), _message(40)]

        kept, used = trim(messages, 50)

        assert kept == messages[1:]
        assert used <= 50

    def test_trimming_stops_at_first_overflow(self):
        # The small oldest message would fit but is not kept past a gap
        messages = [_message(4), _message(400), _message(40)]

        kept, _ = trim(messages, 60)

        assert kept == messages[2:]

    def test_oversized_latest_message_yields_empty(self):
        messages = [_message(40) for _ in range(49)] + [_message(584)]
        assert estimate_message_tokens(messages[-1]) == 150

        kept, used = trim(messages, 100)

        assert kept == []
        assert used == 0

    def test_latest_message_alone(self):
        messages = [_message(400), _message(300)]

        kept, used = trim(messages, 80)

        assert kept == [messages[-1]]
        assert used == 79
