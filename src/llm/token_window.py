"""Token window trimming for conversation history."""

import math
import logging
from typing import List, Sequence, Tuple

from .models import ImagePart, FilePart, Message, TextPart

logger = logging.getLogger(__name__)

# Per-message framing overhead (role markers, separators)
MESSAGE_OVERHEAD_TOKENS = 4
# Image estimate: 85 base tokens plus two 170-token tiles
IMAGE_TOKENS = 85 + 2 * 170
CHARS_PER_TOKEN = 4


def estimate_text_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN) if text else 0


def estimate_message_tokens(message: Message) -> int:
    """Approximate the prompt tokens a message will cost."""
    tokens = MESSAGE_OVERHEAD_TOKENS
    for part in message.parts():
        if isinstance(part, TextPart):
            tokens += estimate_text_tokens(part.text)
        elif isinstance(part, ImagePart):
            tokens += IMAGE_TOKENS
        elif isinstance(part, FilePart):
            # Binary file parts are priced by their byte length
            tokens += math.ceil(len(part.data) / CHARS_PER_TOKEN)
    for tool_call in message.tool_calls:
        tokens += estimate_text_tokens(tool_call.name) + estimate_text_tokens(str(tool_call.arguments))
    for result in message.tool_results:
        tokens += estimate_text_tokens(result.content_text())
    return tokens


def trim(messages: Sequence[Message], max_tokens: int) -> Tuple[List[Message], int]:
    """Keep the newest messages that fit in `max_tokens`.

    Walks from the newest message backwards and stops at the first one
    that would overflow the budget, so kept messages stay contiguous and
    in their original order. Returns an empty list when the newest
    message alone does not fit.
    """
    kept: List[Message] = []
    tokens_used = 0

    for message in reversed(messages):
        cost = estimate_message_tokens(message)
        if tokens_used + cost > max_tokens:
            break
        kept.append(message)
        tokens_used += cost

    kept.reverse()
    if len(kept) < len(messages):
        logger.debug(f"Trimmed {len(messages) - len(kept)} of {len(messages)} messages to fit {max_tokens} tokens")
    return kept, tokens_used
