"""
Token counting and usage tracking.

Token counts before a call are estimated with a character heuristic
(about four characters per token). Measured counts from provider
responses replace the estimate after the call.
"""

import math
from dataclasses import dataclass
from typing import Iterable, Mapping

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4
CONVERSATION_OVERHEAD_TOKENS = 3


@dataclass(frozen=True)
class TokenUsage:
    """Input/output token pair for cost calculation."""
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a piece of text.

    Args:
        text: Any string; empty strings count as zero tokens

    Returns:
        ceil(len(text) / 4)
    """
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(messages: Iterable[Mapping[str, str]]) -> int:
    """Estimate the token count of a chat conversation.

    Each message costs a fixed formatting overhead plus its role and
    content; the conversation as a whole adds a fixed overhead.

    Args:
        messages: Chat messages with ``role`` and ``content`` keys

    Returns:
        Estimated input token count
    """
    total = 0
    for message in messages:
        total += MESSAGE_OVERHEAD_TOKENS
        total += estimate_tokens(message.get("role") or "")
        total += estimate_tokens(message.get("content") or "")
    return total + CONVERSATION_OVERHEAD_TOKENS
