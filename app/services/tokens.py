"""
Token estimation shared by skills, memory and summarization.

Tokenizer-agnostic on purpose: the same numbers are used whatever model sits
behind the LLM boundary, so no vocabulary is ever loaded.
"""

import math
from typing import Any, Iterable

CHARS_PER_TOKEN = 3.5
TOKENS_PER_WORD = 1.3
MESSAGE_OVERHEAD = 4  # role + framing


def estimate_tokens(text: str) -> int:
    """
    Average of a character-based and a word-based estimate, rounded up.

    ~3.5 chars per token is slightly conservative for English prose and
    closer for code and punctuation; ~1.3 tokens per word approximates
    subword splitting.
    """
    if not text:
        return 0

    char_estimate = math.ceil(len(text) / CHARS_PER_TOKEN)
    word_estimate = math.ceil(len(text.split()) * TOKENS_PER_WORD)
    return math.ceil((char_estimate + word_estimate) / 2)


def _content_of(message: Any) -> str:
    if isinstance(message, dict):
        return message.get("content") or ""
    return getattr(message, "content", "") or ""


def estimate_messages_tokens(messages: Iterable[Any]) -> int:
    """Estimate a message list: per-message content plus fixed overhead per message."""
    total = 0
    for msg in messages:
        total += MESSAGE_OVERHEAD + estimate_tokens(_content_of(msg))
    return total
