"""
Token counting and usage tracking.

Tokens are whitespace-delimited words: a deterministic, locale-independent
proxy for what providers bill.
"""

import re
from dataclasses import dataclass

# ASCII whitespace only, so the count does not depend on the locale or on
# Unicode space categories.
_WHITESPACE = re.compile(r"[ \t\n\r\f\v]+")


def count_tokens(text: str) -> int:
    """Count whitespace-delimited tokens in text.

    Args:
        text: Prompt or response text

    Returns:
        Number of non-empty tokens (0 for empty or blank text)
    """
    if not text:
        return 0
    return sum(1 for token in _WHITESPACE.split(text) if token)


@dataclass(frozen=True)
class TokenUsage:
    """Tokens a provider was charged for one reply.

    prompt_tokens is the cost of the user message that triggered the reply,
    completion_tokens what was actually debited for the reply itself.
    """
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens
