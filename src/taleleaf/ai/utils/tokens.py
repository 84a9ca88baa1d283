"""Token estimation utilities for AI operations.

Every budget in the governor is built on these numbers. They are a fixed
characters-per-token heuristic, not a tokenizer, so all figures derived from
them (admission checks, chunk sizes, cost previews) are approximate.
"""

from __future__ import annotations

import math

# Average characters per token for English prose (GPT-style tokenization)
CHARS_PER_TOKEN = 4.0


class TokenEstimator:
    """Deterministic estimator that converts between characters and tokens."""

    def __init__(self, chars_per_token: float = CHARS_PER_TOKEN) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self._chars_per_token = float(chars_per_token)

    @property
    def chars_per_token(self) -> float:
        return self._chars_per_token

    def estimate(self, text: str | None) -> int:
        """Return the approximate token count for ``text`` (0 for empty text)."""

        if not text:
            return 0
        return math.ceil(len(text) / self._chars_per_token)

    def chars_for_tokens(self, tokens: int) -> int:
        """Return the number of characters that fit inside ``tokens``."""

        return max(0, math.floor(int(tokens) * self._chars_per_token))


_DEFAULT_ESTIMATOR = TokenEstimator()


def estimate_tokens(text: str | None) -> int:
    """Estimate the number of tokens in a text string.

    Uses a simple heuristic of ~4 characters per token. This provides a
    reasonable approximation for English prose with GPT-style tokenization.

    Args:
        text: The text to estimate tokens for.

    Returns:
        Estimated token count (0 for empty text). The value never decreases
        as the text grows.
    """
    return _DEFAULT_ESTIMATOR.estimate(text)


def chars_for_tokens(tokens: int) -> int:
    """Return the character equivalent of a token budget."""

    return _DEFAULT_ESTIMATOR.chars_for_tokens(tokens)


__all__ = ["CHARS_PER_TOKEN", "TokenEstimator", "estimate_tokens", "chars_for_tokens"]
