"""Shared helpers for AI budgeting."""

from .tokens import CHARS_PER_TOKEN, TokenEstimator, chars_for_tokens, estimate_tokens

__all__ = ["CHARS_PER_TOKEN", "TokenEstimator", "chars_for_tokens", "estimate_tokens"]
