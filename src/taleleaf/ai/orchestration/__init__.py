"""Admission control, chunking, and the request governor."""

from importlib import import_module
from typing import Any

from .chunking import ChunkSegment, ContextChunk, ContextChunker
from .rate_limits import AdmissionDecision, RateLimitEvent, TokenBucket, TokenBucketTracker

__all__ = [
    "ChunkSegment",
    "ContextChunk",
    "ContextChunker",
    "AdmissionEstimate",
    "GovernorConfig",
    "RequestGovernor",
    "TokenEstimate",
    "AdmissionDecision",
    "RateLimitEvent",
    "TokenBucket",
    "TokenBucketTracker",
]

# The governor imports the transports, which import this package's rate_limits.
_GOVERNOR_EXPORTS = {"AdmissionEstimate", "GovernorConfig", "RequestGovernor", "TokenEstimate"}


def __getattr__(name: str) -> Any:
    if name in _GOVERNOR_EXPORTS:
        value = getattr(import_module(f"{__name__}.governor"), name)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
