"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Mapping

from taleleaf.ai.client import ScriptedTransport, TokenUsage, TransportError, TransportReply
from taleleaf.ai.orchestration.governor import GovernorConfig, RequestGovernor
from taleleaf.ai.orchestration.rate_limits import TokenBucketTracker
from taleleaf.ai.providers import ProviderCatalog, default_catalog
from taleleaf.services.credentials import CredentialRegistry
from taleleaf.services.telemetry import ALL_EVENTS, InMemoryTelemetrySink, TelemetryBus


@dataclass
class FakeClock:
    """Manually advanced clock for bucket drain tests."""

    start: float = 0.0
    now: float = field(init=False)

    def __post_init__(self) -> None:
        self.now = self.start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def reply(text: str = "ok", input_tokens: int | None = None, output_tokens: int = 0) -> TransportReply:
    usage = TokenUsage(input_tokens, output_tokens) if input_tokens is not None else None
    return TransportReply(text=text, usage=usage)


def rate_limit_error(body: str = "", headers: Mapping[str, str] | None = None) -> TransportError:
    return TransportError(429, body, headers)


def build_governor(
    *,
    clock: FakeClock | None = None,
    catalog: ProviderCatalog | None = None,
    config: GovernorConfig | None = None,
    secrets: Mapping[str, str] | None = None,
) -> SimpleNamespace:
    """Assemble a governor over scripted transports and in-memory state."""

    active_clock = clock or FakeClock(start=1_000.0)
    active_catalog = catalog or default_catalog()
    persisted: list[Mapping[str, Any]] = []
    registry = CredentialRegistry(active_catalog, on_change=persisted.append, clock=active_clock)
    for provider_id, secret in (secrets or {}).items():
        registry.add(provider_id, f"{provider_id} key", secret)
    tracker = TokenBucketTracker(active_catalog.bucket_defaults(), clock=active_clock)
    openai = ScriptedTransport(family="openai")
    anthropic = ScriptedTransport(family="anthropic")
    telemetry = TelemetryBus()
    sink = InMemoryTelemetrySink()
    telemetry.register_listener(ALL_EVENTS, sink)
    governor = RequestGovernor(
        active_catalog,
        registry,
        tracker,
        {"openai": openai, "anthropic": anthropic},
        config=config,
        telemetry=telemetry,
    )
    return SimpleNamespace(
        governor=governor,
        registry=registry,
        tracker=tracker,
        openai=openai,
        anthropic=anthropic,
        telemetry=sink,
        clock=active_clock,
        catalog=active_catalog,
        persisted=persisted,
    )
