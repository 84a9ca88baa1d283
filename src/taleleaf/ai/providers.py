"""Static catalog of AI providers known to the governor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Literal, Mapping

__all__ = [
    "ProviderInfo",
    "ProviderCatalog",
    "DEFAULT_PROVIDERS",
    "default_catalog",
]

ProviderTier = Literal["free", "premium"]

# Providers meter usage over a rolling 60-second window.
_WINDOW_SECONDS = 60.0


@dataclass(frozen=True, slots=True)
class ProviderInfo:
    """Immutable description of a selectable AI provider.

    Args:
        id: Stable identifier used by settings and credentials.
        name: Display name.
        description: One-line summary for settings screens.
        tier: ``free`` or ``premium``.
        requires_credential: Whether a stored credential must exist to call it.
        family: Transport family (``openai`` or ``anthropic``).
        model: Upstream model name sent on the wire.
        alias_group: Providers in the same group share credentials.
        tokens_per_minute: Default simulated bucket limit.
        input_cost_per_million: USD per million prompt tokens.
        output_cost_per_million: USD per million completion tokens.
        cost_estimate: Human readable price hint.
    """

    id: str
    name: str
    family: str
    model: str
    alias_group: str
    tokens_per_minute: int
    description: str = ""
    tier: ProviderTier = "premium"
    requires_credential: bool = True
    input_cost_per_million: float = 0.0
    output_cost_per_million: float = 0.0
    cost_estimate: str | None = None

    @property
    def drain_rate(self) -> float:
        """Tokens per second released from the simulated bucket."""

        return self.tokens_per_minute / _WINDOW_SECONDS

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            max(0, input_tokens) * self.input_cost_per_million
            + max(0, output_tokens) * self.output_cost_per_million
        ) / 1_000_000


DEFAULT_PROVIDERS: tuple[ProviderInfo, ...] = (
    ProviderInfo(
        id="openai-gpt4o-mini",
        name="OpenAI GPT-4o Mini",
        description="Fast and affordable, great for most tasks",
        family="openai",
        model="gpt-4o-mini",
        alias_group="openai",
        tokens_per_minute=100_000,
        input_cost_per_million=0.15,
        output_cost_per_million=0.60,
        cost_estimate="~$0.15/1M tokens",
    ),
    ProviderInfo(
        id="openai-gpt4o",
        name="OpenAI GPT-4o",
        description="Most capable model, best for complex analysis",
        family="openai",
        model="gpt-4o",
        alias_group="openai",
        tokens_per_minute=30_000,
        input_cost_per_million=5.0,
        output_cost_per_million=15.0,
        cost_estimate="~$5/1M tokens",
    ),
    ProviderInfo(
        id="anthropic-claude",
        name="Anthropic Claude Sonnet",
        description="Excellent for long-form text analysis",
        family="anthropic",
        model="claude-3-sonnet-20240229",
        alias_group="anthropic",
        tokens_per_minute=40_000,
        input_cost_per_million=3.0,
        output_cost_per_million=15.0,
        cost_estimate="~$3/1M tokens",
    ),
)


class ProviderCatalog:
    """Lookup table over :class:`ProviderInfo` entries with alias resolution."""

    def __init__(self, providers: Iterable[ProviderInfo]) -> None:
        self._providers: dict[str, ProviderInfo] = {}
        for provider in providers:
            if provider.id in self._providers:
                raise ValueError(f"Duplicate provider id: {provider.id}")
            self._providers[provider.id] = provider

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __iter__(self):
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)

    def get(self, provider_id: str) -> ProviderInfo | None:
        return self._providers.get(provider_id)

    def require(self, provider_id: str) -> ProviderInfo:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ValueError(f"Unknown AI provider: {provider_id}")
        return provider

    def aliases(self, provider_id: str) -> tuple[str, ...]:
        """Return ``provider_id`` followed by the other members of its alias group."""

        provider = self._providers.get(provider_id)
        if provider is None:
            return (provider_id,)
        others = tuple(
            candidate.id
            for candidate in self._providers.values()
            if candidate.alias_group == provider.alias_group and candidate.id != provider_id
        )
        return (provider_id, *others)

    def bucket_defaults(self) -> Mapping[str, tuple[int, float]]:
        return {
            provider.id: (provider.tokens_per_minute, provider.drain_rate)
            for provider in self._providers.values()
        }


def default_catalog() -> ProviderCatalog:
    return ProviderCatalog(DEFAULT_PROVIDERS)
