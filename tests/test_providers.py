"""Tests for the provider catalog."""

from __future__ import annotations

import pytest

from taleleaf.ai.providers import DEFAULT_PROVIDERS, ProviderCatalog, ProviderInfo


def test_default_catalog_contents(catalog: ProviderCatalog) -> None:
    assert [provider.id for provider in catalog] == [
        "openai-gpt4o-mini",
        "openai-gpt4o",
        "anthropic-claude",
    ]
    mini = catalog.require("openai-gpt4o-mini")
    assert mini.tokens_per_minute == 100_000
    assert mini.model == "gpt-4o-mini"
    assert catalog.require("openai-gpt4o").tokens_per_minute == 30_000


def test_drain_rate_is_one_minute_window(catalog: ProviderCatalog) -> None:
    assert catalog.require("openai-gpt4o").drain_rate == pytest.approx(500.0)


def test_aliases_put_requested_provider_first(catalog: ProviderCatalog) -> None:
    assert catalog.aliases("openai-gpt4o") == ("openai-gpt4o", "openai-gpt4o-mini")
    assert catalog.aliases("anthropic-claude") == ("anthropic-claude",)
    assert catalog.aliases("unknown") == ("unknown",)


def test_require_rejects_unknown_provider(catalog: ProviderCatalog) -> None:
    assert catalog.get("nope") is None
    with pytest.raises(ValueError):
        catalog.require("nope")


def test_estimate_cost_uses_per_million_prices(catalog: ProviderCatalog) -> None:
    gpt4o = catalog.require("openai-gpt4o")

    assert gpt4o.estimate_cost(1_000_000, 0) == pytest.approx(5.0)
    assert gpt4o.estimate_cost(1_000, 500) == pytest.approx(0.005 + 0.0075)


def test_duplicate_provider_ids_are_rejected() -> None:
    duplicate = ProviderInfo(
        id=DEFAULT_PROVIDERS[0].id,
        name="Copy",
        family="openai",
        model="x",
        alias_group="openai",
        tokens_per_minute=1,
    )
    with pytest.raises(ValueError):
        ProviderCatalog([*DEFAULT_PROVIDERS, duplicate])


def test_bucket_defaults(catalog: ProviderCatalog) -> None:
    defaults = catalog.bucket_defaults()

    assert defaults["anthropic-claude"][0] == 40_000
    assert defaults["anthropic-claude"][1] == pytest.approx(40_000 / 60)
