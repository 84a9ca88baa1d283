"""Tests for the multi-credential registry."""

from __future__ import annotations

from typing import Any, Mapping

import pytest

from taleleaf.ai.providers import ProviderCatalog
from taleleaf.services.credentials import (
    MIGRATED_CREDENTIAL_NAME,
    CredentialRegistry,
    CredentialState,
    StoredCredential,
    migrate_legacy_credentials,
)

from helpers import FakeClock


def _registry(catalog: ProviderCatalog, clock: FakeClock | None = None) -> tuple[CredentialRegistry, list[Mapping[str, Any]]]:
    persisted: list[Mapping[str, Any]] = []
    registry = CredentialRegistry(catalog, on_change=persisted.append, clock=clock or FakeClock(start=5.0))
    return registry, persisted


def test_first_credential_becomes_selected(catalog: ProviderCatalog) -> None:
    registry, persisted = _registry(catalog)

    first = registry.add("openai-gpt4o", "Personal", "sk-one")
    second = registry.add("openai-gpt4o", "Work", "sk-two")

    assert registry.selection("openai-gpt4o") == first.id
    assert second.id != first.id
    assert first.created_at == 5.0
    assert persisted[-1]["selections"] == {"openai-gpt4o": first.id}


def test_add_validates_provider_and_secret(catalog: ProviderCatalog) -> None:
    registry, _ = _registry(catalog)

    with pytest.raises(ValueError):
        registry.add("nope", "key", "sk-1")
    with pytest.raises(ValueError):
        registry.add("openai-gpt4o", "key", "   ")


def test_add_then_delete_only_credential_leaves_nothing_operational(catalog: ProviderCatalog) -> None:
    registry, _ = _registry(catalog)
    credential = registry.add("anthropic-claude", "Main", "sk-ant")

    assert registry.delete(credential.id) is True

    assert registry.operational_credential("anthropic-claude") is None
    assert registry.selection("anthropic-claude") is None
    assert registry.delete(credential.id) is False


def test_deactivating_selected_credential_clears_selection(catalog: ProviderCatalog) -> None:
    registry, _ = _registry(catalog)
    credential = registry.add("openai-gpt4o", "Main", "sk-1")

    updated = registry.update(credential.id, status="inactive")

    assert updated is not None and updated.status == "inactive"
    assert registry.selection("openai-gpt4o") is None
    assert registry.operational_credential("openai-gpt4o") is None


def test_update_unknown_credential_returns_none(catalog: ProviderCatalog) -> None:
    registry, _ = _registry(catalog)

    assert registry.update("missing", name="x") is None


def test_update_renames_and_rotates_secret(catalog: ProviderCatalog) -> None:
    registry, _ = _registry(catalog)
    credential = registry.add("openai-gpt4o", "Main", "sk-1")

    updated = registry.update(credential.id, name="Renamed", secret="sk-2")

    assert updated is not None
    assert (updated.name, updated.secret) == ("Renamed", "sk-2")
    assert registry.selection("openai-gpt4o") == credential.id


def test_select_rejects_foreign_and_unknown_credentials(catalog: ProviderCatalog) -> None:
    registry, _ = _registry(catalog)
    openai_key = registry.add("openai-gpt4o", "Main", "sk-1")

    with pytest.raises(ValueError):
        registry.select("anthropic-claude", openai_key.id)
    with pytest.raises(ValueError):
        registry.select("openai-gpt4o", "missing")

    registry.select("openai-gpt4o", None)
    assert registry.selection("openai-gpt4o") is None


def test_inactive_credential_can_be_selected_but_is_not_operational(catalog: ProviderCatalog) -> None:
    registry, _ = _registry(catalog)
    active = registry.add("openai-gpt4o", "Active", "sk-1")
    inactive = registry.add("openai-gpt4o", "Spare", "sk-2", status="inactive")

    registry.select("openai-gpt4o", inactive.id)

    assert registry.selection("openai-gpt4o") == inactive.id
    resolved = registry.operational_credential("openai-gpt4o")
    assert resolved is not None and resolved.id == active.id


def test_alias_group_shares_single_active_credential(catalog: ProviderCatalog) -> None:
    registry, persisted = _registry(catalog)
    credential = registry.add("openai-gpt4o-mini", "Shared", "sk-shared")

    via_mini = registry.operational_credential("openai-gpt4o-mini")
    via_4o = registry.operational_credential("openai-gpt4o")

    assert via_mini is not None and via_4o is not None
    assert via_mini.id == via_4o.id == credential.id
    assert registry.operational_credential("anthropic-claude") is None
    assert persisted


def test_auto_selects_lone_active_credential(catalog: ProviderCatalog) -> None:
    registry, persisted = _registry(catalog)
    credential = registry.add("openai-gpt4o", "Main", "sk-1")
    registry.select("openai-gpt4o", None)
    writes_before = len(persisted)

    resolved = registry.operational_credential("openai-gpt4o")

    assert resolved is not None and resolved.id == credential.id
    assert registry.selection("openai-gpt4o") == credential.id
    assert len(persisted) == writes_before + 1


def test_ambiguous_active_credentials_are_not_auto_selected(catalog: ProviderCatalog) -> None:
    registry, _ = _registry(catalog)
    registry.add("openai-gpt4o", "One", "sk-1")
    registry.add("openai-gpt4o", "Two", "sk-2")
    registry.select("openai-gpt4o", None)

    assert registry.operational_credential("openai-gpt4o") is None


def test_record_usage_stamps_operational_credential(catalog: ProviderCatalog) -> None:
    clock = FakeClock(start=10.0)
    registry, _ = _registry(catalog, clock)
    credential = registry.add("openai-gpt4o", "Main", "sk-1")
    clock.advance(90)

    registry.record_usage("openai-gpt4o-mini")

    stamped = registry.get(credential.id)
    assert stamped is not None and stamped.last_used_at == 100.0


def test_record_usage_never_raises(catalog: ProviderCatalog) -> None:
    def _explode(_payload: Mapping[str, Any]) -> None:
        raise RuntimeError("disk full")

    registry = CredentialRegistry(catalog, on_change=_explode)
    registry.add("openai-gpt4o", "Main", "sk-1")

    registry.record_usage("openai-gpt4o")
    registry.record_usage("unknown-provider")


def test_state_payload_roundtrip_drops_empty_selections() -> None:
    state = CredentialState(
        credentials=[StoredCredential(id="c1", provider_id="openai-gpt4o", name="Main", secret="sk", created_at=1.0)],
        selections={"openai-gpt4o": "c1", "anthropic-claude": None},
    )

    payload = state.to_payload()
    restored = CredentialState.from_payload(payload)

    assert payload["selections"] == {"openai-gpt4o": "c1"}
    assert restored.credentials == state.credentials


def test_unknown_status_loads_as_inactive() -> None:
    credential = StoredCredential.from_payload({"id": "c1", "provider_id": "p", "status": "revoked"})

    assert credential is not None and credential.status == "inactive"


def test_migration_creates_selected_credentials() -> None:
    ids = iter(["id-1", "id-2"])

    upgraded = migrate_legacy_credentials(
        {"openai-gpt4o-mini": "sk-legacy", "anthropic-claude": "sk-ant", "openai-gpt4o": ""},
        CredentialState(),
        now=42.0,
        id_factory=lambda: next(ids),
    )

    assert [(c.id, c.provider_id, c.name) for c in upgraded.credentials] == [
        ("id-1", "openai-gpt4o-mini", MIGRATED_CREDENTIAL_NAME),
        ("id-2", "anthropic-claude", MIGRATED_CREDENTIAL_NAME),
    ]
    assert upgraded.selections == {"openai-gpt4o-mini": "id-1", "anthropic-claude": "id-2"}
    assert all(c.created_at == 42.0 for c in upgraded.credentials)


def test_migration_is_idempotent_and_pure() -> None:
    legacy = {"openai-gpt4o": "sk-legacy"}
    original = CredentialState()

    once = migrate_legacy_credentials(legacy, original, now=1.0)
    twice = migrate_legacy_credentials(legacy, once, now=2.0)

    assert original.credentials == []
    assert twice.credentials == once.credentials
    assert twice.selections == once.selections


def test_migration_keeps_existing_selection() -> None:
    existing = StoredCredential(id="mine", provider_id="openai-gpt4o", name="Mine", secret="sk-new", created_at=1.0)
    current = CredentialState(credentials=[existing], selections={"openai-gpt4o": "mine"})

    upgraded = migrate_legacy_credentials({"openai-gpt4o": "sk-old"}, current, now=2.0)

    assert len(upgraded.credentials) == 2
    assert upgraded.selections["openai-gpt4o"] == "mine"
