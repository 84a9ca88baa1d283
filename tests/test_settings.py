"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from taleleaf.ai.providers import ProviderCatalog
from taleleaf.services.credentials import MIGRATED_CREDENTIAL_NAME, CredentialRegistry
from taleleaf.services.settings import SecretVault, Settings, SettingsStore, redact_secret
from taleleaf.services.store import SETTINGS_RECORD, JsonFileStore, MemoryStore


def test_load_returns_defaults_when_record_missing(memory_store: MemoryStore, vault: SecretVault) -> None:
    settings = SettingsStore(memory_store, vault=vault).load()

    assert settings == Settings()
    assert settings.output_token_allowance == 500
    assert settings.temperature == pytest.approx(0.7)


def test_save_and_load_roundtrip(tmp_path: Path, vault: SecretVault) -> None:
    store = JsonFileStore(tmp_path / "data")
    original = Settings(provider="anthropic-claude", context_chunk_budget=2_000, debug_logging=True)

    SettingsStore(store, vault=vault).save(original)
    reloaded = SettingsStore(JsonFileStore(tmp_path / "data"), vault=vault).load()

    assert reloaded == original
    raw = json.loads((tmp_path / "data" / "ai-settings.json").read_text(encoding="utf-8"))
    assert raw["version"] == 2
    assert raw["secret_backend"] == "fernet"


def test_legacy_provider_field_is_honoured(vault: SecretVault) -> None:
    store = MemoryStore({SETTINGS_RECORD: {"provider": "openai-gpt4o", "apiKeys": {}}})

    assert SettingsStore(store, vault=vault).load().provider == "openai-gpt4o"


def test_unknown_settings_fields_are_ignored(vault: SecretVault) -> None:
    store = MemoryStore({SETTINGS_RECORD: {"settings": {"provider": "openai-gpt4o", "theme": "dark"}}})

    assert SettingsStore(store, vault=vault).load().provider == "openai-gpt4o"


def test_env_overrides_take_precedence(
    monkeypatch: pytest.MonkeyPatch, memory_store: MemoryStore, vault: SecretVault
) -> None:
    SettingsStore(memory_store, vault=vault).save(Settings(provider="openai-gpt4o"))
    monkeypatch.setenv("TALELEAF_PROVIDER", "anthropic-claude")
    monkeypatch.setenv("TALELEAF_DEBUG_LOGGING", "yes")
    monkeypatch.setenv("TALELEAF_REQUEST_TIMEOUT", "12.5")
    monkeypatch.setenv("TALELEAF_CONTEXT_CHUNK_BUDGET", "1234")

    settings = SettingsStore(memory_store, vault=vault).load()

    assert settings.provider == "anthropic-claude"
    assert settings.debug_logging is True
    assert settings.request_timeout == pytest.approx(12.5)
    assert settings.context_chunk_budget == 1234


def test_invalid_numeric_env_override_is_ignored(
    monkeypatch: pytest.MonkeyPatch, memory_store: MemoryStore, vault: SecretVault
) -> None:
    monkeypatch.setenv("TALELEAF_OUTPUT_TOKEN_ALLOWANCE", "lots")

    assert SettingsStore(memory_store, vault=vault).load().output_token_allowance == 500


def test_cli_overrides_apply_before_environment(
    monkeypatch: pytest.MonkeyPatch, memory_store: MemoryStore, vault: SecretVault
) -> None:
    monkeypatch.setenv("TALELEAF_TEMPERATURE", "0.1")

    settings = SettingsStore(memory_store, vault=vault).load(
        overrides={"temperature": 0.9, "large_request_tokens": 50, "unknown": 1}
    )

    assert settings.temperature == pytest.approx(0.1)
    assert settings.large_request_tokens == 50


def test_vault_roundtrip_and_prefix(vault: SecretVault) -> None:
    token = vault.encrypt("sk-secret")

    assert token.startswith("fernet:")
    assert "sk-secret" not in token
    assert vault.decrypt(token) == "sk-secret"
    assert vault.encrypt("") == ""
    assert vault.decrypt(None) == ""


def test_vault_rejects_foreign_tokens(vault: SecretVault) -> None:
    with pytest.raises(ValueError):
        vault.decrypt("other:payload")
    with pytest.raises(ValueError):
        vault.decrypt("fernet:not-a-token")


def test_vault_reuses_key_file(tmp_path: Path) -> None:
    key_path = tmp_path / "keys" / "settings.key"
    token = SecretVault(key_path=key_path).encrypt("sk-1")

    assert key_path.exists()
    assert SecretVault(key_path=key_path).decrypt(token) == "sk-1"


def test_credentials_are_encrypted_at_rest(memory_store: MemoryStore, vault: SecretVault) -> None:
    settings_store = SettingsStore(memory_store, vault=vault)
    payload = {
        "credentials": [
            {"id": "c1", "provider_id": "openai-gpt4o", "name": "Main", "secret": "sk-abcdef", "status": "active"}
        ],
        "selections": {"openai-gpt4o": "c1"},
    }

    settings_store.save_credentials(payload)

    raw = memory_store.get(SETTINGS_RECORD)
    assert raw is not None
    stored = raw["credentials"][0]
    assert "secret" not in stored
    assert stored["secret_hint"] == "sk*****ef"
    loaded = settings_store.load_credentials()
    assert loaded.credentials[0].secret == "sk-abcdef"
    assert loaded.selections == {"openai-gpt4o": "c1"}


def test_legacy_api_keys_are_migrated_once(memory_store: MemoryStore, vault: SecretVault) -> None:
    memory_store.put(
        SETTINGS_RECORD,
        {"provider": "openai-gpt4o-mini", "apiKeys": {"openai-gpt4o-mini": "sk-legacy", "anthropic-claude": ""}},
    )
    settings_store = SettingsStore(memory_store, vault=vault)

    first = settings_store.load_credentials()
    second = settings_store.load_credentials()

    assert [(c.provider_id, c.name, c.secret) for c in first.credentials] == [
        ("openai-gpt4o-mini", MIGRATED_CREDENTIAL_NAME, "sk-legacy")
    ]
    assert first.selections == {"openai-gpt4o-mini": first.credentials[0].id}
    assert second.credentials == first.credentials
    raw = memory_store.get(SETTINGS_RECORD)
    assert raw is not None
    assert "apiKeys" not in raw
    assert "sk-legacy" not in json.dumps(raw)
    assert raw["provider"] == "openai-gpt4o-mini"


def test_undecryptable_credential_is_marked_inactive(tmp_path: Path, memory_store: MemoryStore) -> None:
    writer = SettingsStore(memory_store, vault=SecretVault(key_path=tmp_path / "a.key"))
    writer.save_credentials(
        {"credentials": [{"id": "c1", "provider_id": "openai-gpt4o", "name": "Main", "secret": "sk-1"}]}
    )

    loaded = SettingsStore(memory_store, vault=SecretVault(key_path=tmp_path / "b.key")).load_credentials()

    assert loaded.credentials[0].status == "inactive"
    assert loaded.credentials[0].secret == ""


def test_undecryptable_secret_survives_save_until_key_returns(
    tmp_path: Path, memory_store: MemoryStore, catalog: ProviderCatalog
) -> None:
    original_key = SecretVault(key_path=tmp_path / "a.key")
    SettingsStore(memory_store, vault=original_key).save_credentials(
        {"credentials": [{"id": "c1", "provider_id": "openai-gpt4o", "name": "Main", "secret": "sk-keepme"}]}
    )
    swapped = SettingsStore(memory_store, vault=SecretVault(key_path=tmp_path / "b.key"))
    registry = CredentialRegistry(catalog, swapped.load_credentials(), on_change=swapped.save_credentials)

    registry.add("anthropic-claude", "Other", "sk-ant-new")

    restored = SettingsStore(memory_store, vault=original_key).load_credentials()
    recovered = next(item for item in restored.credentials if item.id == "c1")
    assert recovered.secret == "sk-keepme"
    assert recovered.sealed_secret is None
    assert recovered.status == "inactive"


def test_replacing_sealed_secret_encrypts_new_value(
    tmp_path: Path, memory_store: MemoryStore, catalog: ProviderCatalog
) -> None:
    SettingsStore(memory_store, vault=SecretVault(key_path=tmp_path / "a.key")).save_credentials(
        {"credentials": [{"id": "c1", "provider_id": "openai-gpt4o", "name": "Main", "secret": "sk-lost"}]}
    )
    current = SettingsStore(memory_store, vault=SecretVault(key_path=tmp_path / "b.key"))
    registry = CredentialRegistry(catalog, current.load_credentials(), on_change=current.save_credentials)

    registry.update("c1", secret="sk-fresh", status="active")

    reloaded = current.load_credentials().credentials[0]
    assert (reloaded.secret, reloaded.status, reloaded.sealed_secret) == ("sk-fresh", "active", None)


@pytest.mark.parametrize(
    ("value", "expected"),
    [("", ""), ("abc", "***"), ("sk-abcdef", "sk*****ef")],
)
def test_redact_secret(value: str, expected: str) -> None:
    assert redact_secret(value) == expected
