"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from .credentials import CredentialState, migrate_legacy_credentials
from .store import SETTINGS_RECORD, KeyValueStore

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".taleleaf"
_SETTINGS_VERSION = 2
_ENV_OVERRIDES: Mapping[str, str] = {
    "TALELEAF_PROVIDER": "provider",
    "TALELEAF_OPENAI_BASE_URL": "openai_base_url",
    "TALELEAF_ANTHROPIC_BASE_URL": "anthropic_base_url",
    "TALELEAF_ANTHROPIC_VERSION": "anthropic_version",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "TALELEAF_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "TALELEAF_REQUEST_TIMEOUT": "request_timeout",
    "TALELEAF_TEMPERATURE": "temperature",
    "TALELEAF_COST_CONFIRMATION_THRESHOLD": "cost_confirmation_threshold",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "TALELEAF_OUTPUT_TOKEN_ALLOWANCE": "output_token_allowance",
    "TALELEAF_CONTEXT_CHUNK_BUDGET": "context_chunk_budget",
    "TALELEAF_LARGE_REQUEST_TOKENS": "large_request_tokens",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_SECRET_FIELD = "secret_ciphertext"
_LEGACY_KEY_FIELDS: tuple[str, ...] = ("apiKeys", "api_keys")


@dataclass(slots=True)
class Settings:
    """User-configurable governor settings persisted between sessions."""

    provider: str = "openai-gpt4o-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_version: str = "2023-06-01"
    temperature: float = 0.7
    output_token_allowance: int = 500
    request_timeout: float = 90.0
    context_chunk_budget: int = 6_000
    cost_confirmation_threshold: float = 0.01
    large_request_tokens: int = 10_000
    debug_logging: bool = False


class SecretVault:
    """Encrypts and decrypts sensitive strings with a Fernet key stored on disk."""

    name = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None
        self._lock = Lock()

    @property
    def strategy(self) -> str:
        return self.name

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.name}:{token}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, payload = self._split_token(token)
        if prefix not in (None, self.name):
            raise ValueError(f"Unknown secret token prefix {prefix}")
        try:
            raw = self._get_fernet().decrypt(payload.encode("ascii"))
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        with self._lock:
            if self._fernet is None:
                self._fernet = Fernet(self._load_or_create_key())
            return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key

    @staticmethod
    def _split_token(token: str) -> tuple[str | None, str]:
        if ":" not in token:
            return None, token
        prefix, payload = token.split(":", 1)
        return (prefix or None), payload


class SettingsStore:
    """Persistence adapter for :class:`Settings` and the credential registry.

    Both live in the single ``ai-settings`` record; credential secrets are
    stored encrypted. A record written by the single-key-per-provider release
    (``apiKeys`` mapping) is upgraded when credentials are first loaded.
    """

    def __init__(self, store: KeyValueStore, *, vault: SecretVault | None = None) -> None:
        self._store = store
        self._vault = vault or SecretVault()
        self._lock = Lock()

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        raw_settings = payload.get("settings")
        if isinstance(raw_settings, Mapping):
            try:
                settings = Settings(**_filter_fields(raw_settings))
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
        elif isinstance(payload.get("provider"), str):
            settings = replace(settings, provider=payload["provider"])

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> None:
        with self._lock:
            payload = self._read_payload()
            payload["settings"] = asdict(settings)
            self._write_payload(payload)

    def load_credentials(self) -> CredentialState:
        """Return the stored credential state, upgrading legacy records in place."""

        with self._lock:
            payload = self._read_payload()
            state = CredentialState.from_payload(
                {
                    "credentials": [self._decrypt_entry(entry) for entry in payload.get("credentials") or ()],
                    "selections": payload.get("selections"),
                }
            )
            legacy = _legacy_keys(payload)
            plaintext_found = any(
                isinstance(entry, Mapping) and entry.get("secret") for entry in payload.get("credentials") or ()
            )
            if not legacy and not plaintext_found:
                return state
            upgraded = migrate_legacy_credentials(legacy, state)
            LOGGER.info(
                "Migrated %d legacy credential(s) into the registry",
                len(upgraded.credentials) - len(state.credentials),
            )
            for field_name in _LEGACY_KEY_FIELDS:
                payload.pop(field_name, None)
            self._merge_credentials(payload, upgraded.to_payload())
            self._write_payload(payload)
            return upgraded

    def save_credentials(self, state_payload: Mapping[str, Any]) -> None:
        """Persist registry state (as produced by ``CredentialState.to_payload``)."""

        with self._lock:
            payload = self._read_payload()
            self._merge_credentials(payload, state_payload)
            self._write_payload(payload)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _merge_credentials(self, payload: Dict[str, Any], state_payload: Mapping[str, Any]) -> None:
        payload["credentials"] = [
            self._encrypt_entry(entry) for entry in state_payload.get("credentials") or ()
        ]
        payload["selections"] = dict(state_payload.get("selections") or {})

    def _encrypt_entry(self, entry: Mapping[str, Any]) -> dict[str, Any]:
        stored = dict(entry)
        secret = stored.pop("secret", "") or ""
        sealed = stored.pop("sealed_secret", None)
        if not secret and sealed:
            stored[_SECRET_FIELD] = sealed
            stored["secret_hint"] = ""
            return stored
        stored[_SECRET_FIELD] = self._vault.encrypt(secret)
        stored["secret_hint"] = redact_secret(secret)
        return stored

    def _decrypt_entry(self, entry: Any) -> Any:
        if not isinstance(entry, Mapping):
            return entry
        decoded = dict(entry)
        ciphertext = decoded.pop(_SECRET_FIELD, None)
        decoded.pop("secret_hint", None)
        if ciphertext:
            try:
                decoded["secret"] = self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt credential %s: %s", decoded.get("id"), exc)
                decoded["secret"] = ""
                decoded["sealed_secret"] = ciphertext
                decoded["status"] = "inactive"
        elif decoded.get("secret"):
            LOGGER.info("Detected plaintext credential %s; migrating to encrypted storage.", decoded.get("id"))
        return decoded

    def _read_payload(self) -> Dict[str, Any]:
        payload = self._store.get(SETTINGS_RECORD)
        return dict(payload) if payload else {}

    def _write_payload(self, payload: Dict[str, Any]) -> None:
        payload["version"] = _SETTINGS_VERSION
        payload["secret_backend"] = self._vault.strategy
        self._store.put(SETTINGS_RECORD, payload)

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid float", env_name, value
                )
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}


def _legacy_keys(payload: Mapping[str, Any]) -> dict[str, str]:
    for field_name in _LEGACY_KEY_FIELDS:
        raw = payload.get(field_name)
        if isinstance(raw, Mapping):
            return {str(key): str(value) for key, value in raw.items() if isinstance(value, str) and value.strip()}
    return {}


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
