"""Service layer helpers (credentials, settings, storage, telemetry)."""

from .credentials import CredentialRegistry, CredentialState, StoredCredential, migrate_legacy_credentials
from .store import BackgroundWriter, JsonFileStore, KeyValueStore, MemoryStore
from .telemetry import InMemoryTelemetrySink, TelemetryBus

__all__ = [
    "CredentialRegistry",
    "CredentialState",
    "StoredCredential",
    "migrate_legacy_credentials",
    "BackgroundWriter",
    "JsonFileStore",
    "KeyValueStore",
    "MemoryStore",
    "InMemoryTelemetrySink",
    "TelemetryBus",
]
