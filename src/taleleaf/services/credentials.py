"""Multi-credential registry for AI providers.

Users commonly hold one API key per vendor but switch between that vendor's
model variants, so credentials are resolved across a provider's alias group
instead of demanding a separate key per variant.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from threading import RLock
from typing import Any, Callable, Literal, Mapping

from ..ai.providers import ProviderCatalog

__all__ = [
    "CredentialStatus",
    "StoredCredential",
    "CredentialState",
    "CredentialRegistry",
    "migrate_legacy_credentials",
    "MIGRATED_CREDENTIAL_NAME",
]

LOGGER = logging.getLogger(__name__)

CredentialStatus = Literal["active", "inactive"]
_STATUSES: tuple[str, ...] = ("active", "inactive")
MIGRATED_CREDENTIAL_NAME = "Migrated key"


def _new_credential_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class StoredCredential:
    """A named secret belonging to one provider."""

    id: str
    provider_id: str
    name: str
    secret: str
    status: CredentialStatus = "active"
    created_at: float = field(default_factory=time.time)
    last_used_at: float | None = None
    # Ciphertext the current vault key could not open; written back untouched.
    sealed_secret: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "provider_id": self.provider_id,
            "name": self.name,
            "secret": self.secret,
            "status": self.status,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
            **({"sealed_secret": self.sealed_secret} if self.sealed_secret else {}),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "StoredCredential | None":
        try:
            credential_id = str(payload["id"])
            provider_id = str(payload["provider_id"])
        except KeyError:
            LOGGER.debug("Skipping credential payload without id/provider: %s", sorted(payload))
            return None
        status = str(payload.get("status") or "active")
        if status not in _STATUSES:
            status = "inactive"
        last_used = payload.get("last_used_at")
        return cls(
            id=credential_id,
            provider_id=provider_id,
            name=str(payload.get("name") or ""),
            secret=str(payload.get("secret") or ""),
            status=status,  # type: ignore[arg-type]
            created_at=float(payload.get("created_at") or 0.0),
            last_used_at=float(last_used) if last_used is not None else None,
            sealed_secret=str(payload.get("sealed_secret") or "") or None,
        )


@dataclass(slots=True)
class CredentialState:
    """Serializable registry contents: credentials plus per-provider selection."""

    credentials: list[StoredCredential] = field(default_factory=list)
    selections: dict[str, str | None] = field(default_factory=dict)

    def copy(self) -> "CredentialState":
        return CredentialState(credentials=list(self.credentials), selections=dict(self.selections))

    def to_payload(self) -> dict[str, Any]:
        return {
            "credentials": [credential.to_payload() for credential in self.credentials],
            "selections": {key: value for key, value in self.selections.items() if value},
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "CredentialState":
        if not payload:
            return cls()
        credentials: list[StoredCredential] = []
        for entry in payload.get("credentials") or ():
            if not isinstance(entry, Mapping):
                continue
            credential = StoredCredential.from_payload(entry)
            if credential is not None:
                credentials.append(credential)
        raw_selections = payload.get("selections")
        selections: dict[str, str | None] = {}
        if isinstance(raw_selections, Mapping):
            selections = {str(key): (str(value) if value else None) for key, value in raw_selections.items()}
        return cls(credentials=credentials, selections=selections)


def migrate_legacy_credentials(
    legacy: Mapping[str, str] | None,
    current: CredentialState,
    *,
    now: float | None = None,
    id_factory: Callable[[], str] = _new_credential_id,
) -> CredentialState:
    """Fold legacy ``provider_id -> secret`` pairs into the credential registry.

    Returns a new state; ``current`` is left untouched. Secrets that already
    exist for a provider are skipped, so running the upgrade twice is a no-op.
    A provider without a selection gets the migrated credential selected.
    """

    upgraded = current.copy()
    if not legacy:
        return upgraded
    timestamp = time.time() if now is None else now
    for provider_id, secret in legacy.items():
        secret_value = (secret or "").strip()
        if not provider_id or not secret_value:
            continue
        existing = next(
            (
                credential
                for credential in upgraded.credentials
                if credential.provider_id == provider_id and credential.secret == secret_value
            ),
            None,
        )
        if existing is None:
            existing = StoredCredential(
                id=id_factory(),
                provider_id=provider_id,
                name=MIGRATED_CREDENTIAL_NAME,
                secret=secret_value,
                created_at=timestamp,
            )
            upgraded.credentials.append(existing)
        if not upgraded.selections.get(provider_id):
            upgraded.selections[provider_id] = existing.id
    return upgraded


class CredentialRegistry:
    """Owns stored credentials and the selected credential per provider.

    Every mutation calls ``on_change`` with the serializable state so the
    caller can persist it (usually through a background writer).
    """

    def __init__(
        self,
        catalog: ProviderCatalog,
        state: CredentialState | None = None,
        *,
        on_change: Callable[[Mapping[str, Any]], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._catalog = catalog
        self._state = state.copy() if state is not None else CredentialState()
        self._on_change = on_change
        self._clock = clock
        self._lock = RLock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def credentials(self, provider_id: str | None = None) -> list[StoredCredential]:
        with self._lock:
            if provider_id is None:
                return list(self._state.credentials)
            return [item for item in self._state.credentials if item.provider_id == provider_id]

    def get(self, credential_id: str) -> StoredCredential | None:
        with self._lock:
            return self._find(credential_id)

    def selection(self, provider_id: str) -> str | None:
        with self._lock:
            return self._state.selections.get(provider_id)

    def snapshot(self) -> CredentialState:
        with self._lock:
            return self._state.copy()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def add(
        self,
        provider_id: str,
        name: str,
        secret: str,
        status: CredentialStatus = "active",
    ) -> StoredCredential:
        self._catalog.require(provider_id)
        secret_value = (secret or "").strip()
        if not secret_value:
            raise ValueError("Credential secret must not be empty")
        _validate_status(status)
        with self._lock:
            credential = StoredCredential(
                id=_new_credential_id(),
                provider_id=provider_id,
                name=(name or "").strip() or f"{provider_id} key",
                secret=secret_value,
                status=status,
                created_at=self._clock(),
            )
            self._state.credentials.append(credential)
            if not self._state.selections.get(provider_id):
                self._state.selections[provider_id] = credential.id
            LOGGER.info("Added credential %s for %s", credential.id, provider_id)
            self._changed()
            return credential

    def update(
        self,
        credential_id: str,
        *,
        name: str | None = None,
        secret: str | None = None,
        status: CredentialStatus | None = None,
    ) -> StoredCredential | None:
        if status is not None:
            _validate_status(status)
        with self._lock:
            current = self._find(credential_id)
            if current is None:
                return None
            changes: dict[str, Any] = {}
            if name is not None:
                changes["name"] = name.strip() or current.name
            if secret is not None:
                if not secret.strip():
                    raise ValueError("Credential secret must not be empty")
                changes["secret"] = secret.strip()
                changes["sealed_secret"] = None
            if status is not None:
                changes["status"] = status
            updated = replace(current, **changes)
            self._replace(updated)
            if updated.status == "inactive" and self._state.selections.get(updated.provider_id) == updated.id:
                self._state.selections[updated.provider_id] = None
                LOGGER.info("Cleared selection for %s: credential %s deactivated", updated.provider_id, updated.id)
            self._changed()
            return updated

    def delete(self, credential_id: str) -> bool:
        with self._lock:
            current = self._find(credential_id)
            if current is None:
                return False
            self._state.credentials = [item for item in self._state.credentials if item.id != credential_id]
            if self._state.selections.get(current.provider_id) == credential_id:
                self._state.selections[current.provider_id] = None
            LOGGER.info("Deleted credential %s for %s", credential_id, current.provider_id)
            self._changed()
            return True

    def select(self, provider_id: str, credential_id: str | None) -> None:
        with self._lock:
            if credential_id is None:
                self._state.selections[provider_id] = None
                self._changed()
                return
            credential = self._find(credential_id)
            if credential is None:
                raise ValueError(f"Unknown credential: {credential_id}")
            if credential.provider_id != provider_id:
                raise ValueError(
                    f"Credential {credential_id} belongs to {credential.provider_id}, not {provider_id}"
                )
            self._state.selections[provider_id] = credential_id
            self._changed()

    # ------------------------------------------------------------------
    # Request-time resolution
    # ------------------------------------------------------------------
    def operational_credential(self, provider_id: str) -> StoredCredential | None:
        """Return the credential to use for a request against ``provider_id``.

        Explicit active selections across the alias group win. Failing that,
        an alias holding exactly one active credential has it auto-selected
        and persisted. Otherwise there is no usable credential.
        """

        with self._lock:
            aliases = self._catalog.aliases(provider_id)
            for alias in aliases:
                selected_id = self._state.selections.get(alias)
                if not selected_id:
                    continue
                credential = self._find(selected_id)
                if credential is not None and credential.is_active:
                    return credential
            for alias in aliases:
                active = [item for item in self._state.credentials if item.provider_id == alias and item.is_active]
                if len(active) == 1:
                    credential = active[0]
                    self._state.selections[alias] = credential.id
                    LOGGER.info("Auto-selected credential %s for %s", credential.id, alias)
                    self._changed()
                    return credential
            return None

    def record_usage(self, provider_id: str) -> None:
        """Stamp ``last_used_at`` on the operational credential; never raises."""

        try:
            with self._lock:
                credential = self.operational_credential(provider_id)
                if credential is None:
                    return
                self._replace(replace(credential, last_used_at=self._clock()))
                self._changed()
        except Exception:
            LOGGER.warning("Failed to record credential usage for %s", provider_id, exc_info=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _find(self, credential_id: str) -> StoredCredential | None:
        for credential in self._state.credentials:
            if credential.id == credential_id:
                return credential
        return None

    def _replace(self, credential: StoredCredential) -> None:
        self._state.credentials = [
            credential if item.id == credential.id else item for item in self._state.credentials
        ]

    def _changed(self) -> None:
        callback = self._on_change
        if callback is None:
            return
        try:
            callback(self._state.to_payload())
        except Exception:
            LOGGER.warning("Credential persistence callback failed", exc_info=True)


def _validate_status(status: str) -> None:
    if status not in _STATUSES:
        raise ValueError(f"Invalid credential status: {status}")
