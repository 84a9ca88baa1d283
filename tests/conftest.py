"""Shared pytest fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from taleleaf.ai.providers import ProviderCatalog, default_catalog
from taleleaf.services.settings import SecretVault
from taleleaf.services.store import MemoryStore

from helpers import FakeClock


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in list(os.environ):
        if name.startswith("TALELEAF_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TALELEAF_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(start=1_000.0)


@pytest.fixture
def catalog() -> ProviderCatalog:
    return default_catalog()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def vault(tmp_path: Path) -> SecretVault:
    return SecretVault(key_path=tmp_path / "settings.key")
