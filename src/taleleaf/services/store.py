"""Durable key-value storage for governor state."""

from __future__ import annotations

import json
import logging
import re
from concurrent.futures import Future, ThreadPoolExecutor
from copy import deepcopy
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Mapping, Protocol

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
    "BackgroundWriter",
    "SETTINGS_RECORD",
    "RATE_LIMITS_RECORD",
]

LOGGER = logging.getLogger(__name__)

SETTINGS_RECORD = "ai-settings"
RATE_LIMITS_RECORD = "rate-limits"
_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class KeyValueStore(Protocol):
    """Minimal durable store interface: JSON documents addressed by key."""

    def get(self, key: str) -> dict[str, Any] | None:
        ...

    def put(self, key: str, value: Mapping[str, Any]) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryStore:
    """In-process store used by tests and ephemeral sessions."""

    def __init__(self, initial: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._records: dict[str, dict[str, Any]] = {
            key: deepcopy(dict(value)) for key, value in (initial or {}).items()
        }
        self._lock = Lock()
        self.writes = 0

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(key)
            return deepcopy(record) if record is not None else None

    def put(self, key: str, value: Mapping[str, Any]) -> None:
        with self._lock:
            self._records[key] = deepcopy(dict(value))
            self.writes += 1

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)


class JsonFileStore:
    """Stores each record as ``<directory>/<key>.json`` with atomic replaces."""

    def __init__(self, directory: Path, *, write_attempts: int = 3) -> None:
        self._directory = Path(directory).expanduser()
        self._write_attempts = max(1, int(write_attempts))
        self._lock = Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"Invalid store key: {key!r}")
        return self._directory / f"{key}.json"

    def get(self, key: str) -> dict[str, Any] | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            LOGGER.warning("Store record %s is not valid JSON: %s", path, exc)
            return None
        if not isinstance(data, Mapping):
            LOGGER.warning("Store record %s is not a JSON object; ignoring", path)
            return None
        return dict(data)

    def put(self, key: str, value: Mapping[str, Any]) -> None:
        body = json.dumps(dict(value), indent=2, sort_keys=True)
        path = self.path_for(key)
        with self._lock:
            for attempt in self._retrying():
                with attempt:
                    self._write_atomic(path, body)
        LOGGER.debug("Store record %s written (%d bytes)", path, len(body))

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        with self._lock:
            path.unlink(missing_ok=True)

    def _write_atomic(self, path: Path, body: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(path)

    def _retrying(self) -> Retrying:
        return Retrying(
            reraise=True,
            stop=stop_after_attempt(self._write_attempts),
            wait=wait_exponential(multiplier=0.05, max=0.5),
            retry=retry_if_exception_type(OSError),
        )


class BackgroundWriter:
    """Single-thread executor that keeps persistence off the request path.

    Writes are fire-and-forget for callers; :meth:`flush` waits for queued
    writes and :meth:`close` drains and shuts the worker down.
    """

    def __init__(self, store: KeyValueStore, *, synchronous: bool = False) -> None:
        self._store = store
        self._synchronous = synchronous
        self._executor: ThreadPoolExecutor | None = None
        self._pending: list[Future[None]] = []
        self._lock = Lock()
        self._closed = False

    @property
    def store(self) -> KeyValueStore:
        return self._store

    def submit(self, key: str, value: Mapping[str, Any]) -> None:
        """Queue ``value`` for storage under ``key``."""

        payload = deepcopy(dict(value))
        self._schedule(key, self._store.put, key, payload)

    def defer(self, label: str, func: Callable[..., Any], *args: Any) -> None:
        """Run ``func(*args)`` on the writer thread, ordered with queued writes."""

        self._schedule(label, func, *args)

    def writer_for(self, key: str) -> Callable[[Mapping[str, Any]], None]:
        """Return a callback that persists payloads under ``key``."""

        def _persist(value: Mapping[str, Any]) -> None:
            self.submit(key, value)

        return _persist

    def flush(self, timeout: float | None = None) -> None:
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            future.result(timeout=timeout)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            executor = self._executor
        if executor is not None:
            executor.shutdown(wait=True)

    def _schedule(self, label: str, func: Callable[..., Any], *args: Any) -> None:
        if self._synchronous:
            self._run(label, func, *args)
            return
        with self._lock:
            if self._closed:
                LOGGER.warning("Dropping write for %s: writer is closed", label)
                return
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="taleleaf-store")
            future = self._executor.submit(self._run, label, func, *args)
            self._pending = [item for item in self._pending if not item.done()]
            self._pending.append(future)

    @staticmethod
    def _run(label: str, func: Callable[..., Any], *args: Any) -> None:
        try:
            func(*args)
        except Exception:
            LOGGER.exception("Failed to persist store record %s", label)
