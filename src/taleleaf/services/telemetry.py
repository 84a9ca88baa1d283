"""In-process telemetry bus for governor events."""

from __future__ import annotations

import logging
from collections import deque
from threading import Lock
from typing import Any, Callable, Mapping

__all__ = [
    "TelemetryBus",
    "InMemoryTelemetrySink",
    "ALL_EVENTS",
    "DISPATCH_DENIED",
    "DISPATCH_COMPLETED",
    "DISPATCH_FAILED",
    "RATE_LIMIT_RECONCILED",
]

LOGGER = logging.getLogger(__name__)

TelemetryListener = Callable[[dict[str, Any]], None]

ALL_EVENTS = "*"
DISPATCH_DENIED = "ai_dispatch_denied"
DISPATCH_COMPLETED = "ai_dispatch_completed"
DISPATCH_FAILED = "ai_dispatch_failed"
RATE_LIMIT_RECONCILED = "ai_rate_limit_reconciled"


class TelemetryBus:
    """Routes structured events to listeners registered per event name.

    Listeners registered for :data:`ALL_EVENTS` receive every event. A failing
    listener is logged and never breaks the emitter.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[TelemetryListener]] = {}
        self._lock = Lock()

    def register_listener(self, event_name: str, callback: TelemetryListener) -> None:
        if not event_name:
            raise ValueError("event_name is required")
        with self._lock:
            listeners = self._listeners.setdefault(event_name, [])
            if callback not in listeners:
                listeners.append(callback)

    def unregister_listener(self, event_name: str, callback: TelemetryListener) -> None:
        with self._lock:
            listeners = self._listeners.get(event_name)
            if listeners and callback in listeners:
                listeners.remove(callback)

    def emit(self, event_name: str, payload: Mapping[str, Any] | None = None) -> None:
        """Broadcast a structured telemetry event to in-process listeners."""

        if not event_name:
            return
        event_payload: dict[str, Any] = {"event": event_name}
        if payload:
            event_payload.update(payload)
        with self._lock:
            listeners = list(self._listeners.get(event_name, ()))
            listeners.extend(self._listeners.get(ALL_EVENTS, ()))
        for callback in listeners:
            try:
                callback(dict(event_payload))
            except Exception:  # pragma: no cover - listeners must not break emitters
                LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
        LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)


class InMemoryTelemetrySink:
    """Ring-buffer listener for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[dict[str, Any]] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __call__(self, payload: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(payload)

    def tail(self, limit: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def names(self) -> list[str]:
        return [str(event.get("event")) for event in self.tail()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)
