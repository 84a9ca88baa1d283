"""Simulated per-provider token buckets reconciled against provider rejections.

Providers expose no endpoint reporting the tokens left in the current window,
so each bucket drains locally at ``drain_rate`` tokens per second and is
corrected whenever a 429-style rejection hands back authoritative numbers.
Until that happens every admission decision is an advisory estimate.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import asdict, dataclass, replace
from threading import Lock
from typing import Any, Callable, Mapping

__all__ = [
    "TokenBucket",
    "RateLimitEvent",
    "AdmissionDecision",
    "TokenBucketTracker",
]

LOGGER = logging.getLogger(__name__)
_SNAPSHOT_VERSION = 1
_EPSILON = 1e-9


@dataclass(slots=True)
class TokenBucket:
    """Simulated rate window for a single provider."""

    provider_id: str
    used: float
    limit: int
    drain_rate: float
    last_update: float
    is_simulated: bool = True
    retry_after: float | None = None

    @property
    def available(self) -> float:
        return max(0.0, self.limit - self.used)

    @property
    def utilization(self) -> float:
        return self.used / self.limit if self.limit > 0 else 0.0

    def as_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class RateLimitEvent:
    """Authoritative figures parsed from a provider's rate-limit rejection."""

    provider_id: str
    limit: int
    used: int
    requested: int
    retry_after: float | None = None
    message: str = ""

    def as_payload(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "limit": self.limit,
            "used": self.used,
            "requested": self.requested,
            "retry_after": self.retry_after,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class AdmissionDecision:
    """Outcome of an admission-control check."""

    allowed: bool
    reason: str | None = None
    wait_seconds: int | None = None
    available: float | None = None


class TokenBucketTracker:
    """Thread-safe registry of :class:`TokenBucket` instances.

    Args:
        defaults: ``provider_id -> (limit, drain_rate)`` used to seed buckets.
        clock: Time source in seconds; injectable for tests.
        on_change: Called with a snapshot payload after every mutation.
    """

    def __init__(
        self,
        defaults: Mapping[str, tuple[int, float]] | None = None,
        *,
        clock: Callable[[], float] = time.time,
        on_change: Callable[[Mapping[str, Any]], None] | None = None,
        fallback_limit: int = 30_000,
    ) -> None:
        self._defaults = dict(defaults or {})
        self._clock = clock
        self._on_change = on_change
        self._fallback_limit = max(1, int(fallback_limit))
        self._buckets: dict[str, TokenBucket] = {}
        self._locks: dict[str, Lock] = {}
        self._registry_lock = Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def status(self, provider_id: str) -> TokenBucket | None:
        """Return a drained copy of the provider's bucket, or None when untracked."""

        with self._lock_for(provider_id):
            bucket = self._buckets.get(provider_id)
            if bucket is None:
                return None
            self._drain(bucket)
            snapshot = replace(bucket)
        self._persist()
        return snapshot

    def can_admit(self, provider_id: str, estimated_tokens: int, *, in_flight: int = 0) -> AdmissionDecision:
        """Check whether ``estimated_tokens`` fit in the provider's window.

        ``in_flight`` counts tokens of admitted requests still awaiting a
        response; they occupy the window for this check only and are never
        written into the bucket.
        """

        needed = max(0, int(estimated_tokens))
        with self._lock_for(provider_id):
            bucket = self._buckets.get(provider_id)
            if bucket is None:
                return AdmissionDecision(allowed=True, reason="untracked")
            self._drain(bucket)
            decision = self._decide(bucket, needed, max(0, int(in_flight)))
        self._persist()
        if not decision.allowed:
            LOGGER.info(
                "Admission denied for %s: %s (wait=%s)",
                provider_id,
                decision.reason,
                decision.wait_seconds,
            )
        return decision

    def record_confirmed(self, provider_id: str, tokens_used: int) -> TokenBucket:
        """Add usage from a confirmed successful call."""

        with self._lock_for(provider_id):
            bucket = self._ensure(provider_id)
            self._drain(bucket)
            bucket.used += max(0, int(tokens_used))
            snapshot = replace(bucket)
        LOGGER.debug(
            "Recorded %s confirmed token(s) for %s (used=%.0f/%s)",
            tokens_used,
            provider_id,
            snapshot.used,
            snapshot.limit,
        )
        self._persist()
        return snapshot

    def reconcile(self, provider_id: str, event: RateLimitEvent) -> TokenBucket:
        """Overwrite the simulated bucket with figures from a provider rejection."""

        with self._lock_for(provider_id):
            bucket = self._ensure(provider_id)
            bucket.used = float(max(0, event.used))
            if event.limit > 0:
                bucket.limit = int(event.limit)
            bucket.retry_after = event.retry_after if event.retry_after and event.retry_after > 0 else None
            bucket.last_update = self._clock()
            bucket.is_simulated = False
            snapshot = replace(bucket)
        LOGGER.info(
            "Reconciled %s bucket from provider: used=%s limit=%s retry_after=%s",
            provider_id,
            event.used,
            event.limit,
            event.retry_after,
        )
        self._persist()
        return snapshot

    def clear_throttle(self, provider_id: str) -> None:
        with self._lock_for(provider_id):
            bucket = self._buckets.get(provider_id)
            if bucket is None or bucket.retry_after is None:
                return
            bucket.retry_after = None
        self._persist()

    def providers(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._buckets)

    def snapshot(self) -> dict[str, Any]:
        with self._registry_lock:
            provider_ids = list(self._buckets)
        buckets: dict[str, Any] = {}
        for provider_id in provider_ids:
            with self._lock_for(provider_id):
                bucket = self._buckets.get(provider_id)
                if bucket is not None:
                    buckets[provider_id] = bucket.as_payload()
        return {"version": _SNAPSHOT_VERSION, "buckets": buckets}

    def restore(self, payload: Mapping[str, Any] | None) -> int:
        """Load buckets from a snapshot; usage is drained by the elapsed time on first read."""

        if not payload:
            return 0
        raw_buckets = payload.get("buckets")
        if not isinstance(raw_buckets, Mapping):
            return 0
        restored = 0
        for provider_id, raw in raw_buckets.items():
            bucket = _bucket_from_payload(str(provider_id), raw)
            if bucket is None:
                continue
            with self._lock_for(bucket.provider_id):
                self._buckets[bucket.provider_id] = bucket
            restored += 1
        LOGGER.debug("Restored %d rate-limit bucket(s)", restored)
        return restored

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _lock_for(self, provider_id: str) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(provider_id)
            if lock is None:
                lock = Lock()
                self._locks[provider_id] = lock
            return lock

    def _ensure(self, provider_id: str) -> TokenBucket:
        bucket = self._buckets.get(provider_id)
        if bucket is None:
            limit, drain_rate = self._defaults.get(
                provider_id, (self._fallback_limit, self._fallback_limit / 60.0)
            )
            bucket = TokenBucket(
                provider_id=provider_id,
                used=0.0,
                limit=int(limit),
                drain_rate=float(drain_rate),
                last_update=self._clock(),
            )
            with self._registry_lock:
                self._buckets[provider_id] = bucket
        return bucket

    def _drain(self, bucket: TokenBucket) -> None:
        now = self._clock()
        elapsed = max(0.0, now - bucket.last_update)
        if elapsed <= 0:
            return
        bucket.used = max(0.0, bucket.used - elapsed * bucket.drain_rate)
        if bucket.retry_after is not None:
            remaining = bucket.retry_after - elapsed
            bucket.retry_after = remaining if remaining > _EPSILON else None
        bucket.last_update = now

    def _decide(self, bucket: TokenBucket, needed: int, in_flight: int = 0) -> AdmissionDecision:
        occupied = bucket.used + in_flight
        available = max(0.0, bucket.limit - occupied)
        if bucket.retry_after is not None:
            return AdmissionDecision(
                allowed=False,
                reason=f"Provider requested a pause of {math.ceil(bucket.retry_after)}s before the next request.",
                wait_seconds=math.ceil(bucket.retry_after),
                available=available,
            )
        if needed > bucket.limit:
            return AdmissionDecision(
                allowed=False,
                reason=(
                    f"Request needs ~{needed:,} tokens but the {bucket.provider_id} limit is "
                    f"{bucket.limit:,} tokens per minute."
                ),
                available=available,
            )
        if available + _EPSILON >= needed:
            return AdmissionDecision(allowed=True, available=available)
        deficit = occupied + needed - bucket.limit
        wait = math.ceil(deficit / bucket.drain_rate - _EPSILON) if bucket.drain_rate > 0 else None
        return AdmissionDecision(
            allowed=False,
            reason=(
                f"Rate limit would be exceeded: ~{needed:,} tokens requested, "
                f"{available:,.0f} of {bucket.limit:,} available."
            ),
            wait_seconds=wait,
            available=available,
        )

    def _persist(self) -> None:
        callback = self._on_change
        if callback is None:
            return
        try:
            callback(self.snapshot())
        except Exception:
            LOGGER.warning("Rate-limit persistence callback failed", exc_info=True)


def _bucket_from_payload(provider_id: str, raw: Any) -> TokenBucket | None:
    if not isinstance(raw, Mapping):
        return None
    try:
        retry_after = raw.get("retry_after")
        return TokenBucket(
            provider_id=provider_id,
            used=max(0.0, float(raw.get("used", 0.0))),
            limit=max(1, int(raw["limit"])),
            drain_rate=max(0.0, float(raw["drain_rate"])),
            last_update=float(raw["last_update"]),
            is_simulated=bool(raw.get("is_simulated", True)),
            retry_after=float(retry_after) if retry_after else None,
        )
    except (KeyError, TypeError, ValueError) as exc:
        LOGGER.warning("Ignoring malformed bucket snapshot for %s: %s", provider_id, exc)
        return None
