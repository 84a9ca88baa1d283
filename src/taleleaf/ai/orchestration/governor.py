"""Request governor: credential resolution, budgeting and admission control.

Every AI call made on behalf of the editor goes through
:meth:`RequestGovernor.dispatch`. The governor never retries; each failure is
raised with enough detail for the caller to decide what to do next.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any, Mapping, Sequence

from ...services.credentials import CredentialRegistry, StoredCredential
from ...services.telemetry import (
    DISPATCH_COMPLETED,
    DISPATCH_DENIED,
    DISPATCH_FAILED,
    RATE_LIMIT_RECONCILED,
    TelemetryBus,
)
from ...utils.logging import provider_extra
from ..client import ChatMessage, ProviderTransport, TransportError, TransportReply
from ..errors import CredentialMissing, ProviderError, RateLimited
from ..prompts import OUTPUT_TOKEN_ALLOWANCE, reading_assistant_prompt
from ..providers import ProviderCatalog, ProviderInfo
from ..utils.tokens import TokenEstimator
from .rate_limits import AdmissionDecision, RateLimitEvent, TokenBucketTracker

__all__ = [
    "GovernorConfig",
    "TokenEstimate",
    "AdmissionEstimate",
    "RequestGovernor",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class GovernorConfig:
    """Budget knobs applied to every request."""

    output_token_allowance: int = OUTPUT_TOKEN_ALLOWANCE
    cost_confirmation_threshold: float = 0.01
    large_request_tokens: int = 10_000

    @classmethod
    def from_settings(cls, settings: Any) -> "GovernorConfig":
        return cls(
            output_token_allowance=int(getattr(settings, "output_token_allowance", OUTPUT_TOKEN_ALLOWANCE)),
            cost_confirmation_threshold=float(getattr(settings, "cost_confirmation_threshold", 0.01)),
            large_request_tokens=int(getattr(settings, "large_request_tokens", 10_000)),
        )


@dataclass(frozen=True, slots=True)
class TokenEstimate:
    """Pre-flight token and cost estimate for one request."""

    provider_id: str
    input_tokens: int
    estimated_output_tokens: int
    total_tokens: int
    estimated_cost: float
    requires_confirmation: bool = False
    is_large: bool = False

    def as_payload(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "input_tokens": self.input_tokens,
            "estimated_output_tokens": self.estimated_output_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost": self.estimated_cost,
            "requires_confirmation": self.requires_confirmation,
            "is_large": self.is_large,
        }


@dataclass(frozen=True, slots=True)
class AdmissionEstimate:
    estimate: TokenEstimate
    decision: AdmissionDecision

    @property
    def allowed(self) -> bool:
        return self.decision.allowed


class RequestGovernor:
    """Orchestrates a chat request from credential lookup to bucket update.

    Transports are looked up by the provider's ``family`` so adding a vendor
    means registering another transport rather than branching here.
    """

    def __init__(
        self,
        catalog: ProviderCatalog,
        credentials: CredentialRegistry,
        tracker: TokenBucketTracker,
        transports: Mapping[str, ProviderTransport],
        *,
        estimator: TokenEstimator | None = None,
        config: GovernorConfig | None = None,
        telemetry: TelemetryBus | None = None,
    ) -> None:
        self._catalog = catalog
        self._credentials = credentials
        self._tracker = tracker
        self._transports = dict(transports)
        self._estimator = estimator or TokenEstimator()
        self._config = config or GovernorConfig()
        self._telemetry = telemetry
        self._rate_limit_events: dict[str, RateLimitEvent] = {}
        self._in_flight: dict[str, int] = {}
        self._lock = Lock()

    @property
    def config(self) -> GovernorConfig:
        return self._config

    @property
    def estimator(self) -> TokenEstimator:
        return self._estimator

    # ------------------------------------------------------------------
    # Pre-flight helpers
    # ------------------------------------------------------------------
    def build_system_prompt(self, context_text: str, system_prompt_override: str | None = None) -> str:
        if system_prompt_override:
            return system_prompt_override
        return reading_assistant_prompt(context_text or "")

    def estimate(
        self,
        provider_id: str,
        messages: Sequence[ChatMessage],
        context_text: str,
        system_prompt_override: str | None = None,
    ) -> TokenEstimate:
        provider = self._catalog.require(provider_id)
        system_prompt = self.build_system_prompt(context_text, system_prompt_override)
        input_tokens = self._estimator.estimate(system_prompt) + self._message_tokens(messages)
        return self._build_estimate(provider, input_tokens)

    def can_admit_estimate(self, provider_id: str, text: str) -> AdmissionEstimate:
        """Estimate ``text`` as a full prompt and check it against the bucket without consuming tokens."""

        provider = self._catalog.require(provider_id)
        estimate = self._build_estimate(provider, self._estimator.estimate(text))
        with self._lock:
            in_flight = self._in_flight.get(provider_id, 0)
        decision = self._tracker.can_admit(provider_id, estimate.total_tokens, in_flight=in_flight)
        return AdmissionEstimate(estimate=estimate, decision=decision)

    def rate_limit_info(self, provider_id: str) -> RateLimitEvent | None:
        with self._lock:
            return self._rate_limit_events.get(provider_id)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def dispatch(
        self,
        provider_id: str,
        messages: Sequence[ChatMessage],
        context_text: str,
        system_prompt_override: str | None = None,
        *,
        timeout: float | None = None,
    ) -> str:
        """Send a chat request and return the assistant's reply text.

        Raises:
            ValueError: ``provider_id`` is unknown or has no transport.
            CredentialMissing: No active credential resolves for the provider.
            RateLimited: Refused locally before any network call, or rejected
                by the provider (``provider_confirmed`` tells them apart).
            ProviderError: Any other HTTP, network or timeout failure.
        """

        provider = self._catalog.require(provider_id)
        transport = self._transport_for(provider)
        credential = self._resolve_credential(provider)

        system_prompt = self.build_system_prompt(context_text, system_prompt_override)
        estimate = self._build_estimate(
            provider, self._estimator.estimate(system_prompt) + self._message_tokens(messages)
        )
        total = estimate.total_tokens
        self._admit(provider, total)

        try:
            try:
                call = transport.send(provider, system_prompt, messages, credential)
                reply = await (asyncio.wait_for(call, timeout) if timeout is not None else call)
            except asyncio.TimeoutError as exc:
                self._emit(DISPATCH_FAILED, provider_id=provider.id, status=None, reason="timeout")
                raise ProviderError(
                    provider_id=provider.id,
                    status=None,
                    body=f"Request timed out after {timeout}s",
                ) from exc
            except TransportError as exc:
                if exc.is_rate_limit:
                    raise self._reconcile(provider, transport, exc, total) from exc
                LOGGER.warning("Request failed with status %s", exc.status, extra=provider_extra(provider.id))
                self._emit(DISPATCH_FAILED, provider_id=provider.id, status=exc.status)
                raise ProviderError(provider_id=provider.id, status=exc.status, body=exc.body) from exc
        finally:
            self._release(provider.id, total)

        self._complete(provider, reply, estimate)
        return reply.text

    async def aclose(self) -> None:
        """Close every registered transport."""

        for transport in self._transports.values():
            await transport.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _transport_for(self, provider: ProviderInfo) -> ProviderTransport:
        transport = self._transports.get(provider.family)
        if transport is None:
            raise ValueError(f"No transport registered for provider family '{provider.family}'")
        return transport

    def _resolve_credential(self, provider: ProviderInfo) -> StoredCredential | None:
        if not provider.requires_credential:
            return None
        credential = self._credentials.operational_credential(provider.id)
        if credential is None:
            self._emit(DISPATCH_DENIED, provider_id=provider.id, reason="credential_missing")
            raise CredentialMissing(provider_id=provider.id, provider_name=provider.name)
        return credential

    def _message_tokens(self, messages: Sequence[ChatMessage]) -> int:
        total = 0
        for message in messages:
            content = message.get("content") or ""
            if content:
                total += self._estimator.estimate(content)
        return total

    def _build_estimate(self, provider: ProviderInfo, input_tokens: int) -> TokenEstimate:
        output_tokens = max(0, self._config.output_token_allowance)
        total = input_tokens + output_tokens
        cost = provider.estimate_cost(input_tokens, output_tokens)
        return TokenEstimate(
            provider_id=provider.id,
            input_tokens=input_tokens,
            estimated_output_tokens=output_tokens,
            total_tokens=total,
            estimated_cost=cost,
            requires_confirmation=cost > self._config.cost_confirmation_threshold,
            is_large=total > self._config.large_request_tokens,
        )

    def _admit(self, provider: ProviderInfo, total: int) -> None:
        with self._lock:
            in_flight = self._in_flight.get(provider.id, 0)
            decision = self._tracker.can_admit(provider.id, total, in_flight=in_flight)
            if decision.allowed:
                self._in_flight[provider.id] = in_flight + total
                return
        self._emit(
            DISPATCH_DENIED,
            provider_id=provider.id,
            reason="rate_limited",
            estimated_tokens=total,
            wait_seconds=decision.wait_seconds,
        )
        raise RateLimited(
            provider_id=provider.id,
            reason=decision.reason or f"Rate limit reached for {provider.name}",
            wait_seconds=decision.wait_seconds,
            provider_confirmed=False,
        )

    def _release(self, provider_id: str, total: int) -> None:
        with self._lock:
            remaining = self._in_flight.get(provider_id, 0) - total
            if remaining > 0:
                self._in_flight[provider_id] = remaining
            else:
                self._in_flight.pop(provider_id, None)

    def _reconcile(
        self,
        provider: ProviderInfo,
        transport: ProviderTransport,
        error: TransportError,
        total: int,
    ) -> RateLimited:
        event = transport.parse_rate_limit(
            provider.id,
            error,
            total,
            fallback_limit=provider.tokens_per_minute,
        )
        self._tracker.reconcile(provider.id, event)
        with self._lock:
            self._rate_limit_events[provider.id] = event
        LOGGER.warning(
            "Provider rejected request: limit=%s used=%s requested=%s retry_after=%s",
            event.limit,
            event.used,
            event.requested,
            event.retry_after,
            extra=provider_extra(provider.id),
        )
        self._emit(RATE_LIMIT_RECONCILED, **event.as_payload())
        return RateLimited(
            provider_id=provider.id,
            reason=event.message or f"{provider.name} rate limit exceeded",
            wait_seconds=event.retry_after,
            provider_confirmed=True,
            event=event,
        )

    def _complete(self, provider: ProviderInfo, reply: TransportReply, estimate: TokenEstimate) -> None:
        if reply.usage is not None:
            self._tracker.record_confirmed(provider.id, reply.usage.total_tokens)
            self._credentials.record_usage(provider.id)
        with self._lock:
            self._rate_limit_events.pop(provider.id, None)
        self._tracker.clear_throttle(provider.id)
        self._emit(
            DISPATCH_COMPLETED,
            provider_id=provider.id,
            estimated_tokens=estimate.total_tokens,
            confirmed_tokens=reply.usage.total_tokens if reply.usage else None,
            estimated_cost=estimate.estimated_cost,
        )

    def _emit(self, event_name: str, **payload: Any) -> None:
        if self._telemetry is not None:
            self._telemetry.emit(event_name, payload)
