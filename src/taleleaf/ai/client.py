"""Provider transports and rate-limit rejection parsers.

Each transport family (OpenAI-compatible, Anthropic) sends one chat request
and normalizes failures into :class:`TransportError`. The governor never
branches on provider ids; it looks up the transport for the provider's family
and asks that transport to interpret a 429 rejection.
"""

from __future__ import annotations

import inspect
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Mapping, Protocol, Sequence

import httpx
from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from ..services.credentials import StoredCredential
from .orchestration.rate_limits import RateLimitEvent
from .providers import ProviderInfo

__all__ = [
    "ChatMessage",
    "EMPTY_REPLY",
    "TokenUsage",
    "TransportReply",
    "TransportError",
    "ProviderTransport",
    "OpenAITransport",
    "AnthropicTransport",
    "ScriptedTransport",
    "parse_duration",
    "parse_retry_after",
    "parse_openai_rate_limit",
    "parse_anthropic_rate_limit",
]

LOGGER = logging.getLogger(__name__)

ChatMessage = Mapping[str, str]
EMPTY_REPLY = "Sorry, I could not generate a response."
RATE_LIMIT_STATUS = 429

_OPENAI_LIMIT_PATTERN = re.compile(
    r"Limit\s*:?\s*(?P<limit>\d+)\s*,\s*Used\s*:?\s*(?P<used>\d+)\s*,\s*Requested\s*:?\s*(?P<requested>\d+)",
    re.IGNORECASE,
)
_TRY_AGAIN_PATTERN = re.compile(r"try again in\s+(?P<duration>[0-9.hms]+)", re.IGNORECASE)
_DURATION_PART = re.compile(r"(?P<value>\d+(?:\.\d+)?)(?P<unit>ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}
_CONTEXT_ONLY_PROMPT = "Respond using the context in the system prompt."


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """Usage counts a provider reported for a completed request."""

    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class TransportReply:
    text: str
    usage: TokenUsage | None = None


class TransportError(Exception):
    """Failure raised by a transport; ``status`` is None for network errors."""

    def __init__(
        self,
        status: int | None,
        body: str = "",
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(f"HTTP {status if status is not None else 'network'} error: {body}")
        self.status = status
        self.body = body
        self.headers: Dict[str, str] = {str(k).lower(): str(v) for k, v in (headers or {}).items()}

    @property
    def is_rate_limit(self) -> bool:
        return self.status == RATE_LIMIT_STATUS


class ProviderTransport(Protocol):
    """Sends a chat request for one provider family."""

    family: str

    async def send(
        self,
        provider: ProviderInfo,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        credential: StoredCredential | None,
    ) -> TransportReply:
        ...

    def parse_rate_limit(
        self,
        provider_id: str,
        error: TransportError,
        requested: int,
        *,
        fallback_limit: int = 0,
    ) -> RateLimitEvent:
        ...

    async def aclose(self) -> None:
        ...


# ----------------------------------------------------------------------
# Transports
# ----------------------------------------------------------------------
class OpenAITransport:
    """Chat completions through the official ``openai`` async SDK.

    One client is kept per credential secret. SDK retries are disabled so a
    429 reaches the governor untouched.
    """

    family = "openai"

    def __init__(
        self,
        *,
        base_url: str = "https://api.openai.com/v1",
        temperature: float | None = 0.7,
        max_tokens: int = 500,
        request_timeout: float | None = 90.0,
        client_factory: Callable[[str], AsyncOpenAI] | None = None,
    ) -> None:
        self._base_url = base_url
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._request_timeout = request_timeout
        self._client_factory = client_factory or self._build_client
        self._clients: Dict[str, AsyncOpenAI] = {}

    async def send(
        self,
        provider: ProviderInfo,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        credential: StoredCredential | None,
    ) -> TransportReply:
        client = self._client_for(credential.secret if credential else "")
        payload: Dict[str, Any] = {
            "model": provider.model,
            "messages": [{"role": "system", "content": system_prompt}, *_coerce_messages(messages)],
            "max_tokens": self._max_tokens,
        }
        if self._temperature is not None:
            payload["temperature"] = self._temperature
        LOGGER.debug("Sending chat completion via %s with %s message(s)", provider.model, len(payload["messages"]))
        try:
            completion = await client.chat.completions.create(**payload)
        except APIStatusError as exc:
            raise TransportError(exc.status_code, _status_error_body(exc), exc.response.headers) from exc
        except APIConnectionError as exc:
            raise TransportError(None, str(exc)) from exc

        choices = getattr(completion, "choices", None) or []
        text = ""
        if choices:
            message = getattr(choices[0], "message", None)
            text = getattr(message, "content", None) or ""
        usage = getattr(completion, "usage", None)
        reported = None
        if usage is not None:
            reported = TokenUsage(
                input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
                output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            )
        return TransportReply(text=text or EMPTY_REPLY, usage=reported)

    def parse_rate_limit(
        self,
        provider_id: str,
        error: TransportError,
        requested: int,
        *,
        fallback_limit: int = 0,
    ) -> RateLimitEvent:
        return parse_openai_rate_limit(provider_id, error, requested, fallback_limit=fallback_limit)

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            close = getattr(client, "close", None)
            if close is None:
                continue
            result = close()
            if inspect.isawaitable(result):
                await result

    def _client_for(self, api_key: str) -> AsyncOpenAI:
        client = self._clients.get(api_key)
        if client is None:
            client = self._client_factory(api_key)
            self._clients[api_key] = client
        return client

    def _build_client(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=api_key,
            base_url=self._base_url,
            timeout=self._request_timeout,
            max_retries=0,
        )


class AnthropicTransport:
    """Messages API over a shared ``httpx.AsyncClient``."""

    family = "anthropic"

    def __init__(
        self,
        *,
        base_url: str = "https://api.anthropic.com",
        api_version: str = "2023-06-01",
        max_tokens: int = 500,
        temperature: float | None = 0.7,
        request_timeout: float | None = 90.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_version = api_version
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=request_timeout)

    async def send(
        self,
        provider: ProviderInfo,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        credential: StoredCredential | None,
    ) -> TransportReply:
        headers = {
            "content-type": "application/json",
            "anthropic-version": self._api_version,
        }
        if credential is not None:
            headers["x-api-key"] = credential.secret
        body: Dict[str, Any] = {
            "model": provider.model,
            "max_tokens": self._max_tokens,
            "system": system_prompt,
            "messages": _anthropic_messages(messages),
        }
        if self._temperature is not None:
            body["temperature"] = self._temperature
        try:
            response = await self._client.post(f"{self._base_url}/v1/messages", headers=headers, json=body)
        except httpx.HTTPError as exc:
            raise TransportError(None, str(exc) or exc.__class__.__name__) from exc
        if response.status_code >= 400:
            raise TransportError(response.status_code, response.text, response.headers)

        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError(response.status_code, response.text, response.headers) from exc
        if not isinstance(data, Mapping):
            raise TransportError(response.status_code, response.text, response.headers)
        content = data.get("content") or []
        text = ""
        if isinstance(content, list) and content and isinstance(content[0], Mapping):
            text = str(content[0].get("text") or "")
        raw_usage = data.get("usage")
        usage = None
        if isinstance(raw_usage, Mapping):
            usage = TokenUsage(
                input_tokens=int(raw_usage.get("input_tokens") or 0),
                output_tokens=int(raw_usage.get("output_tokens") or 0),
            )
        return TransportReply(text=text or EMPTY_REPLY, usage=usage)

    def parse_rate_limit(
        self,
        provider_id: str,
        error: TransportError,
        requested: int,
        *,
        fallback_limit: int = 0,
    ) -> RateLimitEvent:
        return parse_anthropic_rate_limit(provider_id, error, requested, fallback_limit=fallback_limit)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


@dataclass(slots=True)
class ScriptedTransport:
    """Offline transport that replays queued replies or errors.

    Used by tests and by the CLI when no network access is wanted. Every call
    is appended to :attr:`calls`.
    """

    family: str = "scripted"
    replies: List[TransportReply | TransportError] = field(default_factory=list)
    default_reply: TransportReply | None = None
    calls: List[Dict[str, Any]] = field(default_factory=list)
    parser: Callable[..., RateLimitEvent] | None = None

    def queue(self, *items: TransportReply | TransportError | str) -> None:
        for item in items:
            self.replies.append(TransportReply(text=item) if isinstance(item, str) else item)

    async def send(
        self,
        provider: ProviderInfo,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        credential: StoredCredential | None,
    ) -> TransportReply:
        self.calls.append(
            {
                "provider_id": provider.id,
                "system_prompt": system_prompt,
                "messages": [dict(message) for message in messages],
                "credential_id": credential.id if credential else None,
            }
        )
        if self.replies:
            item = self.replies.pop(0)
        elif self.default_reply is not None:
            item = self.default_reply
        else:
            item = TransportReply(text=EMPTY_REPLY)
        if isinstance(item, TransportError):
            raise item
        return item

    def parse_rate_limit(
        self,
        provider_id: str,
        error: TransportError,
        requested: int,
        *,
        fallback_limit: int = 0,
    ) -> RateLimitEvent:
        parser = self.parser or parse_openai_rate_limit
        return parser(provider_id, error, requested, fallback_limit=fallback_limit)

    async def aclose(self) -> None:
        return None


# ----------------------------------------------------------------------
# Rate-limit parsing
# ----------------------------------------------------------------------
def parse_duration(value: str | None) -> float | None:
    """Parse OpenAI-style durations such as ``1h2m3.5s``, ``6m0s`` or ``900ms``."""

    if not value:
        return None
    text = value.strip()
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    total = 0.0
    matched = False
    for part in _DURATION_PART.finditer(text):
        matched = True
        total += float(part.group("value")) * _DURATION_UNITS[part.group("unit")]
    return total if matched else None


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header holding either seconds or an HTTP date."""

    if not value:
        return None
    raw = value.strip()
    if not raw:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        pass
    else:
        return seconds if seconds > 0 else None
    try:
        retry_at = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    delta = (retry_at - (now or datetime.now(timezone.utc))).total_seconds()
    return delta if delta > 0 else None


def parse_openai_rate_limit(
    provider_id: str,
    error: TransportError,
    requested: int,
    *,
    fallback_limit: int = 0,
) -> RateLimitEvent:
    """Build a :class:`RateLimitEvent` from an OpenAI 429 rejection.

    The error message ("Limit 30000, Used 29500, Requested 1200. Please try
    again in 1.4s") is authoritative; the ``x-ratelimit-*`` and
    ``retry-after`` headers fill in whatever the message leaves out.
    """

    message = _error_message(error.body)
    headers = error.headers
    limit = used = None
    asked = None
    match = _OPENAI_LIMIT_PATTERN.search(message)
    if match:
        limit = int(match.group("limit"))
        used = int(match.group("used"))
        asked = int(match.group("requested"))
    if limit is None:
        limit = _int_header(headers, "x-ratelimit-limit-tokens")
    if used is None and limit is not None:
        remaining = _int_header(headers, "x-ratelimit-remaining-tokens")
        if remaining is not None:
            used = max(0, limit - remaining)

    retry_after = None
    wait_match = _TRY_AGAIN_PATTERN.search(message)
    if wait_match:
        retry_after = parse_duration(wait_match.group("duration").rstrip("."))
    if retry_after is None and "retry-after-ms" in headers:
        millis = parse_duration(headers["retry-after-ms"])
        retry_after = millis / 1000.0 if millis is not None else None
    if retry_after is None:
        retry_after = parse_retry_after(headers.get("retry-after"))
    if retry_after is None:
        retry_after = parse_duration(headers.get("x-ratelimit-reset-tokens"))

    return _build_event(provider_id, limit, used, asked, requested, retry_after, message, fallback_limit)


def parse_anthropic_rate_limit(
    provider_id: str,
    error: TransportError,
    requested: int,
    *,
    fallback_limit: int = 0,
) -> RateLimitEvent:
    """Build a :class:`RateLimitEvent` from Anthropic's ``anthropic-ratelimit-*`` headers."""

    headers = error.headers
    limit = _int_header(headers, "anthropic-ratelimit-tokens-limit")
    remaining = _int_header(headers, "anthropic-ratelimit-tokens-remaining")
    if limit is None:
        limit = _int_header(headers, "anthropic-ratelimit-input-tokens-limit")
        remaining = _int_header(headers, "anthropic-ratelimit-input-tokens-remaining")
    used = max(0, limit - remaining) if limit is not None and remaining is not None else None
    retry_after = parse_retry_after(headers.get("retry-after"))
    if retry_after is None:
        retry_after = _reset_header_seconds(headers.get("anthropic-ratelimit-tokens-reset"))
    return _build_event(
        provider_id, limit, used, None, requested, retry_after, _error_message(error.body), fallback_limit
    )


# ----------------------------------------------------------------------
# Internal helpers
# ----------------------------------------------------------------------
def _build_event(
    provider_id: str,
    limit: int | None,
    used: int | None,
    asked: int | None,
    requested: int,
    retry_after: float | None,
    message: str,
    fallback_limit: int,
) -> RateLimitEvent:
    resolved_limit = limit if limit is not None else max(0, fallback_limit)
    # A rejection without usage figures means the window is exhausted.
    resolved_used = used if used is not None else resolved_limit
    return RateLimitEvent(
        provider_id=provider_id,
        limit=resolved_limit,
        used=resolved_used,
        requested=asked if asked is not None else max(0, int(requested)),
        retry_after=retry_after,
        message=message,
    )


def _coerce_messages(messages: Sequence[ChatMessage]) -> List[Dict[str, str]]:
    normalized: List[Dict[str, str]] = []
    for message in messages:
        role = str(message.get("role") or "user")
        content = str(message.get("content") or "")
        normalized.append({"role": role, "content": content})
    return normalized


def _anthropic_messages(messages: Sequence[ChatMessage]) -> List[Dict[str, str]]:
    conversation = [item for item in _coerce_messages(messages) if item["role"] in ("user", "assistant")]
    while conversation and conversation[0]["role"] != "user":
        conversation.pop(0)
    if not conversation:
        # The Messages API needs a user turn; the context travels in the system prompt.
        return [{"role": "user", "content": _CONTEXT_ONLY_PROMPT}]
    return conversation


def _status_error_body(exc: APIStatusError) -> str:
    try:
        return exc.response.text
    except Exception:  # pragma: no cover - streamed responses
        return json.dumps(exc.body) if exc.body is not None else str(exc)


def _error_message(body: str) -> str:
    if not body:
        return ""
    try:
        data = json.loads(body)
    except ValueError:
        return body
    if isinstance(data, Mapping):
        error = data.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
        if data.get("message"):
            return str(data["message"])
    return body


def _int_header(headers: Mapping[str, str], name: str) -> int | None:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(float(raw))
    except ValueError:
        return None


def _reset_header_seconds(value: str | None) -> float | None:
    if not value:
        return None
    try:
        reset_at = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if reset_at.tzinfo is None:
        reset_at = reset_at.replace(tzinfo=timezone.utc)
    delta = (reset_at - datetime.now(timezone.utc)).total_seconds()
    return delta if delta > 0 else None
