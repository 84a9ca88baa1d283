"""Error types surfaced by the AI request governor.

Every failure carries enough structured detail (reason, wait hint, raw
provider payload) for the caller to decide whether to retry, wait, or ask the
user to fix their configuration. Nothing in this package retries on its own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from .orchestration.rate_limits import RateLimitEvent


class ErrorCode:
    """Constants for error codes used in governor failures."""

    CREDENTIAL_MISSING = "credential_missing"
    RATE_LIMITED = "rate_limited"
    PROVIDER_ERROR = "provider_error"
    ESTIMATION_DEGRADED = "estimation_degraded"


@dataclass
class GovernorError(Exception):
    """Base exception for governor failures.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for UI or log payloads."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


@dataclass
class CredentialMissing(GovernorError):
    """No usable credential exists for the requested provider."""

    error_code: str = field(default=ErrorCode.CREDENTIAL_MISSING)
    message: str = field(default="")
    details: dict[str, Any] = field(default_factory=dict)

    provider_id: str = ""
    provider_name: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            label = self.provider_name or self.provider_id
            self.message = f"API key required for {label}. Please configure it in settings."
        self.details.setdefault("provider_id", self.provider_id)
        super().__post_init__()


@dataclass
class RateLimited(GovernorError):
    """The request was refused locally or by the provider because of rate limits.

    ``provider_confirmed`` is False when the local bucket simulation refused
    the request before any network call.
    """

    error_code: str = field(default=ErrorCode.RATE_LIMITED)
    message: str = field(default="")
    details: dict[str, Any] = field(default_factory=dict)

    provider_id: str = ""
    reason: str = ""
    wait_seconds: float | None = None
    provider_confirmed: bool = False
    event: "RateLimitEvent | None" = None

    severity: ClassVar[str] = "warning"

    def __post_init__(self) -> None:
        if not self.message:
            self.message = self.reason or f"Rate limit reached for {self.provider_id}"
        self.details.setdefault("provider_id", self.provider_id)
        self.details.setdefault("provider_confirmed", self.provider_confirmed)
        if self.wait_seconds is not None:
            self.details.setdefault("wait_seconds", self.wait_seconds)
        super().__post_init__()


@dataclass
class ProviderError(GovernorError):
    """Network or HTTP failure reported by a provider transport."""

    error_code: str = field(default=ErrorCode.PROVIDER_ERROR)
    message: str = field(default="")
    details: dict[str, Any] = field(default_factory=dict)

    provider_id: str = ""
    status: int | None = None
    body: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            status = self.status if self.status is not None else "network"
            self.message = f"{self.provider_id} API error {status}: {self.body}"
        self.details.setdefault("provider_id", self.provider_id)
        self.details.setdefault("status", self.status)
        self.details.setdefault("body", self.body)
        super().__post_init__()


@dataclass(slots=True)
class EstimationDegraded:
    """Non-fatal notice recorded when chunking had to hard-truncate text."""

    page_index: int
    original_tokens: int
    token_budget: int
    dropped_chars: int
    error_code: str = ErrorCode.ESTIMATION_DEGRADED

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error_code,
            "page_index": self.page_index,
            "original_tokens": self.original_tokens,
            "token_budget": self.token_budget,
            "dropped_chars": self.dropped_chars,
        }


__all__ = [
    "ErrorCode",
    "GovernorError",
    "CredentialMissing",
    "RateLimited",
    "ProviderError",
    "EstimationDegraded",
]
