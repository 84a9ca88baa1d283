"""Provider catalog, transports, and request orchestration."""

from .errors import CredentialMissing, ErrorCode, EstimationDegraded, GovernorError, ProviderError, RateLimited
from .providers import DEFAULT_PROVIDERS, ProviderCatalog, ProviderInfo, default_catalog

__all__ = [
    "CredentialMissing",
    "ErrorCode",
    "EstimationDegraded",
    "GovernorError",
    "ProviderError",
    "RateLimited",
    "DEFAULT_PROVIDERS",
    "ProviderCatalog",
    "ProviderInfo",
    "default_catalog",
]
