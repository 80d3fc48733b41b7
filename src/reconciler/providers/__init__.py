"""Provider API clients for the reconciler."""

from .provider_client import (
    ProviderAPIError,
    ProviderClient,
    ProviderNotFoundError,
    ProviderTimeoutError,
)

__all__ = [
    "ProviderAPIError",
    "ProviderClient",
    "ProviderNotFoundError",
    "ProviderTimeoutError",
]
