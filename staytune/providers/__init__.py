"""Fine-tuning provider access (OpenAI)."""

from __future__ import annotations

from staytune.providers.openai_client import (
    CredentialMissingError,
    CredentialResolver,
    ProviderClient,
    ProviderClientFactory,
    ProviderConfig,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    RemoteFineTuneJob,
    RemoteVectorStore,
    SettingsCredentialResolver,
    describe_error,
    serialize_payload,
)

__all__ = [
    "CredentialMissingError",
    "CredentialResolver",
    "ProviderClient",
    "ProviderClientFactory",
    "ProviderConfig",
    "ProviderError",
    "ProviderRateLimitError",
    "ProviderTimeoutError",
    "RemoteFineTuneJob",
    "RemoteVectorStore",
    "SettingsCredentialResolver",
    "describe_error",
    "serialize_payload",
]
