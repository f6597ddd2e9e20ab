"""OpenAI wrapper for the fine-tuning pipeline.

The pipeline talks to the provider through ProviderClient only.  This
module:
- Builds a fresh AsyncOpenAI client per operation from the tenant's
  resolved credential (no shared client cache, so key rotation is picked
  up immediately)
- Applies an explicit httpx timeout to every call; SDK-level retries are
  disabled
- Retries idempotent reads with tenacity exponential backoff; creates are
  never retried automatically (a duplicate remote job is worse than a
  failed one)
- Normalizes SDK errors to our domain exceptions
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
import openai
import structlog
from openai import AsyncOpenAI
from pydantic import SecretStr
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from staytune.config import Settings, get_settings

log = structlog.get_logger(__name__)

# Types of errors worth retrying (transient network/rate-limit failures)
_RETRYABLE = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class ProviderError(Exception):
    """Base exception for all provider call failures."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload

    def describe(self) -> str:
        """Operator-facing description, provider payload serialized as JSON."""
        body: dict[str, Any] = {"message": str(self)}
        if self.status_code is not None:
            body["status"] = self.status_code
        if self.payload is not None:
            body["error"] = self.payload
        return json.dumps(body, default=str, sort_keys=True)


class ProviderTimeoutError(ProviderError):
    """Provider call exceeded its timeout."""


class ProviderRateLimitError(ProviderError):
    """Provider rate limit exceeded."""


class CredentialMissingError(Exception):
    """No provider API key is configured for the tenant."""


def describe_error(exc: BaseException, *, max_chars: int = 2000) -> str:
    """Render an exception for storage in an ``error`` column."""
    if isinstance(exc, ProviderError):
        text = exc.describe()
    else:
        text = str(exc) or exc.__class__.__name__
    if len(text) > max_chars:
        text = text[: max_chars - 3] + "..."
    return text


def serialize_payload(payload: Any) -> str:
    """Serialize a remote error payload for storage."""
    return json.dumps(payload, default=str, sort_keys=True)


def _normalize(exc: openai.OpenAIError, operation: str) -> ProviderError:
    if isinstance(exc, openai.APITimeoutError):
        return ProviderTimeoutError(f"{operation} timed out")
    if isinstance(exc, openai.RateLimitError):
        return ProviderRateLimitError(
            f"{operation} rate limited", status_code=exc.status_code, payload=exc.body
        )
    if isinstance(exc, openai.APIStatusError):
        return ProviderError(
            f"{operation} failed: {exc.message}", status_code=exc.status_code, payload=exc.body
        )
    return ProviderError(f"{operation} failed: {exc}")


# ------------------------------------------------------------------ #
# Remote records
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class RemoteFineTuneJob:
    """The parts of a provider fine-tune job the pipeline reads."""

    id: str
    status: str
    fine_tuned_model: str | None = None
    model: str | None = None
    error: dict[str, Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_sdk(cls, job: Any) -> RemoteFineTuneJob:
        raw = job.model_dump(mode="json") if hasattr(job, "model_dump") else dict(job)
        error = raw.get("error") or None
        # The API sends an all-null error object on healthy jobs
        if isinstance(error, dict) and not any(v is not None for v in error.values()):
            error = None
        return cls(
            id=raw["id"],
            status=raw.get("status") or "",
            fine_tuned_model=raw.get("fine_tuned_model"),
            model=raw.get("model"),
            error=error,
            raw=raw,
        )


@dataclass(frozen=True)
class RemoteVectorStore:
    id: str
    name: str | None = None
    metadata: dict[str, Any] | None = None
    file_counts: dict[str, Any] | None = None


# ------------------------------------------------------------------ #
# Credentials
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ProviderConfig:
    """Resolved credential for one tenant.  ``api_key`` is None when unset."""

    api_key: SecretStr | None
    base_url: str

    @property
    def has_key(self) -> bool:
        return self.api_key is not None and bool(self.api_key.get_secret_value())


class CredentialResolver(Protocol):
    """Supplies a tenant's provider credential (BYOK store or platform key)."""

    async def resolve(self, tenant_id: uuid.UUID) -> ProviderConfig: ...


class SettingsCredentialResolver:
    """Resolve every tenant to the platform-level key from settings."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    async def resolve(self, tenant_id: uuid.UUID) -> ProviderConfig:
        return ProviderConfig(
            api_key=self._settings.openai_api_key,
            base_url=self._settings.openai_base_url,
        )


# ------------------------------------------------------------------ #
# Client
# ------------------------------------------------------------------ #


class ProviderClient:
    """Thin wrapper around AsyncOpenAI with retry logic and structured logging."""

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        max_attempts: int = 3,
        upload_timeout: float = 300.0,
    ) -> None:
        self._client = client
        self._max_attempts = max_attempts
        self._upload_timeout = upload_timeout

    async def close(self) -> None:
        await self._client.close()

    async def _read(self, operation: str, fn: Any, *args: Any, **kwargs: Any) -> Any:
        """Run an idempotent call with retries, normalizing the final error."""
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_RETRYABLE),
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                reraise=True,
            ):
                with attempt:
                    return await fn(*args, **kwargs)
        except openai.OpenAIError as exc:
            raise _normalize(exc, operation) from exc

    async def _write(self, operation: str, fn: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await fn(*args, **kwargs)
        except openai.OpenAIError as exc:
            raise _normalize(exc, operation) from exc

    async def upload_file(
        self,
        *,
        filename: str,
        content: bytes,
        purpose: str,
        content_type: str = "application/json",
    ) -> str:
        """Upload bytes as a provider file and return its id."""
        uploaded = await self._write(
            "file upload",
            self._client.files.create,
            file=(filename, content, content_type),
            purpose=purpose,
            timeout=self._upload_timeout,
        )
        log.debug("provider.file_uploaded", file_id=uploaded.id, purpose=purpose, bytes=len(content))
        return uploaded.id

    async def create_fine_tune_job(
        self,
        *,
        training_file: str,
        model: str,
        suffix: str | None = None,
    ) -> RemoteFineTuneJob:
        kwargs: dict[str, Any] = {"training_file": training_file, "model": model}
        if suffix:
            kwargs["suffix"] = suffix
        job = await self._write("fine-tune job create", self._client.fine_tuning.jobs.create, **kwargs)
        return RemoteFineTuneJob.from_sdk(job)

    async def retrieve_fine_tune_job(self, remote_job_id: str) -> RemoteFineTuneJob:
        job = await self._read(
            "fine-tune job retrieve", self._client.fine_tuning.jobs.retrieve, remote_job_id
        )
        return RemoteFineTuneJob.from_sdk(job)

    async def attach_vector_store_file(
        self,
        *,
        vector_store_id: str,
        file_id: str,
        attributes: dict[str, str | float | bool],
    ) -> str:
        """Attach an uploaded file to a vector store; returns the attachment id."""
        attached = await self._write(
            "vector store attach",
            self._client.vector_stores.files.create,
            vector_store_id=vector_store_id,
            file_id=file_id,
            attributes=attributes,
        )
        return attached.id or file_id

    async def delete_vector_store_file(self, *, vector_store_id: str, file_id: str) -> None:
        await self._read(
            "vector store file delete",
            self._client.vector_stores.files.delete,
            file_id=file_id,
            vector_store_id=vector_store_id,
        )

    async def retrieve_vector_store(self, vector_store_id: str) -> RemoteVectorStore:
        store = await self._read(
            "vector store retrieve", self._client.vector_stores.retrieve, vector_store_id
        )
        counts = store.file_counts.model_dump() if store.file_counts is not None else None
        return RemoteVectorStore(
            id=store.id, name=store.name, metadata=store.metadata, file_counts=counts
        )

    async def create_vector_store(
        self, *, name: str, metadata: dict[str, str] | None = None
    ) -> RemoteVectorStore:
        store = await self._write(
            "vector store create",
            self._client.vector_stores.create,
            name=name,
            metadata=metadata or {},
        )
        return RemoteVectorStore(id=store.id, name=store.name, metadata=store.metadata)


class ProviderClientFactory:
    """Builds tenant-scoped provider clients on demand.

    Usage:
        factory = ProviderClientFactory(resolver)
        client = await factory.get_client(tenant_id)
        try:
            ...
        finally:
            await client.close()
    """

    def __init__(
        self,
        resolver: CredentialResolver | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._resolver = resolver or SettingsCredentialResolver(self._settings)

    async def resolve_config(self, tenant_id: uuid.UUID) -> ProviderConfig:
        return await self._resolver.resolve(tenant_id)

    def create_client(self, config: ProviderConfig) -> ProviderClient:
        """Construct a client from a resolved credential.

        Raises:
            CredentialMissingError: config carries no API key
            ProviderError: the SDK rejected the configuration
        """
        api_key = config.api_key
        if api_key is None or not config.has_key:
            raise CredentialMissingError("credential missing")
        timeout = httpx.Timeout(self._settings.provider_timeout_seconds, connect=10.0)
        try:
            client = AsyncOpenAI(
                api_key=api_key.get_secret_value(),
                base_url=config.base_url,
                timeout=timeout,
                max_retries=0,
            )
        except openai.OpenAIError as exc:
            raise ProviderError(f"client init failed: {exc}") from exc
        return ProviderClient(
            client,
            max_attempts=self._settings.provider_max_retries,
            upload_timeout=self._settings.provider_upload_timeout_seconds,
        )

    async def get_client(self, tenant_id: uuid.UUID) -> ProviderClient:
        config = await self.resolve_config(tenant_id)
        return self.create_client(config)
