"""Vector sync: publish training examples to the tenant knowledge store.

Pending and failed examples are uploaded one at a time (oldest update
first) as small JSON files and attached to the tenant's default vector
store.  A failure on one example is recorded on that row and never stops
the rest of the batch; uploaded rows are never selected again.
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from staytune.config import Settings, get_settings
from staytune.models.training import TrainingExample, VectorStatus
from staytune.models.vector_store import TenantVectorStore
from staytune.providers.openai_client import ProviderClientFactory, describe_error
from staytune.training.schemas import SyncResult

log = structlog.get_logger(__name__)

# Purpose tag for files that end up in a vector store
VECTOR_FILE_PURPOSE = "assistants"

_SYNCABLE_STATUSES = (VectorStatus.PENDING.value, VectorStatus.FAILED.value)


class VectorStoreMissingError(Exception):
    """The tenant has no knowledge store to attach examples to."""

    def __init__(self, tenant_id: uuid.UUID) -> None:
        super().__init__(f"No vector store available for tenant {tenant_id}")
        self.tenant_id = tenant_id


async def resolve_default_store(
    db: AsyncSession,
    tenant_id: uuid.UUID,
) -> TenantVectorStore | None:
    """Return the tenant's default store.

    Falls back to the oldest store, which is promoted to default so the
    choice stays stable across calls.
    """
    result = await db.execute(
        select(TenantVectorStore)
        .where(TenantVectorStore.tenant_id == tenant_id, TenantVectorStore.is_default.is_(True))
        .order_by(TenantVectorStore.created_at.asc())
        .limit(1)
    )
    store = result.scalar_one_or_none()
    if store is not None:
        return store

    result = await db.execute(
        select(TenantVectorStore)
        .where(TenantVectorStore.tenant_id == tenant_id)
        .order_by(TenantVectorStore.created_at.asc())
        .limit(1)
    )
    store = result.scalar_one_or_none()
    if store is None:
        return None

    store.is_default = True
    await db.flush()
    log.info(
        "training.vector.default_promoted",
        tenant_id=str(tenant_id),
        vector_store_id=str(store.id),
    )
    return store


async def ensure_default_vector_store(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    client_factory: ProviderClientFactory,
) -> TenantVectorStore:
    """Resolve the default store, creating a remote one if the tenant has none."""
    store = await resolve_default_store(db, tenant_id)
    if store is not None:
        return store

    client = await client_factory.get_client(tenant_id)
    try:
        remote = await client.create_vector_store(
            name=f"tenant-{tenant_id}-default-store",
            metadata={"tenant_id": str(tenant_id)},
        )
    finally:
        await client.close()

    store = TenantVectorStore(
        tenant_id=tenant_id,
        provider="openai",
        remote_id=remote.id,
        name=remote.name or f"tenant-{tenant_id}-store",
        metadata_=remote.metadata or {"tenant_id": str(tenant_id)},
        is_default=True,
    )
    db.add(store)
    await db.flush()

    log.info(
        "training.vector.store_created",
        tenant_id=str(tenant_id),
        vector_store_id=str(store.id),
        remote_id=remote.id,
    )
    return store


def _example_payload(example: TrainingExample) -> bytes:
    payload = {
        "input": example.input_text,
        "output": example.output_text,
        "score": example.score,
        "metadata": example.metadata_ or {},
    }
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


def _example_attributes(example: TrainingExample) -> dict[str, str | float | bool]:
    return {
        "source": example.source,
        "trainingExampleId": str(example.id),
        "score": "" if example.score is None else str(example.score),
        "createdAt": example.created_at.isoformat(),
    }


class VectorSyncService:
    """Uploads a tenant's pending/failed examples to its knowledge store."""

    def __init__(
        self,
        db: AsyncSession,
        client_factory: ProviderClientFactory,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self._clients = client_factory
        self._settings = settings or get_settings()

    async def sync_to_vector_store(
        self,
        tenant_id: uuid.UUID,
        max_batch: int | None = None,
    ) -> SyncResult:
        """Upload up to ``max_batch`` examples.

        Raises:
            VectorStoreMissingError: tenant has no store; no example is touched
            CredentialMissingError / ProviderError: client could not be built
        """
        batch_size = self._settings.training_sync_batch if max_batch is None else max_batch

        result = await self.db.execute(
            select(TrainingExample)
            .where(
                TrainingExample.tenant_id == tenant_id,
                TrainingExample.vector_status.in_(_SYNCABLE_STATUSES),
            )
            .order_by(TrainingExample.updated_at.asc(), TrainingExample.created_at.asc())
            .limit(batch_size)
        )
        examples = list(result.scalars().all())
        if not examples:
            return SyncResult()

        store = await resolve_default_store(self.db, tenant_id)
        if store is None:
            raise VectorStoreMissingError(tenant_id)

        client = await self._clients.get_client(tenant_id)
        uploaded = 0
        failed = 0
        try:
            for example in examples:
                example.vector_status = VectorStatus.UPLOADING.value
                example.error = None
                await self.db.flush()

                try:
                    file_id = await client.upload_file(
                        filename=f"training-{example.id}.json",
                        content=_example_payload(example),
                        purpose=VECTOR_FILE_PURPOSE,
                    )
                    attachment_id = await client.attach_vector_store_file(
                        vector_store_id=store.remote_id,
                        file_id=file_id,
                        attributes=_example_attributes(example),
                    )
                except Exception as exc:
                    example.vector_status = VectorStatus.FAILED.value
                    example.error = describe_error(
                        exc, max_chars=self._settings.training_error_max_chars
                    )
                    failed += 1
                    log.warning(
                        "training.vector.example_failed",
                        tenant_id=str(tenant_id),
                        example_id=str(example.id),
                        error=example.error,
                    )
                else:
                    example.vector_status = VectorStatus.UPLOADED.value
                    example.vector_file_id = attachment_id or file_id
                    example.vector_uploaded_at = datetime.now(UTC)
                    uploaded += 1
                await self.db.flush()
        finally:
            await client.close()

        log.info(
            "training.vector.synced",
            tenant_id=str(tenant_id),
            vector_store_id=str(store.id),
            uploaded=uploaded,
            failed=failed,
        )
        return SyncResult(uploaded=uploaded, failed=failed)


async def detach_examples(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    examples: list[TrainingExample],
    client_factory: ProviderClientFactory,
) -> int:
    """Best-effort removal of examples' remote attachments.

    Provider or credential failures are logged and swallowed; local cleanup
    must proceed regardless.  Returns the number of attachments deleted.
    """
    attached = [e for e in examples if e.vector_file_id]
    if not attached:
        return 0

    store = await resolve_default_store(db, tenant_id)
    if store is None:
        log.warning("training.vector.detach_skipped", tenant_id=str(tenant_id), reason="no_store")
        return 0

    try:
        client = await client_factory.get_client(tenant_id)
    except Exception as exc:
        log.warning(
            "training.vector.detach_skipped",
            tenant_id=str(tenant_id),
            reason="client_unavailable",
            error=describe_error(exc),
        )
        return 0

    deleted = 0
    try:
        for example in attached:
            try:
                await client.delete_vector_store_file(
                    vector_store_id=store.remote_id,
                    file_id=example.vector_file_id,
                )
                deleted += 1
            except Exception as exc:
                log.warning(
                    "training.vector.detach_failed",
                    tenant_id=str(tenant_id),
                    example_id=str(example.id),
                    error=describe_error(exc),
                )
    finally:
        await client.close()
    return deleted

