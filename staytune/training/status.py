"""Per-tenant training status report for operators."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from staytune.config import Settings, get_settings
from staytune.models.fine_tuning import FineTuneJob, FineTuneModel, FineTuneModelStatus
from staytune.models.training import TrainingExample, VectorStatus
from staytune.models.vector_store import TenantVectorStore
from staytune.providers.openai_client import ProviderClientFactory, RemoteVectorStore, describe_error
from staytune.training.reconciler import JobReconciler
from staytune.training.vector_store import resolve_default_store

log = structlog.get_logger(__name__)


@dataclass
class StatusReport:
    counts: dict[str, int] = field(default_factory=dict)
    latest_job: FineTuneJob | None = None
    active_model: FineTuneModel | None = None
    vector_store: TenantVectorStore | None = None
    # Provider view of vector_store; None when not checked or the check failed
    remote_store: RemoteVectorStore | None = None
    store_error: str | None = None


async def example_counts(db: AsyncSession, tenant_id: uuid.UUID) -> dict[str, int]:
    """Example counts for every vector status, plus ``total``."""
    result = await db.execute(
        select(TrainingExample.vector_status, func.count())
        .where(TrainingExample.tenant_id == tenant_id)
        .group_by(TrainingExample.vector_status)
    )
    counts = {status.value: 0 for status in VectorStatus}
    for status, count in result.all():
        counts[status] = count
    counts["total"] = sum(counts.values())
    return counts


async def check_remote_store(
    client_factory: ProviderClientFactory,
    store: TenantVectorStore,
    settings: Settings | None = None,
) -> tuple[RemoteVectorStore | None, str | None]:
    """Look the store up on the provider.  Returns ``(remote, error)``; never raises."""
    max_chars = (settings or get_settings()).training_error_max_chars
    try:
        client = await client_factory.get_client(store.tenant_id)
    except Exception as exc:
        return None, describe_error(exc, max_chars=max_chars)
    try:
        return await client.retrieve_vector_store(store.remote_id), None
    except Exception as exc:
        error = describe_error(exc, max_chars=max_chars)
        log.warning(
            "training.status.store_check_failed",
            tenant_id=str(store.tenant_id),
            remote_id=store.remote_id,
            error=error,
        )
        return None, error
    finally:
        await client.close()


async def get_status(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    client_factory: ProviderClientFactory | None = None,
    settings: Settings | None = None,
) -> StatusReport:
    """Build the status report.

    With a client factory, in-flight jobs are reconciled first and the
    default store is checked against the provider.
    """
    if client_factory is not None:
        try:
            await JobReconciler(db, client_factory, settings).refresh_jobs(tenant_id)
        except Exception as exc:
            log.warning("training.status.refresh_failed", tenant_id=str(tenant_id), error=str(exc))

    latest_job = (
        await db.execute(
            select(FineTuneJob)
            .where(FineTuneJob.tenant_id == tenant_id)
            .order_by(FineTuneJob.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()

    active_model = (
        await db.execute(
            select(FineTuneModel)
            .where(
                FineTuneModel.tenant_id == tenant_id,
                FineTuneModel.status == FineTuneModelStatus.ACTIVE.value,
            )
            .order_by(FineTuneModel.activated_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()

    report = StatusReport(
        counts=await example_counts(db, tenant_id),
        latest_job=latest_job,
        active_model=active_model,
        vector_store=await resolve_default_store(db, tenant_id),
    )
    if client_factory is not None and report.vector_store is not None:
        report.remote_store, report.store_error = await check_remote_store(
            client_factory, report.vector_store, settings
        )
    return report
