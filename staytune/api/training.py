"""Training pipeline API endpoints.

GET    /api/v1/training/status   - Reconcile jobs, then report pipeline state
POST   /api/v1/training/sync     - Collect examples, sync vectors, schedule a job
POST   /api/v1/training/refresh  - Reconcile in-flight jobs with the provider
POST   /api/v1/training/reset    - Scoped reset (all | vector | fine-tune)

All endpoints are tenant-scoped; the tenant comes from get_tenant_id.
"""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from staytune.api.deps import get_client_factory, get_tenant_id
from staytune.database import get_db_session
from staytune.infra.background_worker import BackgroundWorkerPool, get_worker_pool
from staytune.providers.openai_client import ProviderClientFactory, describe_error
from staytune.training.examples import FeedbackIngestionService
from staytune.training.jobs import FineTuneJobService
from staytune.training.reconciler import JobReconciler
from staytune.training.reset import ResetScope, ResetService
from staytune.training.status import get_status
from staytune.training.vector_store import VectorSyncService

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/training", tags=["training"])


# ------------------------------------------------------------------ #
# Request/Response Models
# ------------------------------------------------------------------ #


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    provider: str
    status: str
    dataset_file_id: str | None
    remote_job_id: str | None
    base_model: str | None
    resulting_model: str | None
    example_count: int | None
    error: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime


class ModelOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    provider: str
    model_id: str
    status: str
    job_id: uuid.UUID | None
    activated_at: datetime | None


class VectorStoreOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    remote_id: str
    name: str | None
    is_default: bool


class StatusResponse(BaseModel):
    counts: dict[str, int]
    latest_job: JobOut | None
    active_model: ModelOut | None
    vector_store: VectorStoreOut | None
    store_file_counts: dict[str, int] | None = None
    store_error: str | None = None


class SyncResponse(BaseModel):
    created: int
    updated: int
    uploaded: int
    failed: int
    vector_error: str | None = None
    job: JobOut | None = None
    job_created: bool = False


class RefreshResponse(BaseModel):
    checked: int
    updated: int
    activated: int
    errors: int


class ResetRequest(BaseModel):
    scope: ResetScope = Field(ResetScope.ALL, description="all | vector | fine-tune")


class ResetResponse(BaseModel):
    scope: str
    examples_deleted: int
    attachments_deleted: int
    messages_cleared: int
    models_retired: int
    jobs_canceled: int


# ------------------------------------------------------------------ #
# Endpoints
# ------------------------------------------------------------------ #


@router.get("/status", response_model=StatusResponse)
async def training_status(
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db_session),
    clients: ProviderClientFactory = Depends(get_client_factory),
) -> StatusResponse:
    report = await get_status(db, tenant_id, clients)
    return StatusResponse(
        counts=report.counts,
        latest_job=JobOut.model_validate(report.latest_job) if report.latest_job else None,
        active_model=ModelOut.model_validate(report.active_model) if report.active_model else None,
        vector_store=VectorStoreOut.model_validate(report.vector_store) if report.vector_store else None,
        store_file_counts=report.remote_store.file_counts if report.remote_store else None,
        store_error=report.store_error,
    )


@router.post("/sync", response_model=SyncResponse)
async def training_sync(
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db_session),
    clients: ProviderClientFactory = Depends(get_client_factory),
    pool: BackgroundWorkerPool = Depends(get_worker_pool),
) -> SyncResponse:
    """Run collection and vector sync inline, then schedule a fine-tune job.

    Vector sync errors are reported in the response rather than failing the
    request; processing of a newly created job happens in the worker pool.
    """
    collected = await FeedbackIngestionService(db).collect_examples(tenant_id)
    await db.commit()

    uploaded = failed = 0
    vector_error: str | None = None
    try:
        synced = await VectorSyncService(db, clients).sync_to_vector_store(tenant_id)
        uploaded, failed = synced.uploaded, synced.failed
    except Exception as exc:
        vector_error = describe_error(exc)
        log.warning("training.api.vector_sync_failed", tenant_id=str(tenant_id), error=vector_error)
    await db.commit()

    job, created = await FineTuneJobService(db, clients).schedule_fine_tune_upload(tenant_id)
    await db.commit()
    if created:
        await pool.enqueue_fine_tune_job(job.id)

    return SyncResponse(
        created=collected.created,
        updated=collected.updated,
        uploaded=uploaded,
        failed=failed,
        vector_error=vector_error,
        job=JobOut.model_validate(job),
        job_created=created,
    )


@router.post("/refresh", response_model=RefreshResponse)
async def training_refresh(
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db_session),
    clients: ProviderClientFactory = Depends(get_client_factory),
) -> RefreshResponse:
    result = await JobReconciler(db, clients).refresh_jobs(tenant_id)
    return RefreshResponse(
        checked=result.checked,
        updated=result.updated,
        activated=result.activated,
        errors=result.errors,
    )


@router.post("/reset", response_model=ResetResponse)
async def training_reset(
    body: ResetRequest | None = None,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db_session),
    clients: ProviderClientFactory = Depends(get_client_factory),
) -> ResetResponse:
    scope = body.scope if body is not None else ResetScope.ALL
    try:
        result = await ResetService(db, clients).reset(tenant_id, scope)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    log.info("training.api.reset", tenant_id=str(tenant_id), scope=result.scope)
    return ResetResponse(
        scope=result.scope,
        examples_deleted=result.examples_deleted,
        attachments_deleted=result.attachments_deleted,
        messages_cleared=result.messages_cleared,
        models_retired=result.models_retired,
        jobs_canceled=result.jobs_canceled,
    )
