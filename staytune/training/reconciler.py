"""Job status reconciler.

Polls the provider for every local job that has a remote counterpart and
is still in flight, and folds the remote state back into the job row.
Unknown remote statuses map to ``running`` so a job is never silently
dropped from tracking.

Job rows are only ever written through advance_job(), whose UPDATE carries
the in-flight check.  A job that another session already moved to a
terminal status (a reset cancelling it, say) is never resurrected, and its
model is not activated.  Each job is committed on its own.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from staytune.config import Settings, get_settings
from staytune.models.fine_tuning import IN_FLIGHT_STATUSES, TERMINAL_STATUSES, FineTuneJob, FineTuneStatus
from staytune.providers.openai_client import (
    ProviderClientFactory,
    RemoteFineTuneJob,
    describe_error,
    serialize_payload,
)
from staytune.training.activation import activate_model
from staytune.training.schemas import RefreshResult

log = structlog.get_logger(__name__)

REMOTE_STATUS_MAP: dict[str, FineTuneStatus] = {
    "pending": FineTuneStatus.PENDING,
    "running": FineTuneStatus.RUNNING,
    "succeeded": FineTuneStatus.SUCCEEDED,
    "failed": FineTuneStatus.FAILED,
    "cancelled": FineTuneStatus.CANCELED,
    "canceled": FineTuneStatus.CANCELED,
}

# A remote job reported as "pending" keeps its remote id and stays tracked here
_REFRESHABLE_STATUSES = tuple(s.value for s in IN_FLIGHT_STATUSES)


def map_remote_status(remote_status: str | None) -> FineTuneStatus:
    """Map a provider job status to the local status; unknown means running."""
    return REMOTE_STATUS_MAP.get((remote_status or "").lower(), FineTuneStatus.RUNNING)


async def advance_job(db: AsyncSession, job: FineTuneJob, **values: Any) -> bool:
    """Write ``values`` to the job row only while the job is still in flight.

    The status check is part of the UPDATE, so it holds against writers in
    other sessions.  ``job`` is reloaded either way.  Returns False when the
    job had already reached a terminal status and nothing was written.
    """
    result = await db.execute(
        update(FineTuneJob)
        .where(FineTuneJob.id == job.id, FineTuneJob.status.in_(_REFRESHABLE_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(job)
    return bool(result.rowcount)


async def record_remote_id(db: AsyncSession, job: FineTuneJob, remote_job_id: str | None) -> None:
    """Keep a remote job id on a job that was finished elsewhere, for operators."""
    if not remote_job_id:
        return
    await db.execute(
        update(FineTuneJob)
        .where(FineTuneJob.id == job.id, FineTuneJob.remote_job_id.is_(None))
        .values(remote_job_id=remote_job_id)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(job)


async def apply_remote_job(
    db: AsyncSession,
    job: FineTuneJob,
    remote: RemoteFineTuneJob,
    *,
    max_error_chars: int = 2000,
) -> bool:
    """Fold ``remote`` into ``job``, committing, and activate its model if it has one.

    The remote id and status are committed before activation.  A job with
    a model stays ``running`` until activation commits together with the
    final status; if activation fails the error is recorded and the job is
    left for the next refresh.

    Returns True when a model was activated.
    """
    job_id = job.id
    status = map_remote_status(remote.status)
    model_id = remote.fine_tuned_model
    now = datetime.now(UTC)

    values: dict[str, Any] = {
        "remote_job_id": remote.id or job.remote_job_id,
        "error": serialize_payload(remote.error) if remote.error else None,
        "status": FineTuneStatus.RUNNING.value if model_id else status.value,
    }
    if model_id:
        values["resulting_model"] = model_id
    elif status in TERMINAL_STATUSES:
        values["completed_at"] = func.coalesce(FineTuneJob.completed_at, now)

    if not await advance_job(db, job, **values):
        await record_remote_id(db, job, remote.id)
        await db.commit()
        log.info("training.job.superseded", job_id=str(job_id), status=job.status, remote_job_id=remote.id)
        return False
    await db.commit()
    if not model_id:
        return False

    try:
        if not await advance_job(
            db,
            job,
            status=status.value,
            completed_at=func.coalesce(FineTuneJob.completed_at, now),
        ):
            await db.commit()
            log.info("training.job.superseded", job_id=str(job_id), status=job.status, remote_job_id=remote.id)
            return False
        await activate_model(
            db,
            job.tenant_id,
            model_id,
            job_id,
            {"remote_job_id": remote.id, "base_model": remote.model or job.base_model},
            provider=job.provider,
        )
        await db.commit()
    except Exception as exc:
        await db.rollback()
        error = describe_error(exc, max_chars=max_error_chars)
        log.warning("training.model.activation_failed", job_id=str(job_id), model_id=model_id, error=error)
        await db.refresh(job)
        await advance_job(db, job, error=f"model activation failed: {error}"[:max_error_chars])
        await db.commit()
        return False
    return True


class JobReconciler:
    """Reconciles a tenant's in-flight jobs with the provider."""

    def __init__(
        self,
        db: AsyncSession,
        client_factory: ProviderClientFactory,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self._clients = client_factory
        self._settings = settings or get_settings()

    async def refresh_jobs(self, tenant_id: uuid.UUID) -> RefreshResult:
        result = await self.db.execute(
            select(FineTuneJob)
            .where(
                FineTuneJob.tenant_id == tenant_id,
                FineTuneJob.status.in_(_REFRESHABLE_STATUSES),
                FineTuneJob.remote_job_id.is_not(None),
            )
            .order_by(FineTuneJob.created_at.asc())
        )
        jobs = list(result.scalars().all())
        if not jobs:
            return RefreshResult()

        max_chars = self._settings.training_error_max_chars
        try:
            client = await self._clients.get_client(tenant_id)
        except Exception as exc:
            log.warning(
                "training.jobs.refresh_skipped",
                tenant_id=str(tenant_id),
                error=describe_error(exc, max_chars=max_chars),
            )
            return RefreshResult(checked=len(jobs), errors=len(jobs))

        updated = 0
        activated = 0
        errors = 0
        try:
            for job in jobs:
                # Earlier jobs commit or roll back; read this one fresh
                await self.db.refresh(job)
                if job.status not in _REFRESHABLE_STATUSES:
                    continue
                previous = (job.status, job.resulting_model)
                try:
                    remote = await client.retrieve_fine_tune_job(job.remote_job_id)
                except Exception as exc:
                    errors += 1
                    log.warning(
                        "training.jobs.refresh_failed",
                        tenant_id=str(tenant_id),
                        job_id=str(job.id),
                        remote_job_id=job.remote_job_id,
                        error=describe_error(exc, max_chars=max_chars),
                    )
                    continue
                if await apply_remote_job(self.db, job, remote, max_error_chars=max_chars):
                    activated += 1
                if (job.status, job.resulting_model) != previous:
                    updated += 1
                    log.info(
                        "training.jobs.status_changed",
                        tenant_id=str(tenant_id),
                        job_id=str(job.id),
                        status=job.status,
                        resulting_model=job.resulting_model,
                    )
        finally:
            await client.close()

        return RefreshResult(checked=len(jobs), updated=updated, activated=activated, errors=errors)
