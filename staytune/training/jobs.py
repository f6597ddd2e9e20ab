"""Fine-tune job orchestration.

Scheduling is idempotent per tenant: while a job is pending, uploading or
running, scheduling returns that job instead of creating another.  A
partial unique index backs the check so two instances racing on the same
tenant still end up with one job.

process_fine_tune_job() is the out-of-band worker step.  It commits after every
state transition so partial progress (an uploaded dataset file id, a
remote job id) survives a later failure, and every path either moves the
job to a terminal status or leaves it tracked by the reconciler.
Transitions only apply while the job is still in flight; once a reset has
cancelled it, the run stops at the next step.

Lifecycle::

    pending --(no examples)--> canceled
    pending --(no key / bad client)--> failed
    pending -> uploading --(upload error)--> failed
    uploading --(dataset stored)--> uploading --(create error)--> failed
    uploading --(remote job created)--> running | succeeded | ...
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from staytune.config import Settings, get_settings
from staytune.models.fine_tuning import (
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    FineTuneJob,
    FineTuneStatus,
)
from staytune.models.provider import Provider
from staytune.providers.openai_client import ProviderClient, ProviderClientFactory, describe_error
from staytune.training.dataset import build_dataset
from staytune.training.reconciler import advance_job, apply_remote_job

log = structlog.get_logger(__name__)

NO_TRAINING_DATA = "no training data available"
CREDENTIAL_MISSING = "credential missing"

# Purpose tag the provider requires for fine-tuning datasets
DATASET_FILE_PURPOSE = "fine-tune"

_VENDOR_PREFIXES = ("openai/",)


def normalize_model_name(name: str, aliases: dict[str, str]) -> str:
    """Strip a vendor prefix and map generic aliases to a fine-tunable snapshot."""
    cleaned = name.strip()
    for prefix in _VENDOR_PREFIXES:
        if cleaned.lower().startswith(prefix):
            cleaned = cleaned[len(prefix):]
    return aliases.get(cleaned) or aliases.get(cleaned.lower()) or cleaned


def resolve_base_model(settings: Settings, override: str | None = None) -> str:
    """Explicit override, else the configured default, else the fallback."""
    candidate = override or settings.fine_tune_base_model or settings.fine_tune_fallback_model
    return normalize_model_name(candidate, settings.fine_tune_model_aliases)


def job_suffix(tenant_id: uuid.UUID, now: datetime | None = None) -> str:
    """Model suffix tying the remote job back to a tenant and a point in time."""
    now = now or datetime.now(UTC)
    return f"t{tenant_id.hex[:8]}-{now:%Y%m%d%H%M%S}"


class FineTuneJobService:
    """Schedules and runs fine-tune jobs for tenants."""

    def __init__(
        self,
        db: AsyncSession,
        client_factory: ProviderClientFactory,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self._clients = client_factory
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------ #
    # Scheduling
    # ------------------------------------------------------------------ #

    async def get_in_flight_job(self, tenant_id: uuid.UUID) -> FineTuneJob | None:
        result = await self.db.execute(
            select(FineTuneJob)
            .where(
                FineTuneJob.tenant_id == tenant_id,
                FineTuneJob.status.in_([s.value for s in IN_FLIGHT_STATUSES]),
            )
            .order_by(FineTuneJob.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def schedule_fine_tune_upload(
        self,
        tenant_id: uuid.UUID,
        *,
        provider: str = Provider.OPENAI.value,
    ) -> tuple[FineTuneJob, bool]:
        """Return ``(job, created)``; an in-flight job is returned unchanged.

        Losing a creation race rolls the session back, so callers commit
        earlier work before scheduling.
        """
        existing = await self.get_in_flight_job(tenant_id)
        if existing is not None:
            log.info(
                "training.job.already_in_flight",
                tenant_id=str(tenant_id),
                job_id=str(existing.id),
                status=existing.status,
            )
            return existing, False

        job = FineTuneJob(tenant_id=tenant_id, provider=provider)
        self.db.add(job)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.get_in_flight_job(tenant_id)
            if existing is None:
                raise
            log.info(
                "training.job.schedule_race_lost",
                tenant_id=str(tenant_id),
                job_id=str(existing.id),
            )
            return existing, False

        log.info("training.job.scheduled", tenant_id=str(tenant_id), job_id=str(job.id))
        return job, True

    # ------------------------------------------------------------------ #
    # Processing
    # ------------------------------------------------------------------ #

    def _superseded(self, job: FineTuneJob, step: str) -> FineTuneJob:
        log.info(
            "training.job.superseded",
            tenant_id=str(job.tenant_id),
            job_id=str(job.id),
            step=step,
            status=job.status,
        )
        return job

    async def _fail(self, job: FineTuneJob, error: str, *, completed: bool = True) -> FineTuneJob:
        values: dict[str, Any] = {
            "status": FineTuneStatus.FAILED.value,
            "error": error[: self._settings.training_error_max_chars],
        }
        if completed:
            values["completed_at"] = datetime.now(UTC)
        applied = await advance_job(self.db, job, **values)
        await self.db.commit()
        if not applied:
            return self._superseded(job, "fail")
        log.warning(
            "training.job.failed",
            tenant_id=str(job.tenant_id),
            job_id=str(job.id),
            error=job.error,
        )
        return job

    async def process_fine_tune_job(self, job_id: uuid.UUID) -> FineTuneJob | None:
        """Run a pending job through upload and remote submission.

        Every transition is conditional on the job still being in flight,
        so a reset that cancels the job midway stops the run at the next
        step instead of being overwritten.
        """
        job = await self.db.get(FineTuneJob, job_id)
        if job is None:
            log.warning("training.job.not_found", job_id=str(job_id))
            return None
        if job.status != FineTuneStatus.PENDING.value or job.remote_job_id:
            log.info(
                "training.job.skipped",
                job_id=str(job_id),
                status=job.status,
                remote_job_id=job.remote_job_id,
            )
            return job

        try:
            return await self._run(job)
        except Exception as exc:
            log.exception("training.job.crashed", job_id=str(job_id))
            await self.db.rollback()
            job = await self.db.get(FineTuneJob, job_id)
            if job is None or job.status in TERMINAL_STATUSES or job.remote_job_id:
                return job
            return await self._fail(
                job, describe_error(exc, max_chars=self._settings.training_error_max_chars)
            )

    async def _run(self, job: FineTuneJob) -> FineTuneJob:
        tenant_id = job.tenant_id
        max_chars = self._settings.training_error_max_chars

        dataset = await build_dataset(self.db, tenant_id)
        if not dataset:
            applied = await advance_job(
                self.db,
                job,
                status=FineTuneStatus.CANCELED.value,
                error=NO_TRAINING_DATA,
                completed_at=datetime.now(UTC),
            )
            await self.db.commit()
            if not applied:
                return self._superseded(job, "dataset")
            log.info("training.job.canceled", tenant_id=str(tenant_id), job_id=str(job.id))
            return job

        config = await self._clients.resolve_config(tenant_id)
        if not config.has_key:
            return await self._fail(job, CREDENTIAL_MISSING)

        try:
            client = self._clients.create_client(config)
        except Exception as exc:
            return await self._fail(job, describe_error(exc, max_chars=max_chars))

        try:
            return await self._submit(job, client, dataset.to_jsonl(), len(dataset))
        finally:
            await client.close()

    async def _submit(
        self,
        job: FineTuneJob,
        client: ProviderClient,
        payload: bytes,
        example_count: int,
    ) -> FineTuneJob:
        tenant_id = job.tenant_id
        max_chars = self._settings.training_error_max_chars
        now = datetime.now(UTC)

        applied = await advance_job(
            self.db,
            job,
            status=FineTuneStatus.UPLOADING.value,
            started_at=now,
            error=None,
            example_count=example_count,
        )
        await self.db.commit()
        if not applied:
            return self._superseded(job, "upload")

        try:
            file_id = await client.upload_file(
                filename=f"tenant-{tenant_id}-fine-tune-{now:%Y%m%d%H%M%S}.jsonl",
                content=payload,
                purpose=DATASET_FILE_PURPOSE,
                content_type="application/jsonl",
            )
        except Exception as exc:
            return await self._fail(job, describe_error(exc, max_chars=max_chars))

        applied = await advance_job(
            self.db,
            job,
            dataset_file_id=file_id,
            base_model=resolve_base_model(self._settings),
        )
        await self.db.commit()
        if not applied:
            return self._superseded(job, "create")
        log.info(
            "training.job.dataset_uploaded",
            tenant_id=str(tenant_id),
            job_id=str(job.id),
            file_id=file_id,
            examples=job.example_count,
            base_model=job.base_model,
        )

        try:
            remote = await client.create_fine_tune_job(
                training_file=file_id,
                model=job.base_model,
                suffix=job_suffix(tenant_id, now),
            )
        except Exception as exc:
            return await self._fail(job, describe_error(exc, max_chars=max_chars), completed=False)

        await apply_remote_job(self.db, job, remote, max_error_chars=max_chars)
        log.info(
            "training.job.submitted",
            tenant_id=str(tenant_id),
            job_id=str(job.id),
            remote_job_id=job.remote_job_id,
            status=job.status,
            resulting_model=job.resulting_model,
        )
        return job
