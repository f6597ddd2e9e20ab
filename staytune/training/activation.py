"""Model activation.

Makes a fine-tuned model the one chat requests use: retires whatever was
active for the (tenant, provider) pair, upserts the new model as active and
points the tenant's provider default-model preference at it.  Retirement
runs first so the partial unique index on active models holds at every
flush.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from staytune.models.fine_tuning import FineTuneModel, FineTuneModelStatus
from staytune.models.provider import Provider, ProviderPreference

log = structlog.get_logger(__name__)


async def set_default_model(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    provider: str,
    model_id: str | None,
) -> ProviderPreference | None:
    """Upsert the tenant's default model for ``provider``.

    Clearing (``model_id=None``) never creates a preference row.
    """
    result = await db.execute(
        select(ProviderPreference).where(
            ProviderPreference.tenant_id == tenant_id,
            ProviderPreference.provider == provider,
        )
    )
    preference = result.scalar_one_or_none()
    if preference is None:
        if model_id is None:
            return None
        preference = ProviderPreference(
            tenant_id=tenant_id,
            provider=provider,
            is_enabled=True,
            default_model=model_id,
        )
        db.add(preference)
    else:
        preference.default_model = model_id
    await db.flush()
    return preference


async def activate_model(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    model_id: str,
    job_id: uuid.UUID | None = None,
    remote_metadata: dict[str, Any] | None = None,
    *,
    provider: str = Provider.OPENAI.value,
) -> FineTuneModel:
    """Activate ``model_id`` for the tenant and retire every other active model."""
    now = datetime.now(UTC)

    retired = await db.execute(
        update(FineTuneModel)
        .where(
            FineTuneModel.tenant_id == tenant_id,
            FineTuneModel.provider == provider,
            FineTuneModel.status == FineTuneModelStatus.ACTIVE.value,
            FineTuneModel.model_id != model_id,
        )
        .values(
            status=FineTuneModelStatus.RETIRED.value,
            deactivated_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session="fetch")
    )
    await db.flush()

    result = await db.execute(
        select(FineTuneModel).where(
            FineTuneModel.tenant_id == tenant_id,
            FineTuneModel.provider == provider,
            FineTuneModel.model_id == model_id,
        )
    )
    model = result.scalar_one_or_none()
    if model is None:
        model = FineTuneModel(
            tenant_id=tenant_id,
            provider=provider,
            job_id=job_id,
            model_id=model_id,
            status=FineTuneModelStatus.ACTIVE.value,
            metadata_=remote_metadata or {},
            activated_at=now,
        )
        db.add(model)
    else:
        if model.status != FineTuneModelStatus.ACTIVE.value:
            model.activated_at = now
        model.status = FineTuneModelStatus.ACTIVE.value
        model.deactivated_at = None
        if job_id is not None:
            model.job_id = job_id
        if remote_metadata is not None:
            model.metadata_ = remote_metadata
    await db.flush()

    await set_default_model(db, tenant_id, provider, model_id)

    log.info(
        "training.model.activated",
        tenant_id=str(tenant_id),
        provider=provider,
        model_id=model_id,
        job_id=str(job_id) if job_id else None,
        retired=retired.rowcount or 0,
    )
    return model
