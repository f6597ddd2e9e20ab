"""Scoped teardown of a tenant's training state.

``vector`` removes knowledge-store artifacts and training examples;
``fine-tune`` retires active models, cancels unfinished jobs and clears
the default-model preference.  The scopes touch disjoint rows, so running
both in either order gives the same result as ``all``.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from staytune.models.conversation import Message
from staytune.models.fine_tuning import (
    FineTuneJob,
    FineTuneModel,
    FineTuneModelStatus,
    FineTuneStatus,
)
from staytune.models.provider import ProviderPreference
from staytune.models.training import TrainingExample
from staytune.providers.openai_client import ProviderClientFactory
from staytune.training.schemas import ResetResult
from staytune.training.vector_store import detach_examples

log = structlog.get_logger(__name__)


class ResetScope(StrEnum):
    ALL = "all"
    VECTOR = "vector"
    FINE_TUNE = "fine-tune"


def parse_scope(scope: str | ResetScope) -> ResetScope:
    try:
        return ResetScope(scope)
    except ValueError:
        raise ValueError(
            f"Invalid reset scope {scope!r}; expected one of: "
            + ", ".join(s.value for s in ResetScope)
        ) from None


class ResetService:
    """Resets training artifacts for one tenant."""

    def __init__(self, db: AsyncSession, client_factory: ProviderClientFactory) -> None:
        self.db = db
        self._clients = client_factory

    async def reset(self, tenant_id: uuid.UUID, scope: str | ResetScope = ResetScope.ALL) -> ResetResult:
        """Reset ``scope`` for the tenant.

        Raises:
            ValueError: unknown scope
        """
        resolved = parse_scope(scope)
        counts: dict[str, int] = {}
        if resolved in (ResetScope.ALL, ResetScope.VECTOR):
            counts.update(await self._reset_vector(tenant_id))
        if resolved in (ResetScope.ALL, ResetScope.FINE_TUNE):
            counts.update(await self._reset_fine_tune(tenant_id))
        await self.db.flush()

        result = ResetResult(scope=resolved.value, **counts)
        log.info(
            "training.reset.completed",
            tenant_id=str(tenant_id),
            scope=resolved.value,
            **counts,
        )
        return result

    async def _reset_vector(self, tenant_id: uuid.UUID) -> dict[str, int]:
        examples = list(
            (
                await self.db.execute(
                    select(TrainingExample).where(TrainingExample.tenant_id == tenant_id)
                )
            ).scalars()
        )
        detached = await detach_examples(self.db, tenant_id, examples, self._clients)

        deleted = await self.db.execute(
            delete(TrainingExample)
            .where(TrainingExample.tenant_id == tenant_id)
            .execution_options(synchronize_session="fetch")
        )
        cleared = await self.db.execute(
            update(Message)
            .where(Message.tenant_id == tenant_id, Message.included_in_training.is_(True))
            .values(included_in_training=False)
            .execution_options(synchronize_session="fetch")
        )
        return {
            "examples_deleted": deleted.rowcount or 0,
            "attachments_deleted": detached,
            "messages_cleared": cleared.rowcount or 0,
        }

    async def _reset_fine_tune(self, tenant_id: uuid.UUID) -> dict[str, int]:
        now = datetime.now(UTC)

        # Jobs first: the UPDATE waits on a worker mid-activation, so the
        # model it commits is visible to the retire step below
        canceled = await self.db.execute(
            update(FineTuneJob)
            .where(
                FineTuneJob.tenant_id == tenant_id,
                FineTuneJob.status.notin_(
                    [FineTuneStatus.SUCCEEDED.value, FineTuneStatus.CANCELED.value]
                ),
            )
            .values(
                status=FineTuneStatus.CANCELED.value,
                completed_at=func.coalesce(FineTuneJob.completed_at, now),
                updated_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        retired = await self.db.execute(
            update(FineTuneModel)
            .where(
                FineTuneModel.tenant_id == tenant_id,
                FineTuneModel.status == FineTuneModelStatus.ACTIVE.value,
            )
            .values(status=FineTuneModelStatus.RETIRED.value, deactivated_at=now, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        await self.db.execute(
            update(ProviderPreference)
            .where(ProviderPreference.tenant_id == tenant_id)
            .values(default_model=None)
            .execution_options(synchronize_session="fetch")
        )
        return {
            "models_retired": retired.rowcount or 0,
            "jobs_canceled": canceled.rowcount or 0,
        }
