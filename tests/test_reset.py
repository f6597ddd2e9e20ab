"""Tests for scoped training resets."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from staytune.models import (
    FineTuneJob,
    FineTuneModel,
    FineTuneStatus,
    Message,
    ProviderPreference,
    TrainingExample,
)
from staytune.providers.openai_client import ProviderError
from staytune.training.activation import activate_model
from staytune.training.examples import FeedbackIngestionService
from staytune.training.reset import ResetScope, ResetService, parse_scope
from tests.conftest import FakeClientFactory, make_exchange, make_store, make_tenant


async def _seed(db, tenant, test_settings) -> dict:
    """Two collected examples (one uploaded), an active model and a running job."""
    store = await make_store(db, tenant)
    await make_exchange(db, tenant, "q1", "a1")
    await make_exchange(db, tenant, "q2", "a2")
    await FeedbackIngestionService(db, test_settings).collect_examples(tenant.id)
    uploaded = (
        await db.execute(select(TrainingExample).where(TrainingExample.tenant_id == tenant.id).limit(1))
    ).scalar_one()
    uploaded.vector_status = "uploaded"
    uploaded.vector_file_id = "vsf-file-9"

    succeeded = FineTuneJob(tenant_id=tenant.id, status="succeeded", resulting_model="ft:m1")
    failed = FineTuneJob(tenant_id=tenant.id, status="failed", error="quota")
    running = FineTuneJob(tenant_id=tenant.id, status="running", remote_job_id="ftjob-1")
    db.add_all([succeeded, failed, running])
    await db.flush()
    await activate_model(db, tenant.id, "ft:m1", succeeded.id)
    return {"store": store, "succeeded": succeeded, "failed": failed, "running": running}


async def _count(db, model, tenant_id) -> int:
    return (
        await db.execute(select(func.count()).select_from(model).where(model.tenant_id == tenant_id))
    ).scalar_one()


async def _included_messages(db, tenant_id) -> int:
    return (
        await db.execute(
            select(func.count())
            .select_from(Message)
            .where(Message.tenant_id == tenant_id, Message.included_in_training.is_(True))
        )
    ).scalar_one()


class TestParseScope:
    @pytest.mark.parametrize("raw", ["all", "vector", "fine-tune"])
    def test_valid(self, raw) -> None:
        assert parse_scope(raw).value == raw

    @pytest.mark.parametrize("raw", ["", "vectors", "fine_tune", "ALL"])
    def test_invalid(self, raw) -> None:
        with pytest.raises(ValueError, match="Invalid reset scope"):
            parse_scope(raw)


class TestReset:
    async def test_vector_scope(self, db, tenant, client_factory, fake_client, test_settings) -> None:
        seeded = await _seed(db, tenant, test_settings)

        result = await ResetService(db, client_factory).reset(tenant.id, "vector")

        assert result.scope == "vector"
        assert result.examples_deleted == 2
        assert result.attachments_deleted == 1
        assert result.messages_cleared == 2
        assert (result.models_retired, result.jobs_canceled) == (0, 0)
        assert fake_client.calls == [
            ("delete_vector_store_file", {"vector_store_id": seeded["store"].remote_id, "file_id": "vsf-file-9"})
        ]
        assert await _count(db, TrainingExample, tenant.id) == 0
        assert await _included_messages(db, tenant.id) == 0
        # Fine-tune state is untouched
        assert seeded["running"].status == FineTuneStatus.RUNNING
        model = (await db.execute(select(FineTuneModel))).scalar_one()
        assert model.status == "active"

    async def test_fine_tune_scope(self, db, tenant, client_factory, fake_client, test_settings) -> None:
        seeded = await _seed(db, tenant, test_settings)

        result = await ResetService(db, client_factory).reset(tenant.id, ResetScope.FINE_TUNE)

        assert result.scope == "fine-tune"
        assert result.models_retired == 1
        assert result.jobs_canceled == 2
        assert (result.examples_deleted, result.attachments_deleted) == (0, 0)
        assert seeded["succeeded"].status == FineTuneStatus.SUCCEEDED
        assert seeded["failed"].status == FineTuneStatus.CANCELED
        assert seeded["running"].status == FineTuneStatus.CANCELED
        await db.refresh(seeded["running"])
        assert seeded["running"].completed_at is not None
        model = (await db.execute(select(FineTuneModel))).scalar_one()
        assert model.status == "retired"
        preference = (await db.execute(select(ProviderPreference))).scalar_one()
        assert preference.default_model is None
        assert await _count(db, TrainingExample, tenant.id) == 2
        assert fake_client.calls == []

    async def test_all_scope(self, db, tenant, client_factory, test_settings) -> None:
        await _seed(db, tenant, test_settings)

        result = await ResetService(db, client_factory).reset(tenant.id)

        assert result.scope == "all"
        assert result.examples_deleted == 2
        assert result.models_retired == 1
        assert result.jobs_canceled == 2

    async def test_vector_then_fine_tune_equals_all(self, db, tenant, client_factory, test_settings) -> None:
        other = await make_tenant(db, "Twin Hotel")
        await _seed(db, tenant, test_settings)
        await _seed(db, other, test_settings)
        service = ResetService(db, client_factory)

        await service.reset(tenant.id, "vector")
        await service.reset(tenant.id, "fine-tune")
        await service.reset(other.id, "all")

        for tenant_id in (tenant.id, other.id):
            assert await _count(db, TrainingExample, tenant_id) == 0
            statuses = sorted(
                (await db.execute(select(FineTuneJob.status).where(FineTuneJob.tenant_id == tenant_id))).scalars()
            )
            assert statuses == ["canceled", "canceled", "succeeded"]

    async def test_remote_delete_failure_is_tolerated(
        self, db, tenant, client_factory, fake_client, test_settings
    ) -> None:
        await _seed(db, tenant, test_settings)
        fake_client.fail_delete = ProviderError("vector store file delete failed: 404", status_code=404)

        result = await ResetService(db, client_factory).reset(tenant.id, "vector")

        assert result.attachments_deleted == 0
        assert result.examples_deleted == 2

    async def test_missing_credential_still_resets_locally(self, db, tenant, fake_client, test_settings) -> None:
        await _seed(db, tenant, test_settings)
        factory = FakeClientFactory(fake_client, test_settings, api_key=None)

        result = await ResetService(db, factory).reset(tenant.id, "vector")

        assert result.examples_deleted == 2
        assert fake_client.calls == []

    async def test_only_target_tenant_is_reset(self, db, tenant, client_factory, test_settings) -> None:
        other = await make_tenant(db, "Other Hotel")
        await _seed(db, other, test_settings)

        result = await ResetService(db, client_factory).reset(tenant.id)

        assert (result.examples_deleted, result.models_retired, result.jobs_canceled) == (0, 0, 0)
        assert await _count(db, TrainingExample, other.id) == 2

    async def test_invalid_scope(self, db, tenant, client_factory) -> None:
        with pytest.raises(ValueError):
            await ResetService(db, client_factory).reset(tenant.id, "everything")
