"""Tests for model activation and the default-model preference."""

from __future__ import annotations

from sqlalchemy import select

from staytune.models import FineTuneModel, ProviderPreference
from staytune.training.activation import activate_model, set_default_model
from tests.conftest import make_tenant


async def _models(db, tenant_id) -> dict[str, str]:
    result = await db.execute(select(FineTuneModel).where(FineTuneModel.tenant_id == tenant_id))
    return {m.model_id: m.status for m in result.scalars()}


async def _preference(db, tenant_id, provider="openai") -> ProviderPreference | None:
    result = await db.execute(
        select(ProviderPreference).where(
            ProviderPreference.tenant_id == tenant_id,
            ProviderPreference.provider == provider,
        )
    )
    return result.scalar_one_or_none()


class TestActivateModel:
    async def test_first_activation(self, db, tenant) -> None:
        model = await activate_model(db, tenant.id, "ft:m1", remote_metadata={"base_model": "gpt-4o-mini"})

        assert model.status == "active"
        assert model.activated_at is not None
        assert model.metadata_ == {"base_model": "gpt-4o-mini"}
        assert (await _preference(db, tenant.id)).default_model == "ft:m1"

    async def test_exactly_one_active_after_sequence(self, db, tenant) -> None:
        for model_id in ("ft:m1", "ft:m2", "ft:m3"):
            await activate_model(db, tenant.id, model_id)

        assert await _models(db, tenant.id) == {
            "ft:m1": "retired",
            "ft:m2": "retired",
            "ft:m3": "active",
        }
        assert (await _preference(db, tenant.id)).default_model == "ft:m3"

    async def test_reactivating_a_retired_model(self, db, tenant) -> None:
        await activate_model(db, tenant.id, "ft:m1")
        await activate_model(db, tenant.id, "ft:m2")

        model = await activate_model(db, tenant.id, "ft:m1")

        assert model.deactivated_at is None
        assert await _models(db, tenant.id) == {"ft:m1": "active", "ft:m2": "retired"}
        assert (await _preference(db, tenant.id)).default_model == "ft:m1"

    async def test_activating_active_model_is_stable(self, db, tenant) -> None:
        first = await activate_model(db, tenant.id, "ft:m1")
        activated_at = first.activated_at

        again = await activate_model(db, tenant.id, "ft:m1")

        assert again.id == first.id
        assert again.activated_at == activated_at
        assert await _models(db, tenant.id) == {"ft:m1": "active"}

    async def test_retired_models_record_deactivation(self, db, tenant) -> None:
        first = await activate_model(db, tenant.id, "ft:m1")
        await activate_model(db, tenant.id, "ft:m2")

        assert first.status == "retired"
        assert first.deactivated_at is not None

    async def test_other_tenants_untouched(self, db, tenant) -> None:
        other = await make_tenant(db, "Other Hotel")
        await activate_model(db, other.id, "ft:other")

        await activate_model(db, tenant.id, "ft:mine")

        assert await _models(db, other.id) == {"ft:other": "active"}
        assert (await _preference(db, other.id)).default_model == "ft:other"

    async def test_other_provider_untouched(self, db, tenant) -> None:
        await activate_model(db, tenant.id, "ft:azure-model", provider="azure")

        await activate_model(db, tenant.id, "ft:openai-model")

        assert await _models(db, tenant.id) == {"ft:azure-model": "active", "ft:openai-model": "active"}
        assert (await _preference(db, tenant.id, "azure")).default_model == "ft:azure-model"


class TestSetDefaultModel:
    async def test_updates_existing_preference(self, db, tenant) -> None:
        db.add(ProviderPreference(tenant_id=tenant.id, provider="openai", is_enabled=False, default_model="gpt-4o"))
        await db.flush()

        preference = await set_default_model(db, tenant.id, "openai", "ft:m1")

        assert preference.default_model == "ft:m1"
        assert preference.is_enabled is False

    async def test_clearing_never_creates_a_row(self, db, tenant) -> None:
        assert await set_default_model(db, tenant.id, "openai", None) is None
        assert await _preference(db, tenant.id) is None
