"""Tests for feedback ingestion (training example collection)."""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy import func, select

from staytune.models import FeedbackReaction, Message, TrainingExample, VectorStatus
from staytune.training import examples as examples_module
from staytune.training.examples import (
    FeedbackIngestionService,
    next_vector_status,
    reaction_score,
)
from tests.conftest import make_exchange, make_tenant


async def _example_count(db, tenant_id) -> int:
    return (
        await db.execute(
            select(func.count()).select_from(TrainingExample).where(TrainingExample.tenant_id == tenant_id)
        )
    ).scalar_one()


class TestCollectExamples:
    async def test_creates_example_per_liked_answer(self, db, tenant, test_settings) -> None:
        answer = await make_exchange(db, tenant, "Is there a pool?", "Yes, on the 5th floor.")
        await make_exchange(db, tenant, "Late checkout?", "Until 1 pm on request.")

        result = await FeedbackIngestionService(db, test_settings).collect_examples(tenant.id)

        assert (result.created, result.updated) == (2, 0)
        example = (
            await db.execute(select(TrainingExample).where(TrainingExample.message_id == answer.id))
        ).scalar_one()
        assert example.input_text == "Is there a pool?"
        assert example.output_text == "Yes, on the 5th floor."
        assert example.score == 1.0
        assert example.source == "conversation"
        assert example.vector_status == VectorStatus.PENDING
        assert example.metadata_["message_id"] == str(answer.id)
        assert example.metadata_["conversation_id"] == str(answer.conversation_id)

    async def test_second_run_is_a_no_op(self, db, tenant, test_settings) -> None:
        await make_exchange(db, tenant)
        await make_exchange(db, tenant, "Wifi password?", "It is printed on your key card.")
        service = FeedbackIngestionService(db, test_settings)

        first = await service.collect_examples(tenant.id)
        second = await service.collect_examples(tenant.id)

        assert (first.created, first.updated) == (2, 0)
        assert (second.created, second.updated) == (0, 0)
        assert await _example_count(db, tenant.id) == 2

    async def test_marks_source_message(self, db, tenant, test_settings) -> None:
        answer = await make_exchange(db, tenant)

        await FeedbackIngestionService(db, test_settings).collect_examples(tenant.id)

        message = await db.get(Message, answer.id)
        assert message.included_in_training is True
        assert message.feedback_at is not None
        assert message.quality_score == 1.0

    async def test_stored_quality_score_wins(self, db, tenant, test_settings) -> None:
        await make_exchange(db, tenant, quality_score=0.4)

        await FeedbackIngestionService(db, test_settings).collect_examples(tenant.id)

        example = (await db.execute(select(TrainingExample))).scalar_one()
        assert example.score == 0.4

    async def test_skips_unliked_and_orphan_answers(self, db, tenant, test_settings) -> None:
        await make_exchange(db, tenant, reaction=None)
        await make_exchange(db, tenant, reaction=FeedbackReaction.DISLIKE.value)
        await make_exchange(db, tenant, with_user_turn=False)

        result = await FeedbackIngestionService(db, test_settings).collect_examples(tenant.id)

        assert (result.created, result.updated) == (0, 0)
        assert await _example_count(db, tenant.id) == 0

    async def test_other_tenants_are_not_collected(self, db, tenant, test_settings) -> None:
        other = await make_tenant(db, "Hotel Other")
        await make_exchange(db, other)

        result = await FeedbackIngestionService(db, test_settings).collect_examples(tenant.id)

        assert result.created == 0
        assert await _example_count(db, other.id) == 0

    async def test_limit_scans_most_recent_first(self, db, tenant, test_settings) -> None:
        from datetime import UTC, datetime, timedelta

        now = datetime.now(UTC)
        await make_exchange(db, tenant, "old question", "old answer", created_at=now - timedelta(hours=2))
        await make_exchange(db, tenant, "new question", "new answer", created_at=now)

        result = await FeedbackIngestionService(db, test_settings).collect_examples(tenant.id, limit=1)

        assert result.created == 1
        example = (await db.execute(select(TrainingExample))).scalar_one()
        assert example.output_text == "new answer"

    async def test_zero_limit_collects_nothing(self, db, tenant, test_settings) -> None:
        await make_exchange(db, tenant)

        result = await FeedbackIngestionService(db, test_settings).collect_examples(tenant.id, limit=0)

        assert (result.created, result.updated) == (0, 0)
        assert await _example_count(db, tenant.id) == 0

    async def test_changed_answer_updates_pending_example(self, db, tenant, test_settings) -> None:
        answer = await make_exchange(db, tenant)
        service = FeedbackIngestionService(db, test_settings)
        await service.collect_examples(tenant.id)
        example = (await db.execute(select(TrainingExample))).scalar_one()
        example.vector_status = VectorStatus.FAILED.value
        answer.content = "Breakfast is served from 6:30 to 10:30 am."
        await db.flush()

        result = await service.collect_examples(tenant.id)

        assert (result.created, result.updated) == (0, 1)
        assert example.output_text == "Breakfast is served from 6:30 to 10:30 am."
        assert example.vector_status == VectorStatus.PENDING

    async def test_uploaded_example_is_not_requeued(self, db, tenant, test_settings) -> None:
        answer = await make_exchange(db, tenant)
        service = FeedbackIngestionService(db, test_settings)
        await service.collect_examples(tenant.id)
        example = (await db.execute(select(TrainingExample))).scalar_one()
        example.vector_status = VectorStatus.UPLOADED.value
        answer.content = "Changed answer"
        await db.flush()

        result = await service.collect_examples(tenant.id)

        assert result.updated == 1
        assert example.output_text == "Changed answer"
        assert example.vector_status == VectorStatus.UPLOADED

    async def test_per_message_failure_does_not_abort_batch(
        self, db, tenant, test_settings, monkeypatch
    ) -> None:
        bad = await make_exchange(db, tenant, "q1", "a1")
        await make_exchange(db, tenant, "q2", "a2")
        service = FeedbackIngestionService(db, test_settings)
        original = service._preceding_user_message

        async def flaky(message):
            if message.id == bad.id:
                raise RuntimeError("lookup failed")
            return await original(message)

        monkeypatch.setattr(service, "_preceding_user_message", flaky)

        result = await service.collect_examples(tenant.id)

        assert result.created == 1
        example = (await db.execute(select(TrainingExample))).scalar_one()
        assert example.output_text == "a2"


class TestDiscardMessageExample:
    async def test_deletes_example_and_clears_flag(self, db, tenant, test_settings) -> None:
        answer = await make_exchange(db, tenant)
        service = FeedbackIngestionService(db, test_settings)
        await service.collect_examples(tenant.id)

        deleted = await service.discard_message_example(tenant.id, answer.id)

        assert deleted is True
        assert await _example_count(db, tenant.id) == 0
        assert (await db.get(Message, answer.id)).included_in_training is False

    async def test_unknown_message_returns_false(self, db, tenant, test_settings) -> None:
        deleted = await FeedbackIngestionService(db, test_settings).discard_message_example(
            tenant.id, uuid.uuid4()
        )
        assert deleted is False

    async def test_detaches_uploaded_example(self, db, tenant, test_settings, client_factory, fake_client) -> None:
        from tests.conftest import make_store

        store = await make_store(db, tenant)
        answer = await make_exchange(db, tenant)
        service = FeedbackIngestionService(db, test_settings)
        await service.collect_examples(tenant.id)
        example = (await db.execute(select(TrainingExample))).scalar_one()
        example.vector_status = VectorStatus.UPLOADED.value
        example.vector_file_id = "vsf-1"
        await db.flush()

        await service.discard_message_example(tenant.id, answer.id, client_factory)

        assert fake_client.calls == [
            ("delete_vector_store_file", {"vector_store_id": store.remote_id, "file_id": "vsf-1"})
        ]


class TestPolicies:
    @pytest.mark.parametrize(
        ("current", "changed", "expected"),
        [
            ("pending", False, "pending"),
            ("failed", False, "pending"),
            ("failed", True, "pending"),
            ("uploading", True, "uploading"),
            ("uploaded", False, "uploaded"),
            ("uploaded", True, "uploaded"),
        ],
    )
    def test_next_vector_status(self, current, changed, expected) -> None:
        assert next_vector_status(current, content_changed=changed) == expected

    def test_revectorize_switch(self, monkeypatch) -> None:
        monkeypatch.setattr(examples_module, "REVECTORIZE_UPLOADED_ON_CHANGE", True)
        assert next_vector_status("uploaded", content_changed=True) == "pending"
        assert next_vector_status("uploaded", content_changed=False) == "uploaded"

    def test_reaction_score(self) -> None:
        assert reaction_score("like") == 1.0
        assert reaction_score("dislike") == -1.0
        assert reaction_score(None) is None
